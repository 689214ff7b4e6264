from setuptools import setup, find_packages

setup(
    name='agentctl',
    version='0.1.0',
    packages=find_packages(exclude=['agentctl.tests']),
    include_package_data=True,
    install_requires=[
        'typer[all]',
        'rich',
        'paramiko',
        'psutil',
        'pydantic>=2',
        'pydantic-settings>=2',
        'PyYAML',
        'requests'
    ],
    extras_require={
        'test': ['pytest']
    },
    entry_points={
        'console_scripts': [
            'agentctl=agentctl.cli:app'
        ]
    },
    description='Provision, install, start and validate agent nodes over SSH',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.8',
)
