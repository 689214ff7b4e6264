"""agentctl - install, start and validate agent nodes over SSH."""

__version__ = '0.1.0'
