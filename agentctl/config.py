"""Configuration management for agentctl.

Configuration is loaded from multiple sources with the following precedence:
1. An explicit ProvisionConfig passed to an operation
2. Environment variables (AGENTCTL_<SECTION>__<FIELD>) and a .env file in the
   working directory
3. The first configuration file found in DEFAULT_CONFIG_PATHS
4. Default values
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

logger = logging.getLogger("agentctl.config")

# Default configuration paths
DEFAULT_CONFIG_PATHS = [
    Path("/etc/agentctl/config.yaml"),
    Path("~/.config/agentctl/config.yaml").expanduser(),
    Path("agentctl.yaml").absolute(),
]

MIB = 1024 * 1024


class SSHSettings(BaseModel):
    """SSH connection configuration."""
    model_config = ConfigDict(extra="ignore")

    default_port: int = Field(default=22, description="SSH port used when a node does not set one")
    connect_timeout: float = Field(default=30.0, description="SSH dial timeout in seconds")
    command_timeout: Optional[float] = Field(
        default=None,
        description="Remote command timeout in seconds (None waits forever)"
    )
    key_dir: str = Field(default="~/.ssh", description="Directory scanned for private keys")
    excluded_key_files: List[str] = Field(
        default_factory=lambda: ["authorized_keys", "config", "id_rsa.pub", "known_hosts"],
        description="Files in key_dir that are never treated as private keys"
    )
    # Nodes are usually freshly provisioned and absent from known_hosts, so any
    # host key is accepted unless this is switched on.
    strict_host_key_checking: bool = Field(
        default=False,
        description="Reject hosts whose key is not in known_hosts_file"
    )
    known_hosts_file: str = Field(default="~/.ssh/known_hosts")

    @field_validator("key_dir", "known_hosts_file")
    @classmethod
    def expand_user(cls, v: str) -> str:
        """Expand the user home directory in paths."""
        return os.path.expanduser(v)


class TransferSettings(BaseModel):
    """File distribution thresholds and concurrency limits."""
    model_config = ConfigDict(extra="ignore")

    batch_threshold: int = Field(
        default=1 * MIB,
        description="Files smaller than this are buffered and written in parallel batches"
    )
    # 64 MiB keeps the largest binaries at 7-8 chunks, under the default
    # sshd MaxSessions of 10.
    chunk_size: int = Field(default=64 * MIB, description="Files at least this large are split into chunks")
    parallel_max: int = Field(default=8, description="Maximum concurrent chunk uploads per file")
    batch_workers: Optional[int] = Field(
        default=None,
        description="Parallel writers for batched small files (None = CPU count)"
    )
    use_rsync: bool = Field(default=False, description="Prefer rsync when both ends support it")

    @field_validator("chunk_size", "parallel_max")
    @classmethod
    def positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v


class ServiceSettings(BaseModel):
    """Layout and start-up conventions of the managed agent."""
    model_config = ConfigDict(extra="ignore")

    binary: str = Field(default="obshell", description="Agent binary name under <work_dir>/bin")
    default_port: int = Field(default=2886, description="Agent port used when a node does not set one")
    daemon_pid_files: List[str] = Field(default_factory=lambda: ["daemon.pid", "obshell.pid"])
    extra_pid_files: List[str] = Field(
        default_factory=lambda: ["observer.pid"],
        description="PID files of other processes killed when a node is cleaned"
    )
    password_flag: str = Field(default="password")
    password_env: str = Field(default="OB_ROOT_PASSWORD")
    install_prefixes: List[str] = Field(
        default_factory=lambda: ["./home/admin/oceanbase", "./usr"],
        description="Package path prefixes stripped before joining with the work directory"
    )

    @property
    def pid_files(self) -> List[str]:
        return self.daemon_pid_files + self.extra_pid_files


class PreflightSettings(BaseModel):
    """Preflight check behaviour."""
    model_config = ConfigDict(extra="ignore")

    # When False the first failing node/check ends the whole run.
    check_all: bool = Field(default=False, description="Run every check on every node and aggregate")
    max_clock_skew: float = Field(default=2.0, description="Allowed clock difference in seconds")


class TakeoverSettings(BaseModel):
    """Takeover polling budget."""
    model_config = ConfigDict(extra="ignore")

    poll_rounds: int = Field(default=60)
    poll_interval: float = Field(default=10.0, description="Seconds between poll rounds")
    dag_poll_interval: float = Field(default=2.0, description="Seconds between task graph queries")
    request_timeout: float = Field(default=10.0, description="Management API request timeout")


class LoggingSettings(BaseModel):
    """Logging configuration."""
    model_config = ConfigDict(extra="ignore")

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    file: Optional[str] = Field(default=None, description="Path to log file (if None, logs to stderr)")
    max_size_mb: int = Field(default=100, description="Maximum log file size in MB before rotation")
    backup_count: int = Field(default=5, description="Number of backup log files to keep")


class ProvisionConfig(BaseSettings):
    """agentctl configuration."""
    model_config = SettingsConfigDict(
        env_prefix="AGENTCTL_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    ssh: SSHSettings = Field(default_factory=SSHSettings)
    transfer: TransferSettings = Field(default_factory=TransferSettings)
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    preflight: PreflightSettings = Field(default_factory=PreflightSettings)
    takeover: TakeoverSettings = Field(default_factory=TakeoverSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        # File values arrive as init kwargs; the environment wins over them.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def load(cls, config_path: Optional[Union[str, Path]] = None) -> 'ProvisionConfig':
        """Load configuration from file and environment variables."""
        config_data: Dict[str, Any] = {}

        if config_path:
            config_path = Path(config_path).expanduser().absolute()
            if not config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {config_path}")
            config_data = cls._load_config_file(config_path)
        else:
            for path in DEFAULT_CONFIG_PATHS:
                path = path.expanduser().absolute()
                if path.exists():
                    config_data = cls._load_config_file(path)
                    break

        return cls(**config_data)

    @classmethod
    def _load_config_file(cls, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file."""
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            return {}
        logger.debug(f"Loaded configuration from {path}")
        return data

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration to a file."""
        path = Path(path).expanduser().absolute()
        path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = self.model_dump(exclude_none=True)

        with open(path, 'w') as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)


# Global configuration instance
_config: Optional[ProvisionConfig] = None


def get_config(config_path: Optional[Union[str, Path]] = None) -> ProvisionConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = ProvisionConfig.load(config_path)
    return _config


def set_config(config: Optional[ProvisionConfig]) -> None:
    """Set (or reset with None) the global configuration instance."""
    global _config
    _config = config
