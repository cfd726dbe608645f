"""
KLOG settings - environment variables, optionally seeded from a .env file
"""
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_BUFFER_CAPACITY = 50_000
DEFAULT_FRAME_INTERVAL = 1 / 60


class Settings(BaseModel):
    connections_file: Path = Path("kube-connections.json")
    log_dir: Path = Path("app_log")
    log_level: str = "INFO"
    tls_insecure: bool = False
    buffer_capacity: int = Field(default=DEFAULT_BUFFER_CAPACITY, ge=1)
    frame_interval: float = Field(default=DEFAULT_FRAME_INTERVAL, gt=0)
    ssh_timeout: float = Field(default=10.0, gt=0)
    default_tail_lines: int = Field(default=500, ge=0)


_ENV_FIELDS = {
    "KLOG_CONNECTIONS_FILE": "connections_file",
    "KLOG_LOG_DIR": "log_dir",
    "KLOG_LOG_LEVEL": "log_level",
    "KLOG_TLS_INSECURE": "tls_insecure",
    "KLOG_BUFFER_CAPACITY": "buffer_capacity",
    "KLOG_FRAME_INTERVAL": "frame_interval",
    "KLOG_SSH_TIMEOUT": "ssh_timeout",
    "KLOG_DEFAULT_TAIL_LINES": "default_tail_lines",
}


def load_settings(env_file=None) -> Settings:
    """
    Build Settings from the environment

    Args:
        env_file: Optional .env path (default: search from the working directory)

    Returns:
        Validated Settings; raises pydantic.ValidationError on bad values
    """
    load_dotenv(env_file)
    values = {
        field: os.environ[var]
        for var, field in _ENV_FIELDS.items()
        if os.getenv(var) not in (None, "")
    }
    return Settings(**values)
