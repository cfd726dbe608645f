import logging
from pathlib import Path

from KLOG.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty third-party loggers
_QUIET_LOGGERS = ("kubernetes", "urllib3", "paramiko")


def configure_logging(settings: Settings) -> Path:
    """Send application logs to <log_dir>/klog.log; the terminal belongs to the UI."""
    log_dir = Path(settings.log_dir)
    if not log_dir.exists():
        log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / "klog.log"
    logging.basicConfig(
        filename=str(log_file),
        level=settings.log_level.upper(),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_file
