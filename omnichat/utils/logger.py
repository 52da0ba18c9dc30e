import logging
import os
import structlog


def _ensure_log_dir(path: str):
    d = os.path.dirname(path)
    if d and not os.path.exists(d):
        os.makedirs(d, exist_ok=True)


LOG_PATH = os.environ.get("OMNICHAT_LOG_PATH")
LOG_LEVEL = getattr(logging, os.environ.get("OMNICHAT_LOG_LEVEL", "info").upper(), logging.INFO)

root = logging.getLogger()
root.setLevel(LOG_LEVEL)

# File logging is opt-in; the directory may be read-only
if LOG_PATH:
    try:
        _ensure_log_dir(LOG_PATH)
        file_handler = logging.FileHandler(LOG_PATH)
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        root.addHandler(file_handler)
    except (PermissionError, OSError):
        pass

stream_handler = logging.StreamHandler()
stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(name)s - %(message)s"))
# FileHandler subclasses StreamHandler, so match the exact type
if not any(type(h) is logging.StreamHandler for h in root.handlers):
    root.addHandler(stream_handler)

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)


def get_logger(name: str | None = None):
    return structlog.get_logger(name)


def mask_secret(secret: str) -> str:
    """Short, log-safe form of a credential secret."""
    if not secret:
        return "<empty>"
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}...{secret[-4:]}"


logger = get_logger("omnichat")
