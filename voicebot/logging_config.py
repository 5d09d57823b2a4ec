"""
structlog on top of stdlib logging for the dialer.

Records are JSON by default (LOG_FORMAT=console for a colored dev view) and
carry the service name, the emitting module and, inside a conversation, the
call id bound with `bind_call_id`. Credential-looking keys are redacted
before rendering.
"""

import contextvars
import logging
import os
import sys
import time
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from typing import Any, Iterator, List, Optional

import structlog

SERVICE_NAME = "voicebot-dialer"
REDACTED = "***REDACTED***"

call_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("call_id", default=None)

# Compared after lowercasing and dropping '_' / '-'; a key matches on equality or suffix
CREDENTIAL_MARKERS = frozenset({
    "apikey", "token", "accesstoken", "authtoken", "bearer",
    "password", "passwd", "pwd", "pass", "authorization", "auth",
    "credential", "credentials", "secret", "secrets", "privatekey", "clientsecret",
})

_QUIET_LOGGERS = ("websockets", "aiohttp", "asyncio")


def get_call_id() -> Optional[str]:
    return call_id_var.get()


@contextmanager
def bind_call_id(call_id: Optional[str]) -> Iterator[None]:
    """Tag every record emitted inside the block with `call_id`."""
    token = call_id_var.set(call_id)
    try:
        yield
    finally:
        call_id_var.reset(token)


def add_call_id(logger, method_name, event_dict):
    call_id = call_id_var.get()
    if call_id:
        event_dict.setdefault("call_id", call_id)
    return event_dict


def add_component(logger, method_name, event_dict):
    event_dict["service"] = SERVICE_NAME
    event_dict["component"] = event_dict.get("logger") or getattr(logger, "name", None) or "unknown"
    return event_dict


def is_credential_key(key: Any) -> bool:
    flat = str(key).lower().replace("_", "").replace("-", "")
    return any(flat == marker or flat.endswith(marker) for marker in CREDENTIAL_MARKERS)


def _mask(value: Any) -> Any:
    if value is None or isinstance(value, bool) or value == "":
        return value
    if isinstance(value, (list, tuple)):
        return [_mask(item) for item in value]
    if isinstance(value, str) and len(value) > 4:
        # Two leading characters let operators tell keys apart
        return value[:2] + REDACTED
    return REDACTED


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _mask(v) if is_credential_key(k) else _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(item) if isinstance(item, dict) else item for item in value]
    return value


def redact_credentials(logger, method_name, event_dict):
    """Mask ARI passwords, API keys and similar values, including inside dumped config dicts."""
    return _scrub(event_dict)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _traceback_filter(show: bool):
    def drop_exc_info(logger, method_name, event_dict):
        if not show:
            event_dict.pop("exc_info", None)
        return event_dict

    return drop_exc_info


def _file_handler(path_template: str) -> Optional[logging.Handler]:
    path = path_template.replace("{ts}", time.strftime("%Y%m%d-%H%M%S"))
    try:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        return RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)
    except OSError as exc:
        get_logger(__name__).warning("Log file unavailable; console only", path=path, error=str(exc))
        return None


def configure_logging(log_level="INFO", log_to_file=False, log_file_path="voicebot.log"):
    """
    Install the structlog pipeline and root handlers.

    Environment overrides: LOG_LEVEL, LOG_FORMAT (json|console), LOG_COLOR,
    LOG_TO_FILE, LOG_FILE_PATH ('{ts}' becomes a timestamp) and
    LOG_SHOW_TRACEBACKS (auto|always|never; auto shows them at DEBUG only).
    """
    level_name = str(os.getenv("LOG_LEVEL") or log_level).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_to_file = _env_flag("LOG_TO_FILE", log_to_file)
    log_file_path = os.getenv("LOG_FILE_PATH", log_file_path)
    console = os.getenv("LOG_FORMAT", "json").strip().lower() == "console"

    tracebacks = os.getenv("LOG_SHOW_TRACEBACKS", "auto").strip().lower()
    show_tracebacks = tracebacks == "always" or (tracebacks == "auto" and level == logging.DEBUG)

    shared: List[Any] = [
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            *shared,
            add_component,
            add_call_id,
            redact_credentials,
            _traceback_filter(show_tracebacks),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if console:
        renderer = structlog.dev.ConsoleRenderer(colors=_env_flag("LOG_COLOR", True))
    else:
        renderer = structlog.processors.JSONRenderer()
    formatter = structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_to_file:
        handler = _file_handler(log_file_path)
        if handler is not None:
            handlers.append(handler)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str):
    return structlog.get_logger(name)
