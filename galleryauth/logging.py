from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Keys holding credential values, matched whole or as a suffix
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization")
# Hashed or truncated identifiers are safe to log in full
_SAFE_SUFFIXES = ("_hash", "_digest", "_prefix")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation ID to the current context, generating one if needed."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def email_digest(email: str) -> str:
    """Stable, non-reversible identifier for an email address in logs."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _is_credential_key(key: str) -> bool:
    return key in _CREDENTIAL_KEYS or key.endswith(
        tuple(f"_{name}" for name in _CREDENTIAL_KEYS)
    )


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential values and swap raw email addresses for digests.

    An ``email`` (or ``*_email``) field is replaced by ``<key>_digest`` so log
    lines stay joinable per account without carrying the address itself.
    """
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key.endswith(_SAFE_SUFFIXES):
            continue
        value = event_dict[key]
        if "email" in lower_key and isinstance(value, str):
            del event_dict[key]
            event_dict[f"{key}_digest"] = email_digest(value)
        elif _is_credential_key(lower_key):
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
            elif value:
                event_dict[key] = "***"
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: render JSON lines; otherwise console output
        development_mode: force colored console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
