from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Field-name fragments whose values must never reach a log line.
_CREDENTIAL_MARKERS = ("password", "secret", "token", "authorization")
_REDACTED = "[redacted]"


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for this context, minting one when the client sent none."""
    rid = correlation_id or str(uuid.uuid4())
    request_id_var.set(rid)
    return rid


def hash_email(email: str) -> str:
    """Stable digest used wherever an address would otherwise be logged."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


def _bind_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    rid = request_id_var.get()
    if rid:
        event_dict["request_id"] = rid
    return event_dict


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace addresses with their digest and drop credential values.

    Keys ending in ``_hash`` already hold digests and pass through.
    """
    for key, value in list(event_dict.items()):
        lowered = key.lower()
        if key == "event" or lowered.endswith("_hash") or not isinstance(value, str):
            continue
        if "email" in lowered:
            event_dict[key] = hash_email(value)
        elif any(marker in lowered for marker in _CREDENTIAL_MARKERS):
            event_dict[key] = _REDACTED
    return event_dict


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    """Install the payauth processor chain.

    JSON lines go to stdout unless ``console`` asks for the coloured dev renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _bind_request_id,
        _scrub_credentials,
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    console=os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
