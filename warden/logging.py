from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id (generated when absent) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Substrings marking a field whose value must never reach a log sink
_SECRET_KEYS = ("password", "secret", "token", "authorization", "verifier", "code")
_EMAIL_KEYS = ("email",)
# Contain a secret substring but hold no secret
_SAFE_KEYS = {"error_code", "status_code", "token_type", "tokens_revoked"}


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "[redacted]"
    return f"{local[:1]}***@{domain}"


def _redact(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS or not isinstance(value, str):
            continue
        if any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif any(part in lower_key for part in _EMAIL_KEYS):
            event_dict[key] = _mask_email(value)
    return event_dict


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    """Install the structlog pipeline: JSON lines, or colored console output."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact,
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

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


# Internal or credential detail that must not be echoed to a client
_LEAK_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)postgres(?:ql)?://\S+",
        r"(?i)https?://\S+",
        r"(?i)bearer\s+\S+",
        r"\beyJ[\w-]+\.[\w-]+\.[\w-]*",
        r"(?i)(password|secret|token|code)\s*[:=]\s*\S+",
        r"/(?:home|var|etc|usr|opt|tmp)/\S+",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, connection strings, URLs, tokens and paths from client-bound text."""
    if not error or not isinstance(error, str):
        return "an error occurred"
    result = error
    for pattern in _LEAK_PATTERNS:
        result = pattern.sub(replacement, result)
    return result if len(result) <= 300 else result[:297] + "..."
