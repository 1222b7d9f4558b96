"""Structured logging (structlog on top of stdlib ``logging``).

Modules log through a module-level ``structlog.get_logger()`` with
snake_case event names and keyword context::

    logger.info("stage_finished", run_id=run.id, stage="analysis", outcome="success")

Each audit task calls :func:`bind_run_context` once; because asyncio tasks
run in a copy of the caller's context, the run id then rides along on every
event emitted by that task (analyzers, subprocesses, notifications) without
being threaded through every call.

Audits handle credentials for GitHub, Telegram, Gemini and a funded testnet
key.  Every event passes through :func:`scrub_secrets` before it is
rendered: sensitive keys are suppressed outright and every string value,
nested ones included, goes through :func:`redact_secrets`.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping, MutableMapping
from typing import Any

import structlog

from smartaudit.modules.redact import redact_secrets

SUPPRESSED = "[SUPPRESSED]"

_SENSITIVE_KEYS = frozenset({"token", "secret", "password", "private_key", "api_key", "authorization"})
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_private_key", "_api_key")

_NOISY_LOGGERS = ("urllib3", "requests", "asyncio")


def _is_sensitive(key: str) -> bool:
    key = key.lower()
    return key in _SENSITIVE_KEYS or key.endswith(_SENSITIVE_SUFFIXES)


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return redact_secrets(value)
    if isinstance(value, Mapping):
        return {k: SUPPRESSED if isinstance(k, str) and _is_sensitive(k) else _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]
    return value


def scrub_secrets(
    _logger: Any,
    _method: str,
    event_dict: MutableMapping[str, Any],
) -> Mapping[str, Any]:
    """structlog processor: suppress sensitive keys, redact everything else."""
    for key, value in event_dict.items():
        event_dict[key] = SUPPRESSED if _is_sensitive(key) else _scrub(value)
    return event_dict


def bind_run_context(run_id: str) -> None:
    """Tag every later event in the current context (task) with *run_id*."""
    structlog.contextvars.bind_contextvars(run_id=run_id)


def _pre_chain() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        scrub_secrets,
    ]


def configure_logging(*, level: str = "INFO", json_output: bool = True) -> None:
    """Route structlog and stdlib records through one stderr handler.

    ``json_output=False`` switches to the console renderer, coloured only
    when stderr is a terminal.  Calling it again replaces the handler.
    """
    pre_chain = _pre_chain()
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
