"""Structured logging with structlog.

Security: the payout wallet key, the Discord bot token and the OpenAI key
are NEVER logged. Sensitive field names are masked, and the configured
secret values are scrubbed from any string that reaches a log line (web3
and HTTP errors sometimes echo request details).

Trade and settlement ids are bound with ``log_context`` so every line a
resolution poll or payout pass emits carries them.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import structlog


_CONFIGURED = False
_HANDLERS: list[logging.Handler] = []

_REDACTED = "***REDACTED***"

# Fields that must NEVER appear in logs
_REDACTED_FIELDS = frozenset({
    "private_key", "secret", "password", "api_key", "token",
    "mnemonic", "wallet_private_key", "discord_bot_token",
    "openai_api_key", "raw_tx", "signed_tx",
})

# Env vars whose values are scrubbed wherever they appear
_SECRET_ENV_VARS = ("WALLET_PRIVATE_KEY", "DISCORD_BOT_TOKEN", "OPENAI_API_KEY")


def _secret_values() -> tuple[str, ...]:
    values: list[str] = []
    for var in _SECRET_ENV_VARS:
        raw = os.environ.get(var, "").strip()
        if len(raw) < 8:
            continue
        values.append(raw)
        if raw.startswith("0x"):
            values.append(raw[2:])
    return tuple(values)


def _scrub(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    for secret in _secret_values():
        if secret in value:
            value = value.replace(secret, _REDACTED)
    return value


def _redact_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Mask sensitive fields and scrub secret values from the rest."""
    for key in list(event_dict.keys()):
        if key.lower() in _REDACTED_FIELDS:
            event_dict[key] = _REDACTED
        else:
            event_dict[key] = _scrub(event_dict[key])
    return event_dict


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_file: str | None = None,
    force: bool = False,
) -> None:
    """Configure structlog on top of the stdlib root logger.

    Runs once per process unless ``force`` is set; the CLI forces it after
    reading config so level, format and log file follow ``config.yaml``.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(log_level)
    for old in _HANDLERS:
        root.removeHandler(old)
        old.close()
    _HANDLERS.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(log_level)
    root.addHandler(console)
    _HANDLERS.append(console)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(log_path))
        fh.setLevel(log_level)
        root.addHandler(fh)
        _HANDLERS.append(fh)

    # web3 and httpx are chatty at INFO
    for noisy in ("web3", "httpx", "urllib3", "aiohttp"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _redact_processor,
    ]

    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )
    for handler in _HANDLERS:
        handler.setFormatter(formatter)

    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog bound logger."""
    if not _CONFIGURED:
        configure_logging(
            level=os.environ.get("LOG_LEVEL", "INFO"),
            fmt=os.environ.get("LOG_FORMAT", "console"),
        )
    return structlog.get_logger(name)


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind fields (``trade_id``, ``settlement_id``) to every log line in the block."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield
