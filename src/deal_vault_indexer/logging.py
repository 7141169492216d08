"""
Structured logging configuration for the DealVault indexer.

Uses structlog for structured, context-aware logging with:
- JSON output for production
- Pretty console output for development
- Event identity (tx hash, log index, event name, deal id) propagated
  from the handler that is currently running
"""

import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Generator

import structlog
from structlog.types import Processor

# Context variables for event-scoped data
_event_name: ContextVar[str | None] = ContextVar('event_name', default=None)
_tx_hash: ContextVar[str | None] = ContextVar('tx_hash', default=None)
_log_index: ContextVar[int | None] = ContextVar('log_index', default=None)
_deal_id: ContextVar[int | None] = ContextVar('deal_id', default=None)


def get_event_name() -> str | None:
    """Get the name of the event being processed."""
    return _event_name.get()


def get_tx_hash() -> str | None:
    """Get the transaction hash of the event being processed."""
    return _tx_hash.get()


def get_log_index() -> int | None:
    """Get the log index of the event being processed."""
    return _log_index.get()


def get_deal_id() -> int | None:
    """Get the deal the current event belongs to."""
    return _deal_id.get()


def add_context_info(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Processor that adds context variables to log entries."""
    event_name = get_event_name()
    tx_hash = get_tx_hash()
    log_index = get_log_index()
    deal_id = get_deal_id()

    if event_name:
        event_dict.setdefault('event_name', event_name)
    if tx_hash:
        event_dict.setdefault('tx_hash', tx_hash)
    if log_index is not None:
        event_dict.setdefault('log_index', log_index)
    if deal_id is not None:
        event_dict.setdefault('deal_id', deal_id)

    return event_dict


def configure_logging(
    json_output: bool = False,
    log_level: str | None = None,
) -> None:
    """
    Configure structlog for the application.

    Args:
        json_output: If True, output JSON logs (for production).
                    If False, output pretty console logs (for development).
        log_level: Override log level (defaults to the LOG_LEVEL env var)
    """
    level = log_level or os.getenv('LOG_LEVEL', 'INFO')
    level_num = getattr(logging, level.upper(), logging.INFO)

    # Standard library logging config
    logging.basicConfig(
        format='%(message)s',
        stream=sys.stdout,
        level=level_num,
    )

    # Shared processors
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_context_info,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt='iso'),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        # Production: JSON output
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # Development: Pretty console output
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


@contextmanager
def logging_context(
    event_name: str | None = None,
    tx_hash: str | None = None,
    log_index: int | None = None,
    deal_id: int | None = None,
) -> Generator[None, None, None]:
    """
    Context manager for setting logging context variables.

    Usage:
        with logging_context(event_name="Deposited", tx_hash="0xabc", log_index=3):
            logger.info("handler.applied")  # Includes the event identity
    """
    tokens = []
    try:
        if event_name is not None:
            tokens.append((_event_name, _event_name.set(event_name)))
        if tx_hash is not None:
            tokens.append((_tx_hash, _tx_hash.set(tx_hash)))
        if log_index is not None:
            tokens.append((_log_index, _log_index.set(log_index)))
        if deal_id is not None:
            tokens.append((_deal_id, _deal_id.set(deal_id)))
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


# Initialize logging on module import (development mode by default)
# Production deployments should call configure_logging(json_output=True)
configure_logging(json_output=False)
