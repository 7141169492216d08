"""
Custom exceptions and error handling for the DealVault indexer.

Provides:
- Typed exception hierarchy for different failure modes
- Error context preservation for debugging
- Wrappers that classify raw RPC and storage exceptions
"""

import asyncio
from typing import Any

from sqlalchemy.exc import DBAPIError, SQLAlchemyError


class IndexerError(Exception):
    """Base exception for all indexer errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


class ConfigurationError(IndexerError):
    """Settings prevent the indexer from starting (fatal at startup)."""

    pass


# =============================================================================
# Client Errors
# =============================================================================


class ClientError(IndexerError):
    """Base class for chain client errors."""

    pass


class ConnectivityError(ClientError):
    """RPC endpoint unreachable or timed out. Retried with backoff."""

    pass


class RpcError(ClientError):
    """RPC endpoint answered, but the call failed (revert, bad params, decode)."""

    pass


# =============================================================================
# Store Errors
# =============================================================================


class StoreError(IndexerError):
    """Base class for storage errors."""

    pass


class StoreTransactionError(StoreError):
    """Underlying storage failure. Aborts only the current event."""

    pass


class DuplicatePosition(StoreError):
    """A position ID was inserted twice with different field values."""

    pass


# =============================================================================
# Handler Errors
# =============================================================================


class HandlerError(IndexerError):
    """Base class for event handler outcomes that stop an event."""

    pass


class DuplicateEvent(HandlerError):
    """Dedup fence tripped. Treated as success, never as failure."""

    pass


class MissingParentEntity(HandlerError):
    """Referential precondition unmet (e.g. Deposited before DealCreated)."""

    pass


class ArithmeticInvariantViolation(HandlerError):
    """A write would break an amount invariant. The write is refused."""

    pass


class IllegalStatusTransition(HandlerError):
    """Deal status change not allowed by the lifecycle state machine."""

    pass


# =============================================================================
# Error Handling Utilities
# =============================================================================

_CONNECTIVITY_MARKERS = (
    'connect',
    'connection',
    'timed out',
    'timeout',
    'unreachable',
    'name or service not known',
)


def wrap_rpc_error(exc: Exception, context: dict[str, Any] | None = None) -> ClientError:
    """
    Wrap a raw RPC/transport exception in our typed error hierarchy.

    Args:
        exc: The original exception
        context: Additional context for debugging

    Returns:
        ConnectivityError for transport failures, RpcError otherwise
    """
    if isinstance(exc, ClientError):
        return exc

    error_str = str(exc).lower()
    ctx = context or {}
    ctx['original_error'] = str(exc)
    ctx['error_type'] = type(exc).__name__

    if isinstance(exc, (OSError, asyncio.TimeoutError)) or any(
        marker in error_str for marker in _CONNECTIVITY_MARKERS
    ):
        return ConnectivityError(
            f"RPC endpoint unreachable: {exc}",
            context=ctx,
        )
    return RpcError(
        f"RPC call failed: {exc}",
        context=ctx,
    )


def wrap_store_error(exc: Exception, context: dict[str, Any] | None = None) -> StoreError:
    """
    Wrap a SQLAlchemy exception in our typed error hierarchy.

    Args:
        exc: The original exception
        context: Additional context for debugging

    Returns:
        StoreTransactionError carrying the driver-level cause
    """
    if isinstance(exc, StoreError):
        return exc

    ctx = context or {}
    ctx['error_type'] = type(exc).__name__
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        ctx['original_error'] = str(exc.orig)
    elif isinstance(exc, SQLAlchemyError):
        ctx['original_error'] = str(exc)
    else:
        ctx['original_error'] = repr(exc)

    return StoreTransactionError(
        f"Store transaction failed: {type(exc).__name__}",
        context=ctx,
    )
