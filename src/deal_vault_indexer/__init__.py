"""
DealVault Indexer

Follows DealVault contract events and maintains a relational projection of
deals, deposits, reward entitlements and the raw event log. Replays and
duplicate deliveries are absorbed by a (tx_hash, log_index) dedup fence in
the store.
"""

__version__ = '0.1.0'

# Re-export key classes for convenience
from .clients import ChainClient, DatabaseClient
from .coordinator import DealLocks, IndexerCoordinator, IndexerStats
from .event_log import EventLogStore
from .handlers import (
    EventHandler,
    HandlerOutcome,
    HandlerResult,
    build_handlers,
    split_rewards,
)
from .reconciler import ReconcileAction, Reconciler, ReconcileResult
from .repository import ConflictPolicy, ProjectionRepository
from .logging import (
    configure_logging,
    get_logger,
    logging_context,
)
from .errors import (
    IndexerError,
    ConfigurationError,
    ClientError,
    ConnectivityError,
    RpcError,
    StoreError,
    StoreTransactionError,
    DuplicatePosition,
    HandlerError,
    DuplicateEvent,
    MissingParentEntity,
    ArithmeticInvariantViolation,
    IllegalStatusTransition,
)

__all__ = [
    # Version
    '__version__',
    # Clients
    'ChainClient',
    'DatabaseClient',
    # Coordination
    'DealLocks',
    'IndexerCoordinator',
    'IndexerStats',
    'Reconciler',
    'ReconcileAction',
    'ReconcileResult',
    # Handlers
    'EventHandler',
    'HandlerOutcome',
    'HandlerResult',
    'build_handlers',
    'split_rewards',
    # Stores
    'EventLogStore',
    'ProjectionRepository',
    'ConflictPolicy',
    # Logging
    'configure_logging',
    'get_logger',
    'logging_context',
    # Errors
    'IndexerError',
    'ConfigurationError',
    'ClientError',
    'ConnectivityError',
    'RpcError',
    'StoreError',
    'StoreTransactionError',
    'DuplicatePosition',
    'HandlerError',
    'DuplicateEvent',
    'MissingParentEntity',
    'ArithmeticInvariantViolation',
    'IllegalStatusTransition',
]
