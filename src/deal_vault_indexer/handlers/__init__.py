"""
Event handlers: one per DealVault event type.

Each handler writes its projection change and the event log entry in one
transaction, and reports the result as a HandlerResult.
"""

from ..clients.chain_client import ChainClient
from ..clients.database_client import DatabaseClient
from ..event_log import EventLogStore
from ..repository import ProjectionRepository
from .base import EventHandler, HandlerOutcome, HandlerResult
from .deal_created import DealCreatedHandler
from .deal_locked import DealLockedHandler
from .deposited import DepositedHandler
from .rewards_claimed import RewardsClaimedHandler, split_rewards

HANDLER_CLASSES: tuple[type[EventHandler], ...] = (
    DealCreatedHandler,
    DepositedHandler,
    DealLockedHandler,
    RewardsClaimedHandler,
)


def build_handlers(
    db: DatabaseClient,
    chain: ChainClient,
    repository: ProjectionRepository | None = None,
    event_log: EventLogStore | None = None,
) -> dict[str, EventHandler]:
    """Instantiate every handler, keyed by the event name it consumes."""
    repository = repository or ProjectionRepository()
    event_log = event_log or EventLogStore()
    return {
        cls.event_name: cls(db, chain, repository=repository, event_log=event_log)
        for cls in HANDLER_CLASSES
    }


__all__ = [
    'DealCreatedHandler',
    'DealLockedHandler',
    'DepositedHandler',
    'EventHandler',
    'HANDLER_CLASSES',
    'HandlerOutcome',
    'HandlerResult',
    'RewardsClaimedHandler',
    'build_handlers',
    'split_rewards',
]
