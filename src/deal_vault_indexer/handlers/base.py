"""
Base class for DealVault event handlers.

Every handler runs the same envelope around its business logic:

1. Resolve the event's block timestamp and run ``prepare`` (contract
   reads), both outside the transaction
2. Open one database transaction
3. Record the event log entry (dedup fence; a repeat ends here as success)
4. Apply the projection change (subclass ``apply``)
5. Annotate the log entry with any computed facts, then commit

Any exception rolls the whole transaction back and is mapped to a
HandlerResult outcome. Nothing escapes ``handle``: one bad event never
stops the indexer.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

import structlog
from sqlalchemy.ext.asyncio import AsyncConnection

from ..clients.chain_client import ChainClient
from ..clients.database_client import DatabaseClient
from ..errors import (
    ArithmeticInvariantViolation,
    DuplicateEvent,
    DuplicatePosition,
    IllegalStatusTransition,
    IndexerError,
    MissingParentEntity,
)
from ..event_log import EventLogStore
from ..logging import logging_context
from ..models.deal import Deal
from ..models.events import EventLogEntry, RawEvent, RecordOutcome
from ..repository import ProjectionRepository

logger = structlog.get_logger(__name__)


class HandlerOutcome(str, Enum):
    """How a single event ended."""

    APPLIED = 'applied'
    DUPLICATE = 'duplicate'
    DROPPED = 'dropped'  # missing parent; eligible for reconciliation
    DISCARDED = 'discarded'  # illegal status transition
    REJECTED = 'rejected'  # arithmetic invariant violation or conflicting position
    FAILED = 'failed'


@dataclass
class HandlerResult:
    """Result of handling one event."""

    event_name: str
    tx_hash: str
    log_index: int
    outcome: HandlerOutcome
    deal_id: int | None = None
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    processing_time_ms: int | None = None

    @property
    def success(self) -> bool:
        """Applied and duplicate are both successes."""
        return self.outcome in (HandlerOutcome.APPLIED, HandlerOutcome.DUPLICATE)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging."""
        return {
            'event_name': self.event_name,
            'tx_hash': self.tx_hash,
            'log_index': self.log_index,
            'deal_id': self.deal_id,
            'outcome': self.outcome.value,
            'error': self.error,
            'processing_time_ms': self.processing_time_ms,
        }


class EventHandler:
    """
    Transactional wrapper shared by all event handlers.

    Subclasses set ``event_name`` and implement ``apply``.
    """

    event_name: ClassVar[str]

    def __init__(
        self,
        db: DatabaseClient,
        chain: ChainClient,
        repository: ProjectionRepository | None = None,
        event_log: EventLogStore | None = None,
    ):
        self.db = db
        self.chain = chain
        self.repository = repository or ProjectionRepository()
        self.event_log = event_log or EventLogStore()

    async def prepare(self, event: RawEvent) -> Any:
        """
        Read whatever ``apply`` needs from the contract.

        Runs before the transaction opens, so RPC retries never hold a
        database connection. The return value is passed to ``apply``.
        """
        return None

    async def apply(
        self, conn: AsyncConnection, event: RawEvent, prepared: Any = None
    ) -> dict[str, Any]:
        """
        Apply the event to the projection inside the open transaction.

        Returns:
            Facts to annotate onto the event log entry (may be empty)
        """
        raise NotImplementedError

    async def require_deal(self, conn: AsyncConnection, event: RawEvent) -> Deal:
        """Load the event's parent deal or fail soft with MissingParentEntity."""
        deal_id = event.deal_id
        deal = await self.repository.get_deal(conn, deal_id) if deal_id is not None else None
        if deal is None:
            raise MissingParentEntity(
                f'Deal {deal_id} not indexed yet',
                context={'deal_id': deal_id, 'event_name': event.name},
            )
        return deal

    async def handle(self, event: RawEvent) -> HandlerResult:
        """Process one event end to end. Never raises."""
        t0 = time.monotonic()
        result = HandlerResult(
            event_name=event.name,
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            deal_id=event.deal_id,
            outcome=HandlerOutcome.APPLIED,
        )

        with logging_context(
            event_name=event.name,
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            deal_id=event.deal_id,
        ):
            try:
                result.data = await self._process(event)
                logger.info('handler.applied', block_number=event.block_number, **result.data)
            except DuplicateEvent:
                result.outcome = HandlerOutcome.DUPLICATE
                logger.debug('handler.duplicate')
            except MissingParentEntity as e:
                result.outcome = HandlerOutcome.DROPPED
                result.error = str(e)
                logger.warning('handler.missing_parent', error=e.message)
            except IllegalStatusTransition as e:
                result.outcome = HandlerOutcome.DISCARDED
                result.error = str(e)
                logger.warning('handler.illegal_transition', error=e.message, **e.context)
            except (ArithmeticInvariantViolation, DuplicatePosition) as e:
                result.outcome = HandlerOutcome.REJECTED
                result.error = str(e)
                logger.error('handler.invariant_violation', error=e.message, **e.context)
            except IndexerError as e:
                result.outcome = HandlerOutcome.FAILED
                result.error = str(e)
                logger.error(
                    'handler.failed',
                    error=e.message,
                    error_type=type(e).__name__,
                    context=e.context,
                )
            except Exception as e:
                result.outcome = HandlerOutcome.FAILED
                result.error = f'{type(e).__name__}: {e}'
                logger.exception('handler.unexpected_error', error_type=type(e).__name__)

        result.processing_time_ms = int((time.monotonic() - t0) * 1000)
        return result

    async def _process(self, event: RawEvent) -> dict[str, Any]:
        entry = await EventLogEntry.from_raw(event)
        prepared = await self.prepare(event)

        async with self.db.transaction() as conn:
            if await self.event_log.record(conn, entry) is RecordOutcome.ALREADY_EXISTS:
                raise DuplicateEvent(
                    'Event already processed',
                    context={'tx_hash': entry.tx_hash, 'log_index': entry.log_index},
                )

            facts = await self.apply(conn, event, prepared)
            if facts:
                await self.event_log.annotate(conn, entry, facts)

        return facts
