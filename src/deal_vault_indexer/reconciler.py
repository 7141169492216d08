"""
Reconciler: re-derive deals from the contract.

The indexer consumes four events, but a deal can move through Settling,
Finalized or Cancelled without any of them, and a deal whose DealCreated
was missed is never created by events alone. Reconciliation reads getDeal
for each deal and brings the projection forward:

- absent locally: insert it as the contract reports it
- present: refresh immutable parameters, adopt the contract's total,
  advance status along legal transitions only

It never moves a status backwards and never lowers an Active deal's total.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from .clients.chain_client import ChainClient
from .clients.database_client import DatabaseClient
from .coordinator import DealLocks
from .errors import IndexerError
from .logging import logging_context
from .models.deal import Deal, DealStatus
from .repository import ConflictPolicy, ProjectionRepository

logger = structlog.get_logger(__name__)


class ReconcileAction(str, Enum):
    CREATED = 'created'
    UPDATED = 'updated'
    UNCHANGED = 'unchanged'
    NOT_ON_CHAIN = 'not_on_chain'
    FAILED = 'failed'


@dataclass
class ReconcileResult:
    """What reconciling one deal changed."""

    deal_id: int
    action: ReconcileAction
    changes: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'deal_id': self.deal_id,
            'action': self.action.value,
            'changes': self.changes,
            'error': self.error,
        }


class Reconciler:
    """Brings locally indexed deals in line with the contract."""

    def __init__(
        self,
        db: DatabaseClient,
        chain: ChainClient,
        repository: ProjectionRepository | None = None,
        locks: DealLocks | None = None,
    ):
        self.db = db
        self.chain = chain
        self.repository = repository or ProjectionRepository()
        self.locks = locks or DealLocks()

    async def reconcile_deal(self, deal_id: int) -> ReconcileResult:
        """Reconcile one deal. Never raises for chain or store failures."""
        async with self.locks.for_deal(deal_id):
            with logging_context(deal_id=deal_id):
                try:
                    result = await self._reconcile(deal_id)
                except IndexerError as e:
                    logger.error(
                        'reconciler.failed',
                        error=e.message,
                        error_type=type(e).__name__,
                        context=e.context,
                    )
                    return ReconcileResult(deal_id, ReconcileAction.FAILED, error=str(e))

        logger.info('reconciler.deal_reconciled', **result.to_dict())
        return result

    async def _reconcile(self, deal_id: int) -> ReconcileResult:
        on_chain = await self.chain.get_deal(deal_id)
        if on_chain is None:
            return ReconcileResult(deal_id, ReconcileAction.NOT_ON_CHAIN)

        async with self.db.transaction() as conn:
            local = await self.repository.get_deal(conn, deal_id)
            if local is None:
                await self.repository.upsert_deal(conn, on_chain)
                return ReconcileResult(
                    deal_id,
                    ReconcileAction.CREATED,
                    changes={'status': on_chain.status.value},
                )

            changes = self._metadata_changes(local, on_chain)
            if changes:
                await self.repository.upsert_deal(
                    conn, on_chain, conflict_policy=ConflictPolicy.REFRESH_METADATA
                )

            if on_chain.total_deposited != local.total_deposited:
                if local.status is DealStatus.ACTIVE and on_chain.total_deposited < local.total_deposited:
                    logger.error(
                        'reconciler.total_regression',
                        stored_total=str(local.total_deposited),
                        contract_total=str(on_chain.total_deposited),
                    )
                else:
                    await self.repository.update_deal_totals(conn, deal_id, on_chain.total_deposited)
                    changes['total_deposited'] = str(on_chain.total_deposited)

            if on_chain.status != local.status:
                if local.status.can_reach(on_chain.status):
                    await self.repository.update_deal_status(
                        conn, deal_id, on_chain.status, on_chain.channel_id
                    )
                    changes['status'] = on_chain.status.value
                else:
                    logger.warning(
                        'reconciler.status_regression',
                        stored_status=local.status.value,
                        contract_status=on_chain.status.value,
                    )
            elif on_chain.channel_id and on_chain.channel_id != local.channel_id:
                await self.repository.update_deal_status(
                    conn, deal_id, local.status, on_chain.channel_id
                )
                changes['channel_id'] = on_chain.channel_id

        action = ReconcileAction.UPDATED if changes else ReconcileAction.UNCHANGED
        return ReconcileResult(deal_id, action, changes=changes)

    @staticmethod
    def _metadata_changes(local: Deal, on_chain: Deal) -> dict[str, Any]:
        fields = ('deposit_token', 'min_deposit', 'max_deposit', 'start_time', 'duration', 'expected_yield')
        return {
            name: str(getattr(on_chain, name))
            for name in fields
            if getattr(local, name) != getattr(on_chain, name)
        }

    async def reconcile_range(self, first: int, last: int) -> list[ReconcileResult]:
        """Reconcile every deal ID in ``first..last`` inclusive."""
        if last < first:
            raise ValueError(f'Empty deal range: {first}..{last}')
        return await self._reconcile_many(range(first, last + 1))

    async def reconcile_all(self) -> list[ReconcileResult]:
        """Reconcile every locally known deal."""
        async with self.db.read() as conn:
            deal_ids = await self.repository.list_deal_ids(conn)
        return await self._reconcile_many(deal_ids)

    async def _reconcile_many(self, deal_ids) -> list[ReconcileResult]:
        t0 = time.monotonic()
        results = [await self.reconcile_deal(deal_id) for deal_id in deal_ids]

        summary: dict[str, int] = {}
        for result in results:
            summary[result.action.value] = summary.get(result.action.value, 0) + 1
        logger.info(
            'reconciler.completed',
            deals=len(results),
            duration_ms=int((time.monotonic() - t0) * 1000),
            **summary,
        )
        return results
