"""Deposited: record the position and adopt the contract's deal total."""

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncConnection

from ..errors import ArithmeticInvariantViolation, RpcError
from ..models.deal import Deal, DealStatus
from ..models.events import EventName, RawEvent
from ..models.position import Deposit
from .base import EventHandler

logger = structlog.get_logger(__name__)


class DepositedHandler(EventHandler):
    """
    Inserts the Deposit and refreshes Deal.total_deposited.

    The new total is re-read from the contract rather than summed locally,
    so a missed Deposited event cannot make the stored total drift. The
    contract is read in ``prepare``, before the transaction opens; the
    coordinator's deal lock still orders it with the write.
    """

    event_name = EventName.DEPOSITED.value

    async def prepare(self, event: RawEvent) -> Deal | None:
        return await self.chain.get_deal(event.deal_id)

    async def apply(
        self, conn: AsyncConnection, event: RawEvent, prepared: Deal | None = None
    ) -> dict[str, Any]:
        amount = int(event.args['amount'])
        if amount <= 0:
            raise ArithmeticInvariantViolation(
                'Deposit amount must be positive',
                context={'amount': amount, 'position_id': event.args.get('positionId')},
            )

        deal = await self.require_deal(conn, event)

        deposit = Deposit(
            position_id=int(event.args['positionId']),
            deal_id=deal.deal_id,
            depositor=event.args['depositor'],
            amount=amount,
            tx_hash=event.tx_hash,
            block_number=event.block_number,
            timestamp=await event.block_timestamp(),
        )
        inserted = await self.repository.upsert_deposit(conn, deposit)

        on_chain = prepared
        if on_chain is None:
            raise RpcError(
                f'Contract has no deal {deal.deal_id}',
                context={'deal_id': deal.deal_id},
            )
        new_total = on_chain.total_deposited

        if deal.status is DealStatus.ACTIVE and new_total < deal.total_deposited:
            raise ArithmeticInvariantViolation(
                'Deal total would decrease while Active',
                context={
                    'deal_id': deal.deal_id,
                    'stored_total': str(deal.total_deposited),
                    'new_total': str(new_total),
                },
            )

        if new_total != deal.total_deposited:
            await self.repository.update_deal_totals(conn, deal.deal_id, new_total)

        local_sum = sum(d.amount for d in await self.repository.list_deposits(conn, deal.deal_id))
        if local_sum != new_total:
            logger.warning(
                'handler.deposit_total_drift',
                deal_id=deal.deal_id,
                local_sum=str(local_sum),
                contract_total=str(new_total),
            )

        return {'position_inserted': inserted, 'total_deposited': new_total}
