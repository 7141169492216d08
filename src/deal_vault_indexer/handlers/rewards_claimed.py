"""
RewardsClaimedFromProtocol: split claimed rewards pro rata across depositors.

Deposits are aggregated per user first, then each user's share is
``floor(user_total * rewards / deal_total)``. Integer division leaves a
residual smaller than the number of users; it is not distributed, but it is
recorded on the event log entry as ``undistributed`` so it is never silently
lost.
"""

from collections import defaultdict
from typing import Any, Iterable

import structlog
from sqlalchemy.ext.asyncio import AsyncConnection

from ..errors import ArithmeticInvariantViolation, MissingParentEntity
from ..models.events import EventName, RawEvent
from ..models.position import Deposit
from .base import EventHandler

logger = structlog.get_logger(__name__)


def split_rewards(deposits: Iterable[Deposit], total_rewards: int) -> tuple[dict[str, int], int]:
    """
    Split ``total_rewards`` across depositors in proportion to their deposits.

    Args:
        deposits: All deposits of one deal
        total_rewards: Rewards claimed for the deal

    Returns:
        (shares keyed by lower-case user address, undistributed residual)

    Raises:
        ArithmeticInvariantViolation: Negative rewards, or shares that would
            exceed the claimed amount
    """
    if total_rewards < 0:
        raise ArithmeticInvariantViolation(
            'Claimed rewards cannot be negative',
            context={'total_rewards': str(total_rewards)},
        )

    per_user: dict[str, int] = defaultdict(int)
    for deposit in deposits:
        per_user[deposit.depositor.lower()] += deposit.amount

    deal_total = sum(per_user.values())
    if deal_total == 0:
        return {}, total_rewards

    shares = {user: amount * total_rewards // deal_total for user, amount in per_user.items()}
    distributed = sum(shares.values())
    if distributed > total_rewards:
        raise ArithmeticInvariantViolation(
            'Reward shares exceed claimed rewards',
            context={'distributed': str(distributed), 'total_rewards': str(total_rewards)},
        )
    return shares, total_rewards - distributed


class RewardsClaimedHandler(EventHandler):
    """
    Splits a claim over the deal's deposits.

    The split needs every deposit: subscriptions are independent, so a
    claim can arrive before Deposited events from earlier blocks. While the
    indexed deposits add up to less than the deal's contract total the
    claim is deferred as a missing parent. On its final attempt it is split
    over what is indexed and the shortfall is logged.
    """

    event_name = EventName.REWARDS_CLAIMED.value

    async def apply(
        self, conn: AsyncConnection, event: RawEvent, prepared: Any = None
    ) -> dict[str, Any]:
        deal = await self.require_deal(conn, event)
        total_rewards = int(event.args['rewards'])

        deposits = await self.repository.list_deposits(conn, deal.deal_id)
        indexed_total = sum(d.amount for d in deposits)
        if indexed_total < deal.total_deposited:
            context = {
                'deal_id': deal.deal_id,
                'indexed_total': str(indexed_total),
                'deal_total': str(deal.total_deposited),
            }
            if not event.final_attempt:
                raise MissingParentEntity(
                    f'Deposits of deal {deal.deal_id} not fully indexed',
                    context=context,
                )
            logger.error('handler.rewards_incomplete_deposits', **context)

        shares, residual = split_rewards(deposits, total_rewards)

        for user, amount in shares.items():
            await self.repository.upsert_reward(conn, deal.deal_id, user, amount)

        if residual:
            logger.info(
                'handler.rewards_residual',
                deal_id=deal.deal_id,
                undistributed=str(residual),
                depositor_count=len(shares),
            )

        return {'undistributed': residual, 'recipients': len(shares)}
