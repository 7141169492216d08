"""DealCreated: insert the deal at status Active on first sight."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection

from ..errors import RpcError
from ..models.deal import Deal, DealStatus
from ..models.events import EventName, RawEvent
from .base import EventHandler


class DealCreatedHandler(EventHandler):
    """
    Creates the Deal row.

    The event only carries the token and duration, so the full parameter
    set is read from the contract. If that read fails the event fails and
    nothing is written: a Deal row is never created with fields missing.
    """

    event_name = EventName.DEAL_CREATED.value

    async def prepare(self, event: RawEvent) -> Deal | None:
        # Redelivery of a known deal needs no contract read
        async with self.db.read() as conn:
            if await self.repository.get_deal(conn, event.deal_id) is not None:
                return None
        return await self.chain.get_deal(event.deal_id)

    async def apply(
        self, conn: AsyncConnection, event: RawEvent, prepared: Deal | None = None
    ) -> dict[str, Any]:
        deal_id = event.deal_id
        if await self.repository.get_deal(conn, deal_id) is not None:
            return {'created': False}

        on_chain = prepared
        if on_chain is None:
            raise RpcError(
                f'Contract has no deal {deal_id}',
                context={'deal_id': deal_id},
            )

        deal = on_chain.model_copy(
            update={
                'status': DealStatus.ACTIVE,
                'deposit_token': event.args.get('depositToken', on_chain.deposit_token),
                'duration': int(event.args.get('duration', on_chain.duration)),
            }
        )
        created = await self.repository.upsert_deal(conn, deal)
        return {'created': created}
