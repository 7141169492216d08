"""DealLocked: move an Active deal to Locked."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection

from ..errors import IllegalStatusTransition
from ..models.deal import DealStatus, normalize_channel_id
from ..models.events import EventName, RawEvent
from .base import EventHandler


class DealLockedHandler(EventHandler):
    event_name = EventName.DEAL_LOCKED.value

    async def apply(
        self, conn: AsyncConnection, event: RawEvent, prepared: Any = None
    ) -> dict[str, Any]:
        deal = await self.require_deal(conn, event)

        if not deal.status.can_transition_to(DealStatus.LOCKED):
            raise IllegalStatusTransition(
                f'Deal {deal.deal_id} cannot move from {deal.status.value} to Locked',
                context={
                    'deal_id': deal.deal_id,
                    'from_status': deal.status.value,
                    'to_status': DealStatus.LOCKED.value,
                },
            )

        channel_id = normalize_channel_id(event.args.get('channelId'))
        await self.repository.update_deal_status(conn, deal.deal_id, DealStatus.LOCKED, channel_id)
        return {'channel_id': channel_id} if channel_id else {}
