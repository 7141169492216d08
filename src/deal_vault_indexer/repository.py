"""
Projection repository: Deal, Deposit and Reward state.

Handlers are the only writers. Every write method takes the caller's
connection, so multi-entity changes (a deposit plus its deal total) commit
as one transaction together with the event log entry.

Key design decisions:
- upsert_deal() never touches an existing deal's status or totals; a
  redelivered DealCreated leaves the row as it is.
- upsert_deposit() is insert-only. Identical redelivery is a no-op, a
  conflicting one raises DuplicatePosition.
- upsert_reward() overwrites (last write wins); it never accumulates.
- Read methods used by the HTTP read API live here too; they accept a
  connection from DatabaseClient.read().
"""

from enum import Enum

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from .errors import DuplicatePosition
from .models.deal import Deal, DealStats, DealStatus
from .models.position import Deposit, Reward

logger = structlog.get_logger(__name__)

_DEAL_COLUMNS = """
    deal_id, deposit_token, min_deposit, max_deposit, total_deposited,
    start_time, duration, status, expected_yield, channel_id
"""

_DEPOSIT_COLUMNS = """
    position_id, deal_id, depositor, amount, tx_hash, block_number, timestamp
"""


class ConflictPolicy(str, Enum):
    """What upsert_deal does when the deal already exists."""

    KEEP_EXISTING = 'keep_existing'
    REFRESH_METADATA = 'refresh_metadata'


class ProjectionRepository:
    """
    CRUD operations for the projection tables.

    Stateless: all state lives in the database, reached through the
    connection passed to each call.
    """

    # =========================================================================
    # Deal Operations
    # =========================================================================

    async def upsert_deal(
        self,
        conn: AsyncConnection,
        deal: Deal,
        conflict_policy: ConflictPolicy = ConflictPolicy.KEEP_EXISTING,
    ) -> bool:
        """
        Insert a deal on first sight.

        Args:
            conn: Connection inside the caller's transaction
            deal: Deal to insert
            conflict_policy: KEEP_EXISTING leaves an existing row untouched;
                REFRESH_METADATA rewrites its immutable parameters (token,
                bounds, start, duration, yield) but never status or totals.

        Returns:
            True when a new row was inserted
        """
        if conflict_policy is ConflictPolicy.KEEP_EXISTING:
            on_conflict = 'DO NOTHING'
        else:
            on_conflict = """DO UPDATE SET
                deposit_token = EXCLUDED.deposit_token,
                min_deposit = EXCLUDED.min_deposit,
                max_deposit = EXCLUDED.max_deposit,
                start_time = EXCLUDED.start_time,
                duration = EXCLUDED.duration,
                expected_yield = EXCLUDED.expected_yield"""

        existed = await self.get_deal(conn, deal.deal_id) is not None

        sql = text(f"""
            INSERT INTO deals ({_DEAL_COLUMNS})
            VALUES (
                :deal_id, :deposit_token, :min_deposit, :max_deposit,
                :total_deposited, :start_time, :duration, :status,
                :expected_yield, :channel_id
            )
            ON CONFLICT (deal_id) {on_conflict}
        """)
        await conn.execute(sql, deal.to_row())

        logger.debug(
            'repository.upsert_deal',
            deal_id=deal.deal_id,
            inserted=not existed,
            conflict_policy=conflict_policy.value,
        )
        return not existed

    async def get_deal(self, conn: AsyncConnection, deal_id: int) -> Deal | None:
        sql = text(f'SELECT {_DEAL_COLUMNS} FROM deals WHERE deal_id = :deal_id')
        result = await conn.execute(sql, {'deal_id': deal_id})
        row = result.mappings().first()
        return Deal.from_row(row) if row else None

    async def list_deals(
        self,
        conn: AsyncConnection,
        status: DealStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Deal]:
        """Deals, newest deal ID first, optionally filtered by status."""
        where = 'WHERE status = :status' if status is not None else ''
        sql = text(f"""
            SELECT {_DEAL_COLUMNS} FROM deals
            {where}
            ORDER BY deal_id DESC
            LIMIT :limit OFFSET :offset
        """)
        params: dict[str, object] = {'limit': limit, 'offset': offset}
        if status is not None:
            params['status'] = status.value
        result = await conn.execute(sql, params)
        return [Deal.from_row(row) for row in result.mappings()]

    async def list_deal_ids(self, conn: AsyncConnection) -> list[int]:
        result = await conn.execute(text('SELECT deal_id FROM deals ORDER BY deal_id'))
        return [int(row[0]) for row in result]

    async def count_deals(self, conn: AsyncConnection, status: DealStatus | None = None) -> int:
        if status is None:
            result = await conn.execute(text('SELECT COUNT(*) FROM deals'))
        else:
            result = await conn.execute(
                text('SELECT COUNT(*) FROM deals WHERE status = :status'),
                {'status': status.value},
            )
        return int(result.scalar_one())

    async def update_deal_totals(
        self,
        conn: AsyncConnection,
        deal_id: int,
        new_total: int,
    ) -> None:
        """Set total_deposited. Invariant checks are the caller's job."""
        sql = text("""
            UPDATE deals SET total_deposited = :total_deposited
            WHERE deal_id = :deal_id
        """)
        await conn.execute(sql, {'deal_id': deal_id, 'total_deposited': str(new_total)})
        logger.debug('repository.update_deal_totals', deal_id=deal_id, total_deposited=new_total)

    async def update_deal_status(
        self,
        conn: AsyncConnection,
        deal_id: int,
        status: DealStatus,
        channel_id: str | None = None,
    ) -> None:
        """Set status; channel_id is only written when given."""
        if channel_id is not None:
            sql = text("""
                UPDATE deals SET status = :status, channel_id = :channel_id
                WHERE deal_id = :deal_id
            """)
            params = {'deal_id': deal_id, 'status': status.value, 'channel_id': channel_id}
        else:
            sql = text('UPDATE deals SET status = :status WHERE deal_id = :deal_id')
            params = {'deal_id': deal_id, 'status': status.value}
        await conn.execute(sql, params)
        logger.debug(
            'repository.update_deal_status',
            deal_id=deal_id,
            status=status.value,
            channel_id=channel_id,
        )

    # =========================================================================
    # Deposit Operations
    # =========================================================================

    async def upsert_deposit(self, conn: AsyncConnection, deposit: Deposit) -> bool:
        """
        Insert a deposit; never updates an existing one.

        Returns:
            True when inserted, False for an identical redelivery

        Raises:
            DuplicatePosition: The position exists with different values
        """
        sql = text(f"""
            INSERT INTO deposits ({_DEPOSIT_COLUMNS})
            VALUES (
                :position_id, :deal_id, :depositor, :amount,
                :tx_hash, :block_number, :timestamp
            )
            ON CONFLICT (position_id) DO NOTHING
        """)
        result = await conn.execute(sql, deposit.to_row())
        if result.rowcount != 0:
            return True

        existing = await self.get_deposit(conn, deposit.position_id)
        if existing != deposit:
            raise DuplicatePosition(
                f'Position {deposit.position_id} already recorded with different values',
                context={
                    'position_id': deposit.position_id,
                    'existing': existing.model_dump() if existing else None,
                    'incoming': deposit.model_dump(),
                },
            )
        return False

    async def get_deposit(self, conn: AsyncConnection, position_id: int) -> Deposit | None:
        sql = text(f'SELECT {_DEPOSIT_COLUMNS} FROM deposits WHERE position_id = :position_id')
        result = await conn.execute(sql, {'position_id': position_id})
        row = result.mappings().first()
        return Deposit.from_row(row) if row else None

    async def list_deposits(self, conn: AsyncConnection, deal_id: int) -> list[Deposit]:
        """All deposits of a deal in position order."""
        sql = text(f"""
            SELECT {_DEPOSIT_COLUMNS} FROM deposits
            WHERE deal_id = :deal_id
            ORDER BY position_id
        """)
        result = await conn.execute(sql, {'deal_id': deal_id})
        return [Deposit.from_row(row) for row in result.mappings()]

    async def list_deposits_for_user(self, conn: AsyncConnection, user_address: str) -> list[Deposit]:
        sql = text(f"""
            SELECT {_DEPOSIT_COLUMNS} FROM deposits
            WHERE depositor = :depositor
            ORDER BY timestamp DESC, position_id DESC
        """)
        result = await conn.execute(sql, {'depositor': user_address.lower()})
        return [Deposit.from_row(row) for row in result.mappings()]

    # =========================================================================
    # Reward Operations
    # =========================================================================

    async def upsert_reward(
        self,
        conn: AsyncConnection,
        deal_id: int,
        user_address: str,
        amount: int,
    ) -> None:
        """Write a user's reward for a deal, replacing any previous amount."""
        sql = text("""
            INSERT INTO rewards (deal_id, user_address, reward_amount)
            VALUES (:deal_id, :user_address, :reward_amount)
            ON CONFLICT (deal_id, user_address) DO UPDATE SET
                reward_amount = EXCLUDED.reward_amount
        """)
        await conn.execute(
            sql,
            {
                'deal_id': deal_id,
                'user_address': user_address.lower(),
                'reward_amount': str(amount),
            },
        )

    async def list_rewards_for_deal(self, conn: AsyncConnection, deal_id: int) -> list[Reward]:
        sql = text("""
            SELECT deal_id, user_address, reward_amount FROM rewards
            WHERE deal_id = :deal_id
            ORDER BY user_address
        """)
        result = await conn.execute(sql, {'deal_id': deal_id})
        return [Reward.from_row(row) for row in result.mappings()]

    async def list_rewards_for_user(self, conn: AsyncConnection, user_address: str) -> list[Reward]:
        sql = text("""
            SELECT deal_id, user_address, reward_amount FROM rewards
            WHERE user_address = :user_address
            ORDER BY deal_id DESC
        """)
        result = await conn.execute(sql, {'user_address': user_address.lower()})
        return [Reward.from_row(row) for row in result.mappings()]

    # =========================================================================
    # Aggregates
    # =========================================================================

    async def deal_stats(self, conn: AsyncConnection, deal_id: int) -> DealStats | None:
        """Depositor count, total rewards and average deposit for one deal."""
        deal = await self.get_deal(conn, deal_id)
        if deal is None:
            return None

        deposits = await self.list_deposits(conn, deal_id)
        rewards = await self.list_rewards_for_deal(conn, deal_id)
        return DealStats(
            deal_id=deal_id,
            depositor_count=len(deposits),
            total_deposited=deal.total_deposited,
            total_rewards=sum(r.amount for r in rewards),
        )
