"""
Tests for the Reconciler against a real SQLite database.
"""

import asyncio

import pytest

from deal_vault_indexer.coordinator import DealLocks
from deal_vault_indexer.errors import ConnectivityError
from deal_vault_indexer.models.deal import DealStatus
from deal_vault_indexer.reconciler import ReconcileAction, Reconciler
from deal_vault_indexer.repository import ProjectionRepository

from conftest import make_deal

repo = ProjectionRepository()


async def _seed(db, *deals):
    async with db.transaction() as conn:
        for deal in deals:
            await repo.upsert_deal(conn, deal)


async def _deal(db, deal_id=1):
    async with db.read() as conn:
        return await repo.get_deal(conn, deal_id)


@pytest.fixture
def reconciler(db, chain):
    return Reconciler(db, chain)


class TestReconcileDeal:
    @pytest.mark.asyncio
    async def test_creates_missing_deal_as_contract_reports_it(self, db, chain, reconciler):
        chain.deals[1] = make_deal(1, status=DealStatus.LOCKED, total_deposited=400)

        result = await reconciler.reconcile_deal(1)

        assert result.action is ReconcileAction.CREATED
        assert await _deal(db) == chain.deals[1]

    @pytest.mark.asyncio
    async def test_unchanged(self, db, chain, reconciler):
        chain.deals[1] = make_deal(1)
        await _seed(db, make_deal(1))

        result = await reconciler.reconcile_deal(1)

        assert result.action is ReconcileAction.UNCHANGED
        assert result.changes == {}

    @pytest.mark.asyncio
    async def test_not_on_chain(self, db, reconciler):
        result = await reconciler.reconcile_deal(5)

        assert result.action is ReconcileAction.NOT_ON_CHAIN
        assert await _deal(db, 5) is None

    @pytest.mark.asyncio
    async def test_advances_status_through_intermediate_states(self, db, chain, reconciler):
        await _seed(db, make_deal(1))
        chain.deals[1] = make_deal(1, status=DealStatus.SETTLING, channel_id='0x' + '02' * 32)

        result = await reconciler.reconcile_deal(1)

        deal = await _deal(db)
        assert result.action is ReconcileAction.UPDATED
        assert result.changes['status'] == 'Settling'
        assert deal.status is DealStatus.SETTLING
        assert deal.channel_id == '0x' + '02' * 32

    @pytest.mark.asyncio
    async def test_never_regresses_status(self, db, chain, reconciler):
        await _seed(db, make_deal(1))
        async with db.transaction() as conn:
            await repo.update_deal_status(conn, 1, DealStatus.FINALIZED)
        chain.deals[1] = make_deal(1, status=DealStatus.ACTIVE)

        result = await reconciler.reconcile_deal(1)

        assert result.action is ReconcileAction.UNCHANGED
        assert (await _deal(db)).status is DealStatus.FINALIZED

    @pytest.mark.asyncio
    async def test_locked_cannot_become_cancelled(self, db, chain, reconciler):
        await _seed(db, make_deal(1, status=DealStatus.LOCKED))
        chain.deals[1] = make_deal(1, status=DealStatus.CANCELLED)

        await reconciler.reconcile_deal(1)

        assert (await _deal(db)).status is DealStatus.LOCKED

    @pytest.mark.asyncio
    async def test_adopts_contract_total(self, db, chain, reconciler):
        await _seed(db, make_deal(1, total_deposited=100))
        chain.deals[1] = make_deal(1, total_deposited=250)

        result = await reconciler.reconcile_deal(1)

        assert result.changes == {'total_deposited': '250'}
        assert (await _deal(db)).total_deposited == 250

    @pytest.mark.asyncio
    async def test_refuses_lower_total_while_active(self, db, chain, reconciler):
        await _seed(db, make_deal(1, total_deposited=100))
        chain.deals[1] = make_deal(1, total_deposited=40)

        await reconciler.reconcile_deal(1)

        assert (await _deal(db)).total_deposited == 100

    @pytest.mark.asyncio
    async def test_lower_total_allowed_once_not_active(self, db, chain, reconciler):
        await _seed(db, make_deal(1, status=DealStatus.SETTLING, total_deposited=100))
        chain.deals[1] = make_deal(1, status=DealStatus.FINALIZED, total_deposited=0)

        await reconciler.reconcile_deal(1)

        deal = await _deal(db)
        assert deal.total_deposited == 0
        assert deal.status is DealStatus.FINALIZED

    @pytest.mark.asyncio
    async def test_refreshes_metadata(self, db, chain, reconciler):
        await _seed(db, make_deal(1, expected_yield=500))
        chain.deals[1] = make_deal(1, expected_yield=650)

        result = await reconciler.reconcile_deal(1)

        assert result.changes == {'expected_yield': '650'}
        assert (await _deal(db)).expected_yield == 650

    @pytest.mark.asyncio
    async def test_chain_failure_is_reported(self, db, chain, reconciler):
        chain.get_deal_error = ConnectivityError('down')

        result = await reconciler.reconcile_deal(1)

        assert result.action is ReconcileAction.FAILED
        assert 'down' in result.error

    @pytest.mark.asyncio
    async def test_waits_for_deal_lock(self, db, chain):
        locks = DealLocks()
        reconciler = Reconciler(db, chain, locks=locks)
        chain.deals[1] = make_deal(1)

        async with locks.for_deal(1):
            task = asyncio.create_task(reconciler.reconcile_deal(1))
            await asyncio.sleep(0.01)
            assert not task.done()

        result = await asyncio.wait_for(task, timeout=1)
        assert result.action is ReconcileAction.CREATED


class TestReconcileMany:
    @pytest.mark.asyncio
    async def test_reconcile_all_covers_known_deals(self, db, chain, reconciler):
        await _seed(db, make_deal(1), make_deal(3))
        chain.deals[1] = make_deal(1, status=DealStatus.LOCKED)
        chain.deals[2] = make_deal(2)
        chain.deals[3] = make_deal(3)

        results = await reconciler.reconcile_all()

        assert [(r.deal_id, r.action) for r in results] == [
            (1, ReconcileAction.UPDATED),
            (3, ReconcileAction.UNCHANGED),
        ]
        assert await _deal(db, 2) is None

    @pytest.mark.asyncio
    async def test_reconcile_range(self, db, chain, reconciler):
        chain.deals[2] = make_deal(2)

        results = await reconciler.reconcile_range(1, 3)

        assert [r.action for r in results] == [
            ReconcileAction.NOT_ON_CHAIN,
            ReconcileAction.CREATED,
            ReconcileAction.NOT_ON_CHAIN,
        ]

    @pytest.mark.asyncio
    async def test_empty_range_rejected(self, reconciler):
        with pytest.raises(ValueError):
            await reconciler.reconcile_range(5, 1)
