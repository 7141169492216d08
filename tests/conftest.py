"""
Pytest configuration and shared fixtures.

Key fixtures:
- db: DatabaseClient on a temporary file-backed SQLite database, schema created
- chain: FakeChain standing in for ChainClient (getDeal answers from a dict)
- make_event: factory for RawEvents with a deterministic timestamp resolver
- handlers: every event handler wired to db + chain

NOTE: SQLite in-memory databases are per connection, so the store fixtures
use a file under tmp_path; every test gets a fresh database.
"""

import sys
from itertools import count
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

# Add src to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from deal_vault_indexer.clients.abi import DEAL_VAULT_ABI
from deal_vault_indexer.clients.database_client import DatabaseClient
from deal_vault_indexer.handlers import build_handlers
from deal_vault_indexer.models.deal import Deal, DealStatus
from deal_vault_indexer.models.events import RawEvent

CONTRACT = '0x' + 'ab' * 20
TOKEN = '0x' + '11' * 20
USER_A = '0x' + 'aa' * 20
USER_B = '0x' + 'bb' * 20
USER_C = '0x' + 'cc' * 20
BASE_TIMESTAMP = 1_700_000_000


def make_deal(deal_id: int = 1, **overrides: Any) -> Deal:
    fields: dict[str, Any] = {
        'deal_id': deal_id,
        'deposit_token': TOKEN,
        'min_deposit': 10,
        'max_deposit': 10**24,
        'total_deposited': 0,
        'start_time': BASE_TIMESTAMP,
        'duration': 30 * 24 * 3600,
        'status': DealStatus.ACTIVE,
        'expected_yield': 500,
        'channel_id': None,
    }
    fields.update(overrides)
    return Deal(**fields)


class FakeChain:
    """
    In-memory stand-in for ChainClient.

    ``deals`` plays the contract's storage: get_deal answers from it.
    Set ``get_deal_error`` to make every getDeal call raise.
    """

    def __init__(self):
        self.abi = DEAL_VAULT_ABI
        self.deals: dict[int, Deal] = {}
        self.get_deal_calls: list[int] = []
        self.get_deal_error: Exception | None = None

    async def get_deal(self, deal_id: int) -> Deal | None:
        self.get_deal_calls.append(deal_id)
        if self.get_deal_error is not None:
            raise self.get_deal_error
        deal = self.deals.get(deal_id)
        return deal.model_copy() if deal is not None else None

    async def block_timestamp(self, block_number: int) -> int:
        return BASE_TIMESTAMP + block_number

    def deposit(self, deal_id: int, amount: int) -> None:
        """Mimic the contract's bookkeeping for a deposit."""
        deal = self.deals[deal_id]
        self.deals[deal_id] = deal.model_copy(
            update={'total_deposited': deal.total_deposited + amount}
        )


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}"


@pytest_asyncio.fixture
async def db(database_url):
    """DatabaseClient with the schema in place."""
    client = DatabaseClient(database_url)
    await client.connect()
    await client.setup_schema()
    yield client
    await client.close()


@pytest.fixture
def handlers(db, chain):
    return build_handlers(db, chain)


@pytest.fixture
def make_event(chain):
    """
    Build RawEvents with unique identities.

    Usage:
        make_event('Deposited', dealId=1, depositor=USER_A, positionId=10, amount=100)
        make_event('DealCreated', tx_hash='0x01', log_index=0, dealId=1)
    """
    blocks = count(100)

    def _make(name: str, tx_hash: str | None = None, log_index: int = 0,
              block_number: int | None = None, **args: Any) -> RawEvent:
        block = block_number if block_number is not None else next(blocks)
        return RawEvent(
            name=name,
            args=args,
            tx_hash=tx_hash or '0x' + format(block, '064x'),
            block_number=block,
            log_index=log_index,
            contract_address=CONTRACT,
            timestamp_resolver=chain.block_timestamp,
        )

    return _make
