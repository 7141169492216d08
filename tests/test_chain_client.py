"""
Tests for the ChainClient.

AsyncWeb3 is replaced by a small fake on ``client._w3`` and the contract
binding by a MagicMock on ``client._contract``; no network is touched.

Tests cover:
- Construction: address validation, ABI loading
- getDeal tuple decoding (missing deal, status codes, zero channel)
- Block timestamp caching
- Retry on ConnectivityError only
- subscribe: block windows, confirmations, ordering, decode failures,
  recovery from RPC failures without skipping a range
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from tenacity import stop_after_attempt, wait_none
from web3 import Web3

from deal_vault_indexer.clients.abi import DEAL_VAULT_ABI, event_signature, load_abi
from deal_vault_indexer.clients.chain_client import ChainClient, normalize_arg
from deal_vault_indexer.errors import ConfigurationError, ConnectivityError, RpcError
from deal_vault_indexer.models.deal import ZERO_ADDRESS, DealStatus

from conftest import CONTRACT, TOKEN, USER_A

CHECKSUM_USER_A = Web3.to_checksum_address(USER_A)


class FakeEth:
    def __init__(self, logs=None):
        self.logs = logs or []
        self.get_logs_calls: list[dict] = []
        self.get_block = AsyncMock(side_effect=lambda n: {'timestamp': 1_000 + n})
        self.height = 0
        self.height_source = None

    @property
    def block_number(self):
        async def _value():
            return self.height

        return (self.height_source or _value)()

    async def get_logs(self, params):
        self.get_logs_calls.append(params)
        return [
            log for log in self.logs
            if params['fromBlock'] <= log['blockNumber'] <= params['toBlock']
        ]


def _log(block, index, deal_id=1, position_id=1, amount=1):
    """A raw log plus the decoded form process_log will return for it."""
    return {
        'blockNumber': block,
        'logIndex': index,
        'decoded': {
            'event': 'Deposited',
            'args': {
                'dealId': deal_id,
                'depositor': CHECKSUM_USER_A,
                'positionId': position_id,
                'amount': amount,
            },
            'transactionHash': bytes([block]) * 32,
            'blockNumber': block,
            'logIndex': index,
            'address': Web3.to_checksum_address(CONTRACT),
        },
    }


def _decode(log):
    if log.get('broken'):
        raise ValueError('could not decode')
    return log['decoded']


@pytest.fixture
def client():
    c = ChainClient('http://localhost:8545', CONTRACT, poll_interval=0, max_block_range=3)
    c._w3 = MagicMock()
    c._w3.eth = FakeEth()
    c._contract = MagicMock()
    for name in ('DealCreated', 'Deposited', 'DealLocked', 'RewardsClaimedFromProtocol'):
        getattr(c._contract.events, name).return_value.process_log.side_effect = _decode
    return c


async def _take(agen, n):
    events = []
    async for event in agen:
        events.append(event)
        if len(events) == n:
            break
    await agen.aclose()
    return events


# =============================================================================
# Construction & ABI
# =============================================================================


class TestConstruction:
    def test_invalid_address_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            ChainClient('http://localhost:8545', 'not-an-address')

    def test_address_is_checksummed(self):
        c = ChainClient('http://localhost:8545', CONTRACT)
        assert c.contract_address == Web3.to_checksum_address(CONTRACT)
        assert c.abi is DEAL_VAULT_ABI

    def test_unconnected_client_refuses_calls(self):
        c = ChainClient('http://localhost:8545', CONTRACT)
        with pytest.raises(RuntimeError):
            c.w3

    def test_event_signatures(self):
        assert event_signature(DEAL_VAULT_ABI, 'Deposited') == 'Deposited(uint256,address,uint256,uint256)'
        assert event_signature(DEAL_VAULT_ABI, 'DealLocked') == 'DealLocked(uint256,bytes32)'
        with pytest.raises(ConfigurationError):
            event_signature(DEAL_VAULT_ABI, 'Withdrawn')

    def test_load_abi_from_artifact(self, tmp_path):
        path = tmp_path / 'DealVault.json'
        path.write_text(json.dumps({'contractName': 'DealVault', 'abi': DEAL_VAULT_ABI}))

        assert load_abi(str(path)) == DEAL_VAULT_ABI

    def test_load_abi_rejects_garbage(self, tmp_path):
        path = tmp_path / 'abi.json'
        path.write_text(json.dumps({'bytecode': '0x00'}))

        with pytest.raises(ConfigurationError):
            load_abi(str(path))

    def test_normalize_arg(self):
        assert normalize_arg(CHECKSUM_USER_A) == USER_A
        assert normalize_arg(b'\x00\xff') == '0x00ff'
        assert normalize_arg(2**256 - 1) == 2**256 - 1


# =============================================================================
# Reads
# =============================================================================


class TestGetDeal:
    def _tuple(self, token=TOKEN, status=0, channel=b'\x00' * 32, total=400):
        return (1, Web3.to_checksum_address(token), 10, 1000, total, 1_700_000_000, 86400, status, 500, channel)

    @pytest.mark.asyncio
    async def test_decodes_tuple(self, client):
        client._contract.functions.getDeal.return_value.call = AsyncMock(
            return_value=self._tuple(status=1, channel=b'\x01' * 32, total=2**200)
        )

        deal = await client.get_deal(1)

        client._contract.functions.getDeal.assert_called_with(1)
        assert deal.deposit_token == TOKEN
        assert deal.total_deposited == 2**200
        assert deal.status is DealStatus.LOCKED
        assert deal.channel_id == '0x' + '01' * 32

    @pytest.mark.asyncio
    async def test_zero_channel_is_none(self, client):
        client._contract.functions.getDeal.return_value.call = AsyncMock(return_value=self._tuple())

        deal = await client.get_deal(1)

        assert deal.channel_id is None
        assert deal.status is DealStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_zero_token_means_no_deal(self, client):
        client._contract.functions.getDeal.return_value.call = AsyncMock(
            return_value=self._tuple(token=ZERO_ADDRESS)
        )

        assert await client.get_deal(99) is None

    @pytest.mark.asyncio
    async def test_unknown_status_is_rpc_error(self, client):
        client._contract.functions.getDeal.return_value.call = AsyncMock(return_value=self._tuple(status=7))

        with pytest.raises(RpcError):
            await client.get_deal(1)

    @pytest.mark.asyncio
    async def test_revert_is_not_retried(self, client):
        call = AsyncMock(side_effect=ValueError('execution reverted'))
        client._contract.functions.getDeal.return_value.call = call

        with pytest.raises(RpcError):
            await client.get_deal(1)
        assert call.await_count == 1


class TestBlockTimestamp:
    @pytest.mark.asyncio
    async def test_cached_per_block(self, client):
        assert await client.block_timestamp(5) == 1_005
        assert await client.block_timestamp(5) == 1_005

        client._w3.eth.get_block.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    async def test_cache_is_bounded(self, client):
        client.TIMESTAMP_CACHE_SIZE = 2
        for block in (1, 2, 3):
            await client.block_timestamp(block)

        assert list(client._timestamps) == [2, 3]


class TestRetry:
    @pytest.mark.asyncio
    async def test_connectivity_errors_are_retried(self, client):
        heights = iter([ConnectionResetError('reset'), 42])

        async def flaky():
            value = next(heights)
            if isinstance(value, Exception):
                raise value
            return value

        client._w3.eth.height_source = flaky
        fast = ChainClient.current_height.retry_with(wait=wait_none(), stop=stop_after_attempt(3))

        assert await fast(client) == 42

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, client):
        async def down():
            raise ConnectionRefusedError('refused')

        client._w3.eth.height_source = down
        fast = ChainClient.current_height.retry_with(wait=wait_none(), stop=stop_after_attempt(2))

        with pytest.raises(ConnectivityError):
            await fast(client)


# =============================================================================
# Subscriptions
# =============================================================================


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_polls_windows_and_yields_in_order(self, client):
        eth = client._w3.eth
        eth.logs = [_log(102, 1, position_id=3), _log(100, 0, position_id=1), _log(102, 0, position_id=2), _log(104, 0, position_id=4)]
        client.current_height = AsyncMock(return_value=105)

        events = await _take(client.subscribe('Deposited', 100), 4)

        assert [e.args['positionId'] for e in events] == [1, 2, 3, 4]
        assert [(c['fromBlock'], c['toBlock']) for c in eth.get_logs_calls] == [(100, 102), (103, 105)]

        topic = '0x' + Web3.keccak(text='Deposited(uint256,address,uint256,uint256)').hex().removeprefix('0x')
        assert eth.get_logs_calls[0]['topics'] == [topic]
        assert eth.get_logs_calls[0]['address'] == Web3.to_checksum_address(CONTRACT)

    @pytest.mark.asyncio
    async def test_raw_event_fields(self, client):
        client._w3.eth.logs = [_log(100, 3, deal_id=7, amount=2**200)]
        client.current_height = AsyncMock(return_value=100)

        [event] = await _take(client.subscribe('Deposited', 100), 1)

        assert event.name == 'Deposited'
        assert event.deal_id == 7
        assert event.args['depositor'] == USER_A
        assert event.args['amount'] == 2**200
        assert event.tx_hash == '0x' + '64' * 32
        assert event.log_index == 3
        assert event.contract_address == CONTRACT
        assert await event.block_timestamp() == 1_100

    @pytest.mark.asyncio
    async def test_respects_confirmations(self, client):
        client.confirmations = 2
        client._w3.eth.logs = [_log(100, 0, position_id=1), _log(103, 0, position_id=2)]
        client.current_height = AsyncMock(side_effect=[102, 102, 105])

        events = await _take(client.subscribe('Deposited', 100), 2)

        assert [e.args['positionId'] for e in events] == [1, 2]
        assert [(c['fromBlock'], c['toBlock']) for c in client._w3.eth.get_logs_calls] == [(100, 100), (101, 103)]

    @pytest.mark.asyncio
    async def test_undecodable_log_is_skipped(self, client):
        broken = _log(100, 0)
        broken['broken'] = True
        client._w3.eth.logs = [broken, _log(100, 1, position_id=9)]
        client.current_height = AsyncMock(return_value=100)

        [event] = await _take(client.subscribe('Deposited', 100), 1)

        assert event.args['positionId'] == 9

    @pytest.mark.asyncio
    async def test_rpc_failure_retries_same_window(self, client):
        client.current_height = AsyncMock(return_value=100)
        client._get_logs = AsyncMock(
            side_effect=[ConnectivityError('down'), RpcError('bad gateway'), [_log(100, 0)]]
        )

        [event] = await _take(client.subscribe('Deposited', 100), 1)

        assert event.block_number == 100
        assert [c.args[1:] for c in client._get_logs.await_args_list] == [(100, 100)] * 3

    @pytest.mark.asyncio
    async def test_unknown_event_is_configuration_error(self, client):
        with pytest.raises(ConfigurationError):
            await _take(client.subscribe('Withdrawn', 0), 1)
