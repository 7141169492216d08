"""
Chain client for the DealVault contract.

Thin wrapper around an AsyncWeb3 JSON-RPC connection:
- current block height
- authoritative Deal reads (getDeal)
- per-event subscriptions as lazy, infinite async iterators

A subscription polls eth_getLogs for one event topic, decodes each log
with the contract ABI and yields RawEvents ordered by
(block_number, log_index). Order across different subscriptions is not
guaranteed.
"""

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from ..errors import ClientError, ConfigurationError, ConnectivityError, RpcError, wrap_rpc_error
from ..models.deal import ZERO_ADDRESS, Deal, DealStatus, normalize_channel_id
from ..models.events import RawEvent
from .abi import event_signature, load_abi

logger = structlog.get_logger(__name__)

T = TypeVar('T')


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        'chain_client.retry',
        call=retry_state.fn.__name__ if retry_state.fn else None,
        attempt=retry_state.attempt_number,
        error=str(exc),
    )


rpc_retry = retry(
    retry=retry_if_exception_type(ConnectivityError),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=1, max=30),
    before_sleep=_log_retry,
    reraise=True,
)


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    value = str(value).lower()
    return value if value.startswith('0x') else '0x' + value


def normalize_arg(value: Any) -> Any:
    """Addresses lower-cased, bytes as 0x-hex, ints untouched."""
    if isinstance(value, (bytes, bytearray)):
        return _hex(value)
    if isinstance(value, str) and Web3.is_address(value):
        return value.lower()
    return value


class ChainClient:
    """
    Async JSON-RPC client bound to one DealVault contract.

    Configuration comes from Settings (RPC_URL, DEAL_VAULT_ADDRESS,
    CONTRACT_ABI_PATH, POLL_INTERVAL_SECONDS, CONFIRMATIONS,
    MAX_BLOCK_RANGE, RPC_TIMEOUT_SECONDS).
    """

    TIMESTAMP_CACHE_SIZE = 1024

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        abi: list[dict[str, Any]] | None = None,
        poll_interval: float = 2.0,
        confirmations: int = 0,
        max_block_range: int = 2000,
        timeout: float = 30.0,
    ):
        if not Web3.is_address(contract_address):
            raise ConfigurationError(
                'Invalid contract address',
                context={'contract_address': contract_address},
            )
        if max_block_range < 1:
            raise ConfigurationError('MAX_BLOCK_RANGE must be at least 1')

        self.rpc_url = rpc_url
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.abi = abi or load_abi()
        self.poll_interval = poll_interval
        self.confirmations = confirmations
        self.max_block_range = max_block_range
        self.timeout = timeout

        self._w3: AsyncWeb3 | None = None
        self._contract: Any = None
        self._timestamps: dict[int, int] = {}

    @classmethod
    def from_settings(cls, settings: Any) -> 'ChainClient':
        return cls(
            rpc_url=settings.RPC_URL,
            contract_address=settings.DEAL_VAULT_ADDRESS,
            abi=load_abi(settings.CONTRACT_ABI_PATH),
            poll_interval=settings.POLL_INTERVAL_SECONDS,
            confirmations=settings.CONFIRMATIONS,
            max_block_range=settings.MAX_BLOCK_RANGE,
            timeout=settings.RPC_TIMEOUT_SECONDS,
        )

    async def connect(self) -> None:
        """Create the provider and contract binding. Idempotent."""
        if self._w3 is not None:
            return
        self._w3 = AsyncWeb3(AsyncHTTPProvider(self.rpc_url))
        self._contract = self._w3.eth.contract(address=self.contract_address, abi=self.abi)
        logger.info(
            'chain_client.connected',
            rpc_url=self.rpc_url,
            contract_address=self.contract_address,
        )

    async def close(self) -> None:
        """Release the provider's HTTP sessions."""
        if self._w3 is not None:
            await self._w3.provider.disconnect()
            self._w3 = None
            self._contract = None
            logger.info('chain_client.closed')

    @property
    def w3(self) -> AsyncWeb3:
        if self._w3 is None:
            raise RuntimeError('ChainClient not connected; call connect() first')
        return self._w3

    @property
    def contract(self) -> Any:
        if self._contract is None:
            raise RuntimeError('ChainClient not connected; call connect() first')
        return self._contract

    async def _call(self, factory: Callable[[], Awaitable[T]], **context: Any) -> T:
        """Run one RPC round trip with a timeout, classifying failures."""
        try:
            return await asyncio.wait_for(factory(), timeout=self.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise wrap_rpc_error(e, context=dict(context)) from e

    # =========================================================================
    # Reads
    # =========================================================================

    @rpc_retry
    async def current_height(self) -> int:
        """Current chain head block number."""

        async def _block_number() -> int:
            return await self.w3.eth.block_number

        return int(await self._call(_block_number, call='eth_blockNumber'))

    @rpc_retry
    async def block_timestamp(self, block_number: int) -> int:
        """Timestamp (unix seconds) of a block, cached per block number."""
        cached = self._timestamps.get(block_number)
        if cached is not None:
            return cached

        block = await self._call(
            lambda: self.w3.eth.get_block(block_number),
            call='eth_getBlockByNumber',
            block_number=block_number,
        )
        timestamp = int(block['timestamp'])

        if len(self._timestamps) >= self.TIMESTAMP_CACHE_SIZE:
            self._timestamps.pop(next(iter(self._timestamps)))
        self._timestamps[block_number] = timestamp
        return timestamp

    @rpc_retry
    async def get_deal(self, deal_id: int) -> Deal | None:
        """
        Read the authoritative Deal from the contract.

        Returns:
            The on-chain Deal, or None when the contract has no such deal
            (unset storage reads back as a zero deposit token).
        """
        raw = await self._call(
            lambda: self.contract.functions.getDeal(deal_id).call(),
            call='getDeal',
            deal_id=deal_id,
        )
        return self._deal_from_tuple(deal_id, raw)

    @staticmethod
    def _deal_from_tuple(deal_id: int, raw: Any) -> Deal | None:
        (
            _,
            deposit_token,
            min_deposit,
            max_deposit,
            total_deposited,
            start_time,
            duration,
            status,
            expected_yield,
            channel_id,
        ) = raw

        deposit_token = str(deposit_token).lower()
        if deposit_token == ZERO_ADDRESS:
            return None

        try:
            deal_status = DealStatus.from_chain_code(status)
        except ValueError as e:
            raise RpcError(str(e), context={'deal_id': deal_id}) from e

        return Deal(
            deal_id=deal_id,
            deposit_token=deposit_token,
            min_deposit=int(min_deposit),
            max_deposit=int(max_deposit),
            total_deposited=int(total_deposited),
            start_time=int(start_time),
            duration=int(duration),
            status=deal_status,
            expected_yield=int(expected_yield),
            channel_id=normalize_channel_id(_hex(channel_id)),
        )

    @rpc_retry
    async def _get_logs(self, topic: str, from_block: int, to_block: int) -> list[Any]:
        return await self._call(
            lambda: self.w3.eth.get_logs(
                {
                    'address': self.contract_address,
                    'topics': [topic],
                    'fromBlock': from_block,
                    'toBlock': to_block,
                }
            ),
            call='eth_getLogs',
            from_block=from_block,
            to_block=to_block,
        )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def _decode(self, event_name: str, log: Any) -> RawEvent:
        decoded = getattr(self.contract.events, event_name)().process_log(log)
        return RawEvent(
            name=decoded['event'],
            args={k: normalize_arg(v) for k, v in dict(decoded['args']).items()},
            tx_hash=_hex(decoded['transactionHash']),
            block_number=int(decoded['blockNumber']),
            log_index=int(decoded['logIndex']),
            contract_address=str(decoded['address']).lower(),
            timestamp_resolver=self.block_timestamp,
        )

    async def subscribe(self, event_name: str, from_block: int) -> AsyncIterator[RawEvent]:
        """
        Yield every ``event_name`` log from ``from_block`` onwards, forever.

        Waits ``poll_interval`` between polls once caught up with
        ``head - confirmations``. RPC failures (connectivity ones only after
        the retry policy gives up) are logged and the same block window is
        retried on the next poll, so no range is skipped.

        Raises:
            ConfigurationError: If the event is not in the contract ABI
        """
        topic = '0x' + bytes(Web3.keccak(text=event_signature(self.abi, event_name))).hex()
        cursor = from_block
        log = logger.bind(event_name=event_name)
        log.info('chain_client.subscribed', from_block=from_block)

        while True:
            try:
                safe_head = await self.current_height() - self.confirmations
                if cursor > safe_head:
                    await asyncio.sleep(self.poll_interval)
                    continue

                to_block = min(safe_head, cursor + self.max_block_range - 1)
                logs = await self._get_logs(topic, cursor, to_block)
            except ClientError as e:
                log.warning(
                    'chain_client.poll_failed',
                    cursor=cursor,
                    error=e.message,
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(self.poll_interval)
                continue

            events = []
            for entry in logs:
                try:
                    events.append(self._decode(event_name, entry))
                except Exception as e:
                    log.error(
                        'chain_client.decode_failed',
                        block_number=entry.get('blockNumber'),
                        log_index=entry.get('logIndex'),
                        error=str(e),
                    )
            events.sort(key=lambda ev: (ev.block_number, ev.log_index))

            for event in events:
                yield event

            log.debug('chain_client.window_done', from_block=cursor, to_block=to_block, events=len(events))
            cursor = to_block + 1
