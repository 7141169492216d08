"""
Indexer coordinator: subscription lifecycle and event dispatch.

Flow:
1. Read the current chain height (retrying while the RPC is unreachable)
2. Open one subscription per handled event type from that height
3. Dispatch each RawEvent to its handler under the deal's lock
4. Park events dropped for a missing parent until the deal's state catches up
5. On stop, cancel subscriptions and drain in-flight handlers

Events within one subscription are handled one at a time, in delivery
order. Different subscriptions run concurrently; the per-deal lock keeps
two handlers from interleaving their read-modify-write on the same deal.

The coordinator holds no business state. A fresh process resumes from the
new chain head: events emitted while it was down are not backfilled.
"""

import asyncio
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Mapping, TypeVar

import structlog

from .clients.abi import event_signature
from .clients.chain_client import ChainClient
from .errors import ConnectivityError
from .handlers.base import EventHandler, HandlerOutcome, HandlerResult
from .models.events import EventName, RawEvent

logger = structlog.get_logger(__name__)

T = TypeVar('T')


class DealLocks:
    """
    One asyncio.Lock per deal ID.

    A lock exists only while some task holds or waits for it, so the table
    never grows beyond the deals currently being worked on.
    """

    def __init__(self):
        self._locks: dict[int | None, asyncio.Lock] = {}
        self._users: dict[int | None, int] = {}

    @asynccontextmanager
    async def for_deal(self, deal_id: int | None) -> AsyncIterator[None]:
        lock = self._locks.get(deal_id)
        if lock is None:
            lock = self._locks[deal_id] = asyncio.Lock()
        self._users[deal_id] = self._users.get(deal_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[deal_id] -= 1
            if not self._users[deal_id]:
                del self._users[deal_id]
                del self._locks[deal_id]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class IndexerStats:
    """Per-outcome event counters for one coordinator run."""

    outcomes: dict[HandlerOutcome, int] = field(default_factory=lambda: defaultdict(int))
    unknown: int = 0
    replayed: int = 0

    def record(self, result: HandlerResult) -> None:
        self.outcomes[result.outcome] += 1

    @property
    def total(self) -> int:
        return sum(self.outcomes.values()) + self.unknown

    def to_dict(self) -> dict[str, Any]:
        counts = {outcome.value: self.outcomes.get(outcome, 0) for outcome in HandlerOutcome}
        return {**counts, 'unknown': self.unknown, 'replayed': self.replayed, 'total': self.total}


@dataclass
class ParkedEvent:
    """A dropped event waiting for the state it depends on."""

    event: RawEvent
    parked_at: float


class IndexerCoordinator:
    """
    Owns the subscriptions and routes events to handlers by event name.

    Events dropped for a missing parent are parked in memory and replayed
    once a DealCreated or Deposited event applies for the same deal. A
    parked event older than ``park_ttl`` seconds gets one final attempt
    (handlers then apply with what is indexed) and is otherwise abandoned.
    """

    MAX_PARKED_PER_DEAL = 1000
    MAX_PARKED = 10_000

    # Applying one of these can satisfy a parked event of the same deal
    REPLAY_TRIGGERS = frozenset({EventName.DEAL_CREATED.value, EventName.DEPOSITED.value})

    def __init__(
        self,
        chain: ChainClient,
        handlers: Mapping[str, EventHandler],
        locks: DealLocks | None = None,
        startup_retry_interval: float = 5.0,
        park_ttl: float = 300.0,
    ):
        self.chain = chain
        self.handlers = dict(handlers)
        self.locks = locks or DealLocks()
        self.startup_retry_interval = startup_retry_interval
        self.park_ttl = park_ttl
        self.stats = IndexerStats()
        self.start_block: int | None = None

        self._subscriptions: list[asyncio.Task] = []
        self._sweeper: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()
        self._parked: dict[int, list[ParkedEvent]] = {}
        self._stop_requested = asyncio.Event()
        self._stopped = False

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def parked(self) -> int:
        return sum(len(entries) for entries in self._parked.values())

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> int:
        """
        Open all subscriptions at the current chain head.

        Returns:
            The block the subscriptions start from

        Raises:
            ConfigurationError: A handled event is missing from the ABI
            ConnectivityError: Stop was requested before the RPC answered
        """
        for event_name in self.handlers:
            event_signature(self.chain.abi, event_name)

        height = await self._wait_for_head()
        self.start_block = height

        logger.warning(
            'coordinator.coverage_gap',
            from_block=height,
            message=(
                'No historical backfill: events emitted before this block while '
                'the indexer was not running are not indexed. Run reconcile to '
                'refresh deal state from the contract.'
            ),
        )

        for event_name in self.handlers:
            task = asyncio.create_task(
                self._consume(event_name, height),
                name=f'subscription:{event_name}',
            )
            self._subscriptions.append(task)
        self._sweeper = asyncio.create_task(self._sweep_parked(), name='parked-sweeper')

        logger.info(
            'coordinator.started',
            from_block=height,
            subscriptions=list(self.handlers),
        )
        return height

    async def _wait_for_head(self) -> int:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.chain.current_height()
            except ConnectivityError as e:
                logger.warning(
                    'coordinator.rpc_unreachable',
                    attempt=attempt,
                    error=e.message,
                    retry_in=self.startup_retry_interval,
                )
                try:
                    await asyncio.wait_for(
                        self._stop_requested.wait(),
                        timeout=self.startup_retry_interval,
                    )
                except asyncio.TimeoutError:
                    continue
                raise

    async def run(self) -> IndexerStats:
        """
        Start, then block until stop is requested or a subscription dies.

        Always drains before returning. A subscription that died with an
        exception re-raises it after the drain.
        """
        await self.start()

        stop_waiter = asyncio.create_task(self._stop_requested.wait())
        try:
            done, _ = await asyncio.wait(
                [stop_waiter, *self._subscriptions],
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_waiter.cancel()
            await self.stop()

        for task in done:
            if task is stop_waiter or task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                raise exc
        return self.stats

    def request_stop(self) -> None:
        """Ask a running coordinator to shut down. Safe from signal handlers."""
        self._stop_requested.set()

    async def stop(self) -> None:
        """Cancel subscriptions, then wait for in-flight handlers to finish."""
        self.request_stop()
        if self._stopped:
            return
        self._stopped = True

        tasks = [*self._subscriptions, *([self._sweeper] if self._sweeper else [])]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self._in_flight:
            logger.info('coordinator.draining', in_flight=len(self._in_flight))
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

        if self._parked:
            logger.warning(
                'coordinator.parked_discarded',
                parked=self.parked,
                deal_ids=sorted(self._parked),
            )
        logger.info(
            'coordinator.stopped',
            parked=self.parked,
            **self.stats.to_dict(),
        )

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _consume(self, event_name: str, from_block: int) -> None:
        log = logger.bind(event_name=event_name)
        try:
            async for event in self.chain.subscribe(event_name, from_block):
                await self._shielded(self.dispatch(event))
        except asyncio.CancelledError:
            log.debug('coordinator.subscription_cancelled')
            raise
        except Exception:
            log.exception('coordinator.subscription_failed')
            raise

    async def _shielded(self, work: Awaitable[T]) -> T:
        """Run in its own task so cancelling the caller never interrupts it."""
        task = asyncio.ensure_future(work)
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return await asyncio.shield(task)

    async def dispatch(self, event: RawEvent) -> HandlerResult | None:
        """
        Route one event to its handler.

        Returns:
            The handler's result, or None for an event nobody handles
        """
        return await self._dispatch(event, parked_at=None)

    async def _dispatch(self, event: RawEvent, parked_at: float | None) -> HandlerResult | None:
        handler = self.handlers.get(event.name)
        if handler is None:
            self.stats.unknown += 1
            logger.warning(
                'coordinator.unknown_event',
                event_name=event.name,
                tx_hash=event.tx_hash,
                log_index=event.log_index,
            )
            return None

        async with self.locks.for_deal(event.deal_id):
            result = await handler.handle(event)
        self.stats.record(result)

        if result.outcome is HandlerOutcome.DROPPED:
            self._park(event, parked_at if parked_at is not None else time.monotonic())
        elif (
            result.outcome is HandlerOutcome.APPLIED
            and event.name in self.REPLAY_TRIGGERS
            and event.deal_id in self._parked
        ):
            await self._replay_parked(event.deal_id)

        return result

    # =========================================================================
    # Parked events
    # =========================================================================

    def _park(self, event: RawEvent, parked_at: float) -> None:
        if event.deal_id is None:
            return
        if event.final_attempt:
            logger.error(
                'coordinator.event_abandoned',
                deal_id=event.deal_id,
                event_name=event.name,
                tx_hash=event.tx_hash,
                log_index=event.log_index,
            )
            return

        parked = self._parked.get(event.deal_id, [])
        if len(parked) >= self.MAX_PARKED_PER_DEAL or self.parked >= self.MAX_PARKED:
            logger.warning(
                'coordinator.park_full',
                deal_id=event.deal_id,
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                parked=self.parked,
            )
            return

        parked.append(ParkedEvent(event, parked_at))
        self._parked[event.deal_id] = parked
        logger.info(
            'coordinator.event_parked',
            deal_id=event.deal_id,
            event_name=event.name,
            parked=len(parked),
        )

    async def _replay_parked(self, deal_id: int) -> None:
        entries = sorted(
            self._parked.pop(deal_id, []),
            key=lambda p: (p.event.block_number, p.event.log_index),
        )
        logger.info('coordinator.replaying_parked', deal_id=deal_id, events=len(entries))
        for entry in entries:
            self.stats.replayed += 1
            await self._dispatch(entry.event, entry.parked_at)

    async def expire_parked(self) -> int:
        """
        Give every event parked longer than ``park_ttl`` its final attempt.

        Returns:
            Number of events expired
        """
        cutoff = time.monotonic() - self.park_ttl
        expired: list[ParkedEvent] = []
        for deal_id in list(self._parked):
            entries = self._parked[deal_id]
            expired.extend(p for p in entries if p.parked_at <= cutoff)
            remaining = [p for p in entries if p.parked_at > cutoff]
            if remaining:
                self._parked[deal_id] = remaining
            else:
                del self._parked[deal_id]

        expired.sort(key=lambda p: (p.event.block_number, p.event.log_index))
        for entry in expired:
            logger.warning(
                'coordinator.parked_expired',
                deal_id=entry.event.deal_id,
                event_name=entry.event.name,
                tx_hash=entry.event.tx_hash,
                log_index=entry.event.log_index,
            )
            self.stats.replayed += 1
            await self._dispatch(replace(entry.event, final_attempt=True), entry.parked_at)
        return len(expired)

    async def _sweep_parked(self) -> None:
        interval = max(min(self.park_ttl, 30.0), 0.01)
        while True:
            await asyncio.sleep(interval)
            if self._parked:
                await self._shielded(self.expire_parked())
