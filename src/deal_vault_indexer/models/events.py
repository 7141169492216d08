"""
Raw chain events and the event log (audit trail + dedup fence).

RawEvent is what the chain client yields: a decoded log plus a lazy way to
resolve its block timestamp (a second RPC round trip, so only paid when a
handler actually needs it).

EventLogEntry is the persisted record of a processed event. Its identity
(tx_hash, log_index) is a real uniqueness constraint in the store.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from pydantic import BaseModel, Field, field_validator

TimestampResolver = Callable[[int], Awaitable[int]]


class EventName(str, Enum):
    """DealVault events the indexer consumes."""

    DEAL_CREATED = 'DealCreated'
    DEPOSITED = 'Deposited'
    DEAL_LOCKED = 'DealLocked'
    REWARDS_CLAIMED = 'RewardsClaimedFromProtocol'


class RecordOutcome(str, Enum):
    """Result of writing an entry through the dedup fence."""

    INSERTED = 'inserted'
    ALREADY_EXISTS = 'already_exists'


@dataclass
class RawEvent:
    """A decoded contract log as delivered by a subscription."""

    name: str
    args: dict[str, Any]
    tx_hash: str
    block_number: int
    log_index: int
    contract_address: str
    timestamp_resolver: TimestampResolver | None = field(default=None, repr=False)
    # Set on the last retry of a deferred event: apply with what is indexed
    final_attempt: bool = False
    _timestamp: int | None = field(default=None, init=False, repr=False)

    @property
    def identity(self) -> tuple[str, int]:
        return (self.tx_hash, self.log_index)

    @property
    def deal_id(self) -> int | None:
        value = self.args.get('dealId')
        return int(value) if value is not None else None

    async def block_timestamp(self) -> int:
        """Resolve (once) the timestamp of the block containing this event."""
        if self._timestamp is None:
            if self.timestamp_resolver is None:
                raise RuntimeError(f'No timestamp resolver for event {self.identity}')
            self._timestamp = int(await self.timestamp_resolver(self.block_number))
        return self._timestamp


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    return str(value)


class EventLogEntry(BaseModel):
    """Persisted record of one processed event."""

    tx_hash: str
    log_index: int = Field(..., ge=0)
    event_name: str
    contract_address: str
    block_number: int = Field(..., ge=0)
    args: dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(..., ge=0)

    @field_validator('tx_hash', 'contract_address')
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.lower()

    @classmethod
    async def from_raw(cls, event: RawEvent) -> 'EventLogEntry':
        return cls(
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            event_name=event.name,
            contract_address=event.contract_address,
            block_number=event.block_number,
            args=dict(event.args),
            timestamp=await event.block_timestamp(),
        )

    def serialized_args(self) -> str:
        """Amounts are written as strings so JSON consumers never round them."""
        return json.dumps(
            {k: str(v) if isinstance(v, int) and not isinstance(v, bool) else v
             for k, v in self.args.items()},
            sort_keys=True,
            default=_json_default,
        )

    def to_row(self) -> dict[str, Any]:
        return {
            'tx_hash': self.tx_hash,
            'log_index': self.log_index,
            'event_name': self.event_name,
            'contract_address': self.contract_address,
            'block_number': self.block_number,
            'args': self.serialized_args(),
            'timestamp': self.timestamp,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'EventLogEntry':
        return cls(
            tx_hash=row['tx_hash'],
            log_index=int(row['log_index']),
            event_name=row['event_name'],
            contract_address=row['contract_address'],
            block_number=int(row['block_number']),
            args=json.loads(row['args']),
            timestamp=int(row['timestamp']),
        )
