"""
Deal model and lifecycle state machine.

A Deal is created by the first DealCreated event, mutated by deposit and
lifecycle events, and never deleted. Status only ever moves forward:

    Active -> Locked -> Settling -> Finalized
    Active -> Cancelled

Amounts are Python ints (arbitrary precision). They are persisted as
base-10 text so no backend can round them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, Field

ZERO_ADDRESS = '0x' + '0' * 40
ZERO_BYTES32 = '0x' + '0' * 64


class DealStatus(str, Enum):
    """Deal lifecycle status, ordered as the contract's uint8 enum."""

    ACTIVE = 'Active'
    LOCKED = 'Locked'
    SETTLING = 'Settling'
    FINALIZED = 'Finalized'
    CANCELLED = 'Cancelled'

    @classmethod
    def from_chain_code(cls, code: int) -> 'DealStatus':
        """Map the contract's uint8 status to a DealStatus."""
        try:
            return _CHAIN_ORDER[int(code)]
        except IndexError:
            raise ValueError(f'Unknown on-chain deal status code: {code}') from None

    def can_transition_to(self, target: 'DealStatus') -> bool:
        """True when ``target`` is a single legal step from this status."""
        return target in _TRANSITIONS[self]

    def can_reach(self, target: 'DealStatus') -> bool:
        """True when ``target`` is reachable through one or more legal steps."""
        frontier = list(_TRANSITIONS[self])
        seen: set[DealStatus] = set()
        while frontier:
            status = frontier.pop()
            if status == target:
                return True
            if status not in seen:
                seen.add(status)
                frontier.extend(_TRANSITIONS[status])
        return False

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]


_CHAIN_ORDER = (
    DealStatus.ACTIVE,
    DealStatus.LOCKED,
    DealStatus.SETTLING,
    DealStatus.FINALIZED,
    DealStatus.CANCELLED,
)

_TRANSITIONS: dict[DealStatus, frozenset[DealStatus]] = {
    DealStatus.ACTIVE: frozenset({DealStatus.LOCKED, DealStatus.CANCELLED}),
    DealStatus.LOCKED: frozenset({DealStatus.SETTLING}),
    DealStatus.SETTLING: frozenset({DealStatus.FINALIZED}),
    DealStatus.FINALIZED: frozenset(),
    DealStatus.CANCELLED: frozenset(),
}


def normalize_channel_id(channel_id: str | None) -> str | None:
    """A zero bytes32 channel id means "no channel"."""
    if not channel_id:
        return None
    channel_id = channel_id.lower()
    if int(channel_id, 16) == 0:
        return None
    return channel_id


class Deal(BaseModel):
    """
    Deal row in the projection store.

    Identity is the contract-assigned integer deal ID.
    """

    deal_id: int = Field(..., ge=0, description='Contract-assigned deal ID')
    deposit_token: str = Field(..., description='ERC-20 deposit token address (lower-case)')
    min_deposit: int = Field(default=0, ge=0, description='Minimum deposit per position')
    max_deposit: int = Field(default=0, ge=0, description='Maximum deposit per position')
    total_deposited: int = Field(default=0, ge=0, description='Authoritative total from the contract')
    start_time: int = Field(default=0, ge=0, description='Unix seconds')
    duration: int = Field(default=0, ge=0, description='Seconds')
    status: DealStatus = Field(default=DealStatus.ACTIVE)
    expected_yield: int = Field(default=0, ge=0, description='Basis points (100 = 1%)')
    channel_id: str | None = Field(default=None, description='bytes32 channel id, None when unset')

    def to_row(self) -> dict[str, Any]:
        """Flatten to store parameters; amounts as base-10 text."""
        return {
            'deal_id': self.deal_id,
            'deposit_token': self.deposit_token.lower(),
            'min_deposit': str(self.min_deposit),
            'max_deposit': str(self.max_deposit),
            'total_deposited': str(self.total_deposited),
            'start_time': self.start_time,
            'duration': self.duration,
            'status': self.status.value,
            'expected_yield': self.expected_yield,
            'channel_id': self.channel_id,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Deal':
        return cls(
            deal_id=int(row['deal_id']),
            deposit_token=row['deposit_token'],
            min_deposit=int(row['min_deposit']),
            max_deposit=int(row['max_deposit']),
            total_deposited=int(row['total_deposited']),
            start_time=int(row['start_time']),
            duration=int(row['duration']),
            status=DealStatus(row['status']),
            expected_yield=int(row['expected_yield']),
            channel_id=row['channel_id'],
        )


@dataclass
class DealStats:
    """Aggregate numbers the read API shows next to a deal."""

    deal_id: int
    depositor_count: int
    total_deposited: int
    total_rewards: int

    @property
    def average_deposit(self) -> int:
        if self.depositor_count == 0:
            return 0
        return self.total_deposited // self.depositor_count

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses; amounts as strings."""
        return {
            'deal_id': self.deal_id,
            'depositor_count': self.depositor_count,
            'total_rewards': str(self.total_rewards),
            'average_deposit': str(self.average_deposit),
        }
