"""
Deposit (position) and Reward models.

A Deposit is written once per position ID and never changes afterwards.
A Reward is keyed by (deal_id, user_address); a recomputation overwrites
the previous amount instead of adding to it.
"""

from typing import Any, Mapping

from pydantic import BaseModel, Field, field_validator


class Deposit(BaseModel):
    """One user's stake in a Deal, identified by its position ID."""

    position_id: int = Field(..., ge=0)
    deal_id: int = Field(..., ge=0)
    depositor: str = Field(..., description='Depositor address (lower-case)')
    amount: int = Field(..., gt=0)
    tx_hash: str
    block_number: int = Field(..., ge=0)
    timestamp: int = Field(..., ge=0, description='Block timestamp, unix seconds')

    @field_validator('depositor', 'tx_hash')
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.lower()

    def to_row(self) -> dict[str, Any]:
        return {
            'position_id': self.position_id,
            'deal_id': self.deal_id,
            'depositor': self.depositor,
            'amount': str(self.amount),
            'tx_hash': self.tx_hash,
            'block_number': self.block_number,
            'timestamp': self.timestamp,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Deposit':
        return cls(
            position_id=int(row['position_id']),
            deal_id=int(row['deal_id']),
            depositor=row['depositor'],
            amount=int(row['amount']),
            tx_hash=row['tx_hash'],
            block_number=int(row['block_number']),
            timestamp=int(row['timestamp']),
        )


class Reward(BaseModel):
    """A user's pro-rata share of rewards claimed for a Deal."""

    deal_id: int = Field(..., ge=0)
    user_address: str
    amount: int = Field(..., ge=0)

    @field_validator('user_address')
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.lower()

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> 'Reward':
        return cls(
            deal_id=int(row['deal_id']),
            user_address=row['user_address'],
            amount=int(row['reward_amount']),
        )
