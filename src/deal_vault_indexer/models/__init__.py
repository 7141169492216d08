"""
Data models for the DealVault indexer.

Projection entities:
- Deal: pooled-deposit arrangement and its lifecycle status
- Deposit: one position in a deal
- Reward: per-user share of claimed protocol rewards

Event models:
- RawEvent: decoded log as delivered by the chain client
- EventLogEntry: persisted audit/dedup record
"""

from .deal import Deal, DealStats, DealStatus, normalize_channel_id
from .events import EventLogEntry, EventName, RawEvent, RecordOutcome
from .position import Deposit, Reward

__all__ = [
    'Deal',
    'DealStats',
    'DealStatus',
    'normalize_channel_id',
    'Deposit',
    'Reward',
    'EventLogEntry',
    'EventName',
    'RawEvent',
    'RecordOutcome',
]
