"""
DealVault contract ABI.

Only the view function and events the indexer needs. A full ABI exported
by the contract build can be supplied through CONTRACT_ABI_PATH instead.
"""

import json
from pathlib import Path
from typing import Any

from ..errors import ConfigurationError


def _uint(name: str, indexed: bool | None = None) -> dict[str, Any]:
    entry: dict[str, Any] = {'name': name, 'type': 'uint256', 'internalType': 'uint256'}
    if indexed is not None:
        entry['indexed'] = indexed
    return entry


DEAL_VAULT_ABI: list[dict[str, Any]] = [
    {
        'type': 'function',
        'name': 'getDeal',
        'stateMutability': 'view',
        'inputs': [_uint('dealId')],
        'outputs': [
            {
                'name': '',
                'type': 'tuple',
                'internalType': 'struct DealVault.Deal',
                'components': [
                    _uint('dealId'),
                    {'name': 'depositToken', 'type': 'address', 'internalType': 'address'},
                    _uint('minDeposit'),
                    _uint('maxDeposit'),
                    _uint('totalDeposited'),
                    _uint('startTime'),
                    _uint('duration'),
                    {'name': 'status', 'type': 'uint8', 'internalType': 'enum DealVault.DealStatus'},
                    _uint('expectedYield'),
                    {'name': 'channelId', 'type': 'bytes32', 'internalType': 'bytes32'},
                ],
            }
        ],
    },
    {
        'type': 'event',
        'name': 'DealCreated',
        'anonymous': False,
        'inputs': [
            _uint('dealId', indexed=True),
            {'name': 'depositToken', 'type': 'address', 'internalType': 'address', 'indexed': False},
            _uint('duration', indexed=False),
        ],
    },
    {
        'type': 'event',
        'name': 'Deposited',
        'anonymous': False,
        'inputs': [
            _uint('dealId', indexed=True),
            {'name': 'depositor', 'type': 'address', 'internalType': 'address', 'indexed': True},
            _uint('positionId', indexed=True),
            _uint('amount', indexed=False),
        ],
    },
    {
        'type': 'event',
        'name': 'DealLocked',
        'anonymous': False,
        'inputs': [
            _uint('dealId', indexed=True),
            {'name': 'channelId', 'type': 'bytes32', 'internalType': 'bytes32', 'indexed': True},
        ],
    },
    {
        'type': 'event',
        'name': 'RewardsClaimedFromProtocol',
        'anonymous': False,
        'inputs': [
            _uint('dealId', indexed=True),
            {'name': 'protocol', 'type': 'address', 'internalType': 'address', 'indexed': True},
            _uint('rewards', indexed=False),
        ],
    },
]


def load_abi(path: str | None = None) -> list[dict[str, Any]]:
    """
    Load the contract ABI.

    Args:
        path: Optional JSON file; either a bare ABI list or a build artifact
              with an ``abi`` key. Defaults to the bundled DealVault ABI.

    Raises:
        ConfigurationError: If the file is missing or not a valid ABI
    """
    if not path:
        return DEAL_VAULT_ABI

    abi_path = Path(path)
    try:
        payload = json.loads(abi_path.read_text(encoding='utf-8'))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(
            f'Cannot read contract ABI: {e}',
            context={'path': str(abi_path)},
        ) from e

    if isinstance(payload, dict):
        payload = payload.get('abi')
    if not isinstance(payload, list):
        raise ConfigurationError(
            'Contract ABI must be a list or an artifact with an "abi" key',
            context={'path': str(abi_path)},
        )
    return payload


def event_signature(abi: list[dict[str, Any]], event_name: str) -> str:
    """Canonical signature, e.g. ``Deposited(uint256,address,uint256,uint256)``."""
    for entry in abi:
        if entry.get('type') == 'event' and entry.get('name') == event_name:
            types = ','.join(i['type'] for i in entry.get('inputs', []))
            return f'{event_name}({types})'
    raise ConfigurationError(
        f'Event {event_name} not present in contract ABI',
        context={'event_name': event_name},
    )
