"""
Client wrappers for external services.

Provides:
- ChainClient: AsyncWeb3 JSON-RPC client bound to the DealVault contract
- DatabaseClient: async SQLAlchemy engine for the projection store
"""

from .chain_client import ChainClient
from .database_client import DatabaseClient

__all__ = ['ChainClient', 'DatabaseClient']
