"""
Configuration management for the DealVault indexer.

Loads settings from environment variables (and a project-root .env file)
with sensible defaults for Flare mainnet.
"""

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load .env file from project root
_project_root = Path(__file__).parent.parent.parent
_env_file = _project_root / '.env'
if _env_file.exists():
    load_dotenv(_env_file)


class Settings(BaseSettings):
    """Indexer settings loaded from environment variables."""

    # Chain
    RPC_URL: str = 'https://rpc.ankr.com/flare'
    DEAL_VAULT_ADDRESS: str
    CONTRACT_ABI_PATH: str | None = None
    RPC_TIMEOUT_SECONDS: float = 30.0

    # Subscription polling
    POLL_INTERVAL_SECONDS: float = 2.0
    CONFIRMATIONS: int = 0
    MAX_BLOCK_RANGE: int = 2000

    # Store
    DATABASE_URL: str
    DATABASE_SSL: bool = False

    # Logging
    LOG_LEVEL: str = 'INFO'
    LOG_JSON: bool = False


@lru_cache
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
