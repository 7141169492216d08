"""Process entry point: resource lifespan and the command line."""

import argparse
import asyncio
import signal
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Sequence

import structlog
from pydantic import ValidationError

from .clients.chain_client import ChainClient
from .clients.database_client import DatabaseClient
from .config import Settings, get_settings
from .coordinator import DealLocks, IndexerCoordinator
from .errors import ConfigurationError, IndexerError
from .handlers import build_handlers
from .logging import configure_logging
from .reconciler import ReconcileAction, Reconciler

logger = structlog.get_logger(__name__)


@dataclass
class Resources:
    """Process-scoped clients, acquired at startup and released on exit."""

    settings: Settings
    db: DatabaseClient
    chain: ChainClient
    locks: DealLocks


@asynccontextmanager
async def lifespan(settings: Settings | None = None) -> AsyncIterator[Resources]:
    """Connect the store and the chain client, close both on exit."""
    settings = settings or get_settings()

    logger.info('lifespan.startup', rpc_url=settings.RPC_URL, contract=settings.DEAL_VAULT_ADDRESS)

    chain = ChainClient.from_settings(settings)
    db = DatabaseClient(settings.DATABASE_URL, ssl=settings.DATABASE_SSL)
    await db.connect()
    try:
        await chain.connect()
        try:
            logger.info('lifespan.ready')
            yield Resources(settings=settings, db=db, chain=chain, locks=DealLocks())
        finally:
            logger.info('lifespan.shutdown')
            await chain.close()
    finally:
        await db.close()


# =============================================================================
# Commands
# =============================================================================


async def run_indexer(settings: Settings | None = None) -> int:
    """Index until SIGINT/SIGTERM, then drain in-flight handlers and exit."""
    async with lifespan(settings) as res:
        await res.db.setup_schema()
        handlers = build_handlers(res.db, res.chain)
        coordinator = IndexerCoordinator(res.chain, handlers, locks=res.locks)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, coordinator.request_stop)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass

        stats = await coordinator.run()
        logger.info('indexer.exited', **stats.to_dict())
    return 0


async def init_db(settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    db = DatabaseClient(settings.DATABASE_URL, ssl=settings.DATABASE_SSL)
    await db.connect()
    try:
        statements = await db.setup_schema()
        logger.info('init_db.completed', statements=len(statements))
    finally:
        await db.close()
    return 0


async def reconcile(deal_ids: Sequence[int] | None = None, settings: Settings | None = None) -> int:
    """Reconcile the given deals, or every known deal. Exit 1 if any failed."""
    async with lifespan(settings) as res:
        await res.db.setup_schema()
        reconciler = Reconciler(res.db, res.chain, locks=res.locks)
        if deal_ids:
            results = [await reconciler.reconcile_deal(deal_id) for deal_id in deal_ids]
        else:
            results = await reconciler.reconcile_all()
    return 1 if any(r.action is ReconcileAction.FAILED for r in results) else 0


# =============================================================================
# CLI
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='deal-vault-indexer',
        description='Index DealVault contract events into a relational projection.',
    )
    parser.add_argument('--log-json', action='store_true', help='Emit JSON log lines')
    parser.add_argument('--log-level', default=None, help='Override LOG_LEVEL')

    commands = parser.add_subparsers(dest='command', required=True)
    commands.add_parser('run', help='Follow the chain head and index events')
    commands.add_parser('init-db', help='Create tables and indexes')
    rec = commands.add_parser('reconcile', help='Refresh deals from the contract')
    rec.add_argument(
        '--deal-id',
        type=int,
        action='append',
        dest='deal_ids',
        help='Deal to reconcile (repeatable); default is every indexed deal',
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f'Invalid configuration: {e}', file=sys.stderr)
        return 2

    configure_logging(
        json_output=args.log_json or settings.LOG_JSON,
        log_level=args.log_level or settings.LOG_LEVEL,
    )

    if args.command == 'run':
        command = run_indexer(settings)
    elif args.command == 'init-db':
        command = init_db(settings)
    else:
        command = reconcile(args.deal_ids, settings)

    try:
        return asyncio.run(command)
    except ConfigurationError as e:
        logger.error('indexer.configuration_error', error=e.message, context=e.context)
        return 2
    except IndexerError as e:
        logger.error('indexer.fatal', error=e.message, error_type=type(e).__name__, context=e.context)
        return 1
    except KeyboardInterrupt:
        return 130
