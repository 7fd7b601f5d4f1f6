"""Command line entry point: serve the ingestion API and run pipeline jobs"""
import argparse
import datetime
import logging
import sys
from dataclasses import asdict

from playledger.config import get_settings
from playledger.db import init_db
from playledger.services.materializer import MaterializationWorker
from playledger.services.payouts import PayoutAggregator
from playledger.utils.json_encoder import json_dumps

logger = logging.getLogger('playledger')

def _parse_run_at(value: str) -> datetime.datetime:
    parsed = datetime.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.UTC)
    return parsed

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='playledger', description="Play ingestion and UCPS payout pipeline")
    commands = parser.add_subparsers(dest='command', required=True)

    serve = commands.add_parser('serve', help="Run the ingestion HTTP API")
    serve.add_argument('--host', default='0.0.0.0')
    serve.add_argument('--port', type=int, default=8000)

    materialize = commands.add_parser('materialize', help="Materialize unprocessed raw plays once")
    materialize.add_argument('--limit', type=int, default=None)
    materialize.add_argument('--workers', type=int, default=None)

    requeue = commands.add_parser('requeue', help="Reset failed raw plays to unprocessed")
    requeue.add_argument('--partition', default=None, help="yyyymm partition to limit the reset to")

    payouts = commands.add_parser('payouts', help="Calculate UCPS payouts for the previous month")
    payouts.add_argument('--run-at', type=_parse_run_at, default=None,
                         help="ISO timestamp of the scheduled run (defaults to now)")
    payouts.add_argument('--period', default=None, help="Explicit YYYY-MM period to recompute")

    commands.add_parser('init-db', help="Create database tables")
    return parser

def run(argv=None) -> int:
    """Dispatch a CLI command; returns the process exit code"""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    try:
        database = init_db(settings.DATABASE_URL)

        if args.command == 'serve':
            import uvicorn
            from playledger.api import create_app
            uvicorn.run(create_app(settings, database), host=args.host, port=args.port)
        elif args.command == 'materialize':
            outcomes = MaterializationWorker(database, settings).run_pending(args.limit, args.workers)
            print(json_dumps([asdict(outcome) for outcome in outcomes], indent=2))
        elif args.command == 'requeue':
            moved = MaterializationWorker(database, settings).requeue_failed(args.partition)
            print(json_dumps({'requeued': moved}))
        elif args.command == 'payouts':
            summary = PayoutAggregator(database, settings).run(run_at=args.run_at, period=args.period)
            print(json_dumps(asdict(summary), indent=2))
        elif args.command == 'init-db':
            logger.info("Database tables created")
        return 0

    except Exception as e:
        logger.error(f"Error running {args.command}: {e}")
        logger.debug("Traceback", exc_info=True)
        return 1

if __name__ == "__main__":
    sys.exit(run())
