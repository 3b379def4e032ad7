# checkgate/cli.py

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path

from checkgate.internal.analysis.export import export_metrics_csv
from checkgate.internal.config.config import configure_logging, load_config
from checkgate.internal.errors import CheckGateError
from checkgate.internal.storage.postgres import close_db_pool
from checkgate.main import (
    build_pipeline,
    open_store,
    start_background_tasks,
    stop_background_tasks,
)

logger = logging.getLogger("checkgate")


def main(argv=None):
    """
    Main entrypoint for CheckGate.
    Parses command-line arguments and runs the requested action.
    """
    parser = argparse.ArgumentParser(description="CheckGate metrics collector")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.toml")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run collection and retention loops")
    run_parser.set_defaults(func=run_collector)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP query API with the loops")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=9300)
    serve_parser.set_defaults(func=serve)

    init_parser = subparsers.add_parser("init-db", help="Create tables and monthly partitions")
    init_parser.set_defaults(func=init_db)

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete data past its retention horizon")
    cleanup_parser.add_argument("--stats", action="store_true",
                                help="Show statistics without deleting")
    cleanup_parser.add_argument("--dry-run", action="store_true",
                                help="Show what would be deleted without actually deleting")
    cleanup_parser.set_defaults(func=cleanup)

    export_parser = subparsers.add_parser("export", help="Export host metrics as CSV")
    export_parser.add_argument("--start", required=True, type=datetime.fromisoformat)
    export_parser.add_argument("--end", required=True, type=datetime.fromisoformat)
    export_parser.add_argument("--hostname", default=None)
    export_parser.add_argument("--output", type=Path, default=None, help="File to write (default stdout)")
    export_parser.set_defaults(func=export)

    args = parser.parse_args(argv)
    try:
        args.settings = load_config(args.config)
    except FileNotFoundError:
        sys.exit(1)
    configure_logging(args.settings.logging)

    try:
        return args.func(args)
    except CheckGateError as e:
        logger.error(f"{args.command} failed: {e}")
        sys.exit(1)


def run_collector(args):
    async def _run():
        store = await open_store(args.settings)
        try:
            await store.init_schema(months_ahead=args.settings.retention.partitions_ahead)
            pipeline = build_pipeline(args.settings, store)
            tasks = start_background_tasks(pipeline, store, args.settings)

            stopping = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, stopping.set)
                except NotImplementedError:
                    pass  # Windows
            logger.info("Collector is running. Press Ctrl+C to stop.")
            await stopping.wait()

            logger.info("Shutdown signal received. Stopping collector...")
            await stop_background_tasks(pipeline, tasks)
        finally:
            await close_db_pool()
        logger.info("Collector stopped.")

    asyncio.run(_run())


def serve(args):
    import uvicorn

    uvicorn.run("checkgate.main:app", host=args.host, port=args.port)


def init_db(args):
    async def _init():
        store = await open_store(args.settings)
        try:
            await store.init_schema(months_ahead=args.settings.retention.partitions_ahead)
        finally:
            await close_db_pool()

    asyncio.run(_init())


def cleanup(args):
    async def _cleanup():
        store = await open_store(args.settings)
        try:
            retention = _retention_only(args.settings, store)
            if args.stats or args.dry_run:
                print("\n=== Data Retention Statistics ===")
                for stat in await retention.preview():
                    print(f"{stat.retention_class.value}: {stat.would_delete} rows older than "
                          f"{stat.cutoff.date()}")
                if args.dry_run:
                    print("\nDRY RUN: No data will be deleted.")
                return

            report = await retention.run_cleanup()
            print("Cleanup completed:")
            for result in report.results:
                status = f"FAILED ({result.error})" if result.error else f"deleted {result.deleted}"
                print(f"  - {result.retention_class.value}: {status} (cutoff {result.cutoff.date()})")
            if any(r.error for r in report.results):
                sys.exit(1)
        finally:
            await close_db_pool()

    asyncio.run(_cleanup())


def _retention_only(settings, store):
    from checkgate.internal.utils.cleanup_task import RetentionManager

    return RetentionManager.from_days(
        store,
        metrics_days=settings.retention.metrics_days,
        audit_days=settings.retention.audit_days,
        query_timeout=settings.retention.query_timeout_seconds,
    )


def export(args):
    async def _export():
        store = await open_store(args.settings)
        try:
            from checkgate.internal.analysis.aggregation import AggregationEngine

            engine = AggregationEngine(store, max_span_days=args.settings.aggregation.max_span_days)
            return await export_metrics_csv(engine, args.start, args.end, args.hostname)
        finally:
            await close_db_pool()

    content = asyncio.run(_export())
    if args.output:
        args.output.write_text(content)
        print(f"Wrote {args.output}")
    else:
        sys.stdout.write(content)


if __name__ == "__main__":
    main()
