"""CLI entrypoint: run one sync cycle or watch for updates."""

import argparse
import asyncio
import json
import logging
import os
import sys

from bridgesync.client import BridgeSyncClient
from bridgesync.config import config, load_config
from bridgesync.db.engine import create_tables, dispose_engine, get_session_factory, init_engine
from bridgesync.errors import BridgeSyncError

log = logging.getLogger("bridgesync")


def _configure_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging (or plain text for dev)."""
    log_format = os.environ.get("BRIDGESYNC_LOG_FORMAT", "json")
    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)
    handler = logging.StreamHandler()
    if log_format == "json":

        class JsonFormatter(logging.Formatter):
            def format(self, record: logging.LogRecord) -> str:
                d = {
                    "timestamp": self.formatTime(record),
                    "level": record.levelname,
                    "logger": record.name,
                    "message": record.getMessage(),
                }
                if record.exc_info:
                    d["exception"] = self.formatException(record.exc_info)
                return json.dumps(d)

        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bridgesync", description="Sync local state with the backend")
    parser.add_argument("--base-url", default=None, help="Backend base URL (default: BRIDGESYNC_HTTP_BASE_URL)")
    parser.add_argument("--token", default=os.environ.get("BRIDGESYNC_TOKEN"), help="Bearer token")
    parser.add_argument("--user-id", type=int, default=None, help="User id (default: BRIDGESYNC_SYNC_USER_ID)")
    parser.add_argument("--device-id", default=None, help="Device id (default: BRIDGESYNC_SYNC_DEVICE_ID)")
    parser.add_argument("--app-type", default=None, help="Application type sent with update checks")
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy async URL for local state (default: BRIDGESYNC_SYNC_DATABASE_URL)",
    )
    parser.add_argument("--mode", choices=["batch", "smart"], default=None, help="Pull mode")
    parser.add_argument("--watch", action="store_true", help="Keep running the periodic update checker")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between update checks")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


async def _run(args: argparse.Namespace) -> int:
    init_engine(args.database_url or config.sync.database_url)
    await create_tables()
    async with get_session_factory()() as db:
        await load_config(db)

    try:
        async with BridgeSyncClient(
            args.base_url,
            args.token,
            user_id=args.user_id,
            device_id=args.device_id,
            app_type=args.app_type,
            mode=args.mode,
        ) as client:
            if args.watch:
                task = client.start_periodic(args.interval)
                log.info("Watching for updates every %.0fs", args.interval or config.sync.check_interval)
                await task
                return 0
            report = await client.sync()
            print(report.model_dump_json(indent=2))
            return 0 if report.ok else 1
    except BridgeSyncError as exc:
        log.error("Sync failed: %s", exc)
        print(json.dumps(exc.to_dict(), indent=2))
        return 2
    finally:
        await dispose_engine()


def main() -> None:
    args = _parser().parse_args()
    _configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    try:
        code = asyncio.run(_run(args))
    except ValueError as exc:
        log.error("%s", exc)
        code = 2
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
