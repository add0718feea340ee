"""Manual entry point for running and troubleshooting the Umami sync.

Usage:
    umami-sync sync         Run a full sync now
    umami-sync connections  Test the Umami database, the Umami API and the user store
    umami-sync status       Print the current watermark document
"""

import argparse
import asyncio
import json
import logging
import sys

from umami_sync.core.config import get_settings
from umami_sync.core.database import close_db, get_session_maker, init_db
from umami_sync.services.diagnostics import check_configured_connections, get_sync_status
from umami_sync.services.scheduler import run_sync_job, run_status
from umami_sync.services.watermark import WatermarkStore

logger = logging.getLogger(__name__)


async def _sync() -> int:
    result = await run_sync_job("manual")
    if result is None:
        print("Another sync run is in progress; nothing done.")
        return 1
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if run_status(result) != "failed" else 1


async def _connections() -> int:
    results = await check_configured_connections(get_settings(), get_session_maker())
    print(json.dumps(results, indent=2))
    return 0 if results["database"] and results["api"] and results["store"] else 1


async def _status() -> int:
    status = await get_sync_status(WatermarkStore(get_session_maker()))
    print(json.dumps(status, indent=2))
    return 0


COMMANDS = {
    "sync": _sync,
    "connections": _connections,
    "status": _status,
}


async def run(command: str) -> int:
    await init_db()
    try:
        return await COMMANDS[command]()
    except Exception as e:
        logger.error(f"{command} failed: {e}")
        return 1
    finally:
        await close_db()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="umami-sync", description="Umami sync troubleshooting")
    parser.add_argument("command", nargs="?", default="sync", choices=sorted(COMMANDS))
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return asyncio.run(run(args.command))


if __name__ == "__main__":
    sys.exit(main())
