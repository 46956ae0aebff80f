#!/usr/bin/env python3
"""lib2dex - LibreView (LibreLinkUp) to Dexcom Share glucose sync.

Usage:
    lib2dex                # continuous sync (same as --daemon)
    lib2dex --once         # one sync cycle, then exit
    lib2dex --test         # check both accounts without syncing
    lib2dex --verify       # show the newest values stored in Dexcom Share
    lib2dex --serve        # continuous sync plus the HTTP status API

Configuration comes from the environment or a .env file; see shared/config.py.
LibreLinkUp needs a follower account (not the patient's own account) and
Dexcom Share must have sharing enabled.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from glucose.adapters.dexcom_mapper import ShareGlucoseValue
from glucose.adapters.factory import build_syncer
from glucose.domain.models import ConnectionTestReport, GlucoseReading, ServiceCheck
from glucose.syncer import GlucoseSyncer
from shared.config import Settings, settings
from shared.logging import configure_logging

logger = structlog.get_logger()


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="lib2dex",
        description="Sync glucose readings from LibreView (LibreLinkUp) to Dexcom Share.",
        epilog="Not a medical device. Do not make treatment decisions based on synced data.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--daemon", action="store_true", help="Run in continuous sync mode (default)")
    mode.add_argument("--once", action="store_true", help="Run a single sync and exit")
    mode.add_argument("--test", action="store_true", help="Test both connections without syncing")
    mode.add_argument("--verify", action="store_true", help="Show values stored in Dexcom Share")
    mode.add_argument("--serve", action="store_true", help="Run the sync with the HTTP status API")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    return parser.parse_args(argv)


def _print_check(name: str, check: ServiceCheck) -> None:
    if not check.success:
        print(f"[Test] {name}: FAILED - {check.error}")
        return
    print(f"[Test] {name}: OK")
    print(f"  - Region: {check.region or 'auto'}")
    for key, value in check.details.items():
        if value is None:
            continue
        label = key.replace("_", " ").capitalize()
        if isinstance(value, GlucoseReading):
            value = f"{value.value:g} mg/dL at {value.timestamp.isoformat()}"
        elif isinstance(value, ShareGlucoseValue):
            value = f"{value.value} mg/dL"
        print(f"  - {label}: {value}")


def print_report(report: ConnectionTestReport) -> None:
    print("=" * 50)
    print("lib2dex - Connection Test")
    print("=" * 50)
    _print_check("LibreView", report.libreview)
    _print_check("Dexcom Share", report.dexcom)
    print("=" * 50)


async def _run(args: argparse.Namespace, syncer: GlucoseSyncer) -> int:
    try:
        if args.test:
            report = await syncer.test_connections()
            print_report(report)
            return 0 if report.all_ok else 1
        if args.verify:
            return 0 if await syncer.verify() else 1
        if args.once:
            await syncer.run_once()
            return 0
        await syncer.run_continuously()
        return 0
    finally:
        await syncer.aclose()


def _serve(cfg: Settings) -> int:
    import uvicorn

    uvicorn.run("main:app", host=cfg.status_host, port=cfg.status_port, log_config=None)
    return 0


def main(argv: list[str] | None = None, cfg: Settings | None = None) -> int:
    args = _parse_args(argv)
    cfg = cfg or settings
    configure_logging(json_output=args.json_logs or cfg.log_json, level=cfg.log_level)

    missing = cfg.missing_credentials()
    if missing:
        print("ERROR: Missing required environment variables:", file=sys.stderr)
        for name in missing:
            print(f"  - {name}", file=sys.stderr)
        print("\nSet them in the environment or in a .env file.", file=sys.stderr)
        return 1

    if args.serve:
        return _serve(cfg)

    syncer = build_syncer(cfg)
    try:
        return asyncio.run(_run(args, syncer))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:
        if cfg.log_level == "DEBUG":
            logger.exception("fatal_error", error=str(exc))
        else:
            logger.error("fatal_error", error=str(exc), error_type=type(exc).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(main())
