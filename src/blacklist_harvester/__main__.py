"""Command-line entry point: ``python -m blacklist_harvester``.

Commands:
    run        backfill every chain, then stay live until interrupted
    sync       one backfill pass per chain (``--once``), optionally a full resync
    stats      print denylist counts and sync cursors
    check      look up one address
    validate   compare a random sample with the token contracts
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from dataclasses import asdict
from typing import Any

from blacklist_harvester.config import Settings, get_settings
from blacklist_harvester.models import InvalidAddressError, Network
from blacklist_harvester.sync.engine import SyncEngine

logger = logging.getLogger("blacklist_harvester")


def _json_default(value: object) -> str:
    if hasattr(value, "isoformat"):
        return value.isoformat()  # type: ignore[no-any-return]
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    return str(value)


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=_json_default))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blacklist_harvester",
        description="Synchronize USDT/USDC denylist events from Ethereum and TRON",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Backfill, then follow new events until interrupted")
    run.add_argument("--full-resync", action="store_true", help="Clear stored data and re-fetch everything first")

    sync = sub.add_parser("sync", help="Run a backfill pass")
    sync.add_argument("--once", action="store_true", help="Exit after one pass instead of going live")
    sync.add_argument("--full-resync", action="store_true", help="Clear stored data and re-fetch everything")

    sub.add_parser("stats", help="Show denylist counts and sync cursors")

    check = sub.add_parser("check", help="Look up an address")
    check.add_argument("address")
    check.add_argument("--token", default=None)
    check.add_argument("--network", choices=[n.value for n in Network], default=None)

    validate = sub.add_parser("validate", help="Spot-check stored status against the contracts")
    validate.add_argument("--sample", type=int, default=50, help="Number of records to check")

    return parser


async def _sync(engine: SyncEngine, *, full_resync: bool) -> int:
    reports = await engine.run_backfill_once(force_full_resync=full_resync)
    _print_json(
        {
            network.value: {
                "ok": report.ok,
                "error": report.error,
                "tokens": [asdict(t) for t in report.tokens],
            }
            for network, report in reports.items()
        }
    )
    return 0 if all(r.ok for r in reports.values()) else 1


async def _stats(engine: SyncEngine) -> int:
    stats = await engine.store.stats()
    _print_json(asdict(stats))
    return 0


async def _check(engine: SyncEngine, address: str, token: str | None, network: str | None) -> int:
    try:
        records = await engine.store.lookup(address, token=token, network=Network(network) if network else None)
    except InvalidAddressError as e:
        _print_json({"address": address, "error": str(e)})
        return 2
    _print_json({"address": address, "records": [asdict(r) for r in records]})
    return 0


async def _validate(engine: SyncEngine, sample: int) -> int:
    report = await engine.build_validator().validate_sample(sample)
    _print_json({**asdict(report), "accuracy": report.accuracy})
    return 0 if not report.mismatches else 1


async def _main(args: argparse.Namespace, settings: Settings) -> int:
    engine = SyncEngine(settings)
    full_resync = bool(getattr(args, "full_resync", False)) or settings.sync.full_resync
    try:
        await engine.init_schema()
        if args.command == "run" or (args.command == "sync" and not args.once):
            reports = await engine.run(force_full_resync=full_resync)
            return 0 if all(r.ok for r in reports.values()) else 1
        if args.command == "sync":
            return await _sync(engine, full_resync=full_resync)
        if args.command == "stats":
            return await _stats(engine)
        if args.command == "check":
            return await _check(engine, args.address, args.token, args.network)
        if args.command == "validate":
            return await _validate(engine, args.sample)
        raise ValueError(f"unknown command {args.command!r}")
    finally:
        await engine.stop()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting with settings: %s", settings.redacted_summary())

    return asyncio.run(_main(args, settings))


if __name__ == "__main__":
    sys.exit(main())
