"""Operator CLI for the abuse-control pipeline.

Escalation, pattern detection and alert checks are never run on the request
path; operators (or a scheduler) invoke them through this command.

    jengahacks-admin escalate --threshold 5
    jengahacks-admin patterns --lookback-hours 24
    jengahacks-admin alerts --check
    jengahacks-admin export --format csv --output violations.csv
    jengahacks-admin block 203.0.113.9 --dimension ip --reason "scripted signups"
    jengahacks-admin unblock 203.0.113.9 --dimension ip
    jengahacks-admin prune-counters
    jengahacks-admin init-db
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from typing import Any, List, Optional, TextIO

from dotenv import load_dotenv

from jengahacks.abuse.config import Dimension
from jengahacks.abuse.identifiers import require_identifier
from jengahacks.config.core import load_settings, sanitize_dict
from jengahacks.errors import RegistrationError
from jengahacks.services import Services
from jengahacks.utils.logging_config import configure_logging

logger = logging.getLogger(__name__)


def _dimension(value: str) -> Dimension:
    try:
        return Dimension(value.lower())
    except ValueError:
        raise argparse.ArgumentTypeError(f"unknown dimension: {value}")


def _timestamp(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jengahacks-admin", description="JengaHacks abuse-control admin")
    parser.add_argument("--env-file", default=".env", help="dotenv file to load before settings")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("escalate", help="block persistent violators")
    p.add_argument("--threshold", type=int, default=None)
    p.add_argument("--lookback-hours", type=int, default=None)

    p = sub.add_parser("patterns", help="detect (or list) coordinated violation patterns")
    p.add_argument("--lookback-hours", type=int, default=None)
    p.add_argument("--min-confidence", type=float, default=None)
    p.add_argument("--list", action="store_true", help="list stored patterns instead of detecting")

    p = sub.add_parser("alerts", help="list alerts, optionally running the alert checks first")
    p.add_argument("--check", action="store_true")
    p.add_argument("--all", action="store_true", help="include resolved alerts")
    p.add_argument("--limit", type=int, default=50)

    p = sub.add_parser("export", help="export the violation log")
    p.add_argument("--format", choices=["csv", "json"], default="csv")
    p.add_argument("--start", type=_timestamp, default=None)
    p.add_argument("--end", type=_timestamp, default=None)
    p.add_argument("--dimension", type=_dimension, default=None)
    p.add_argument("--limit", type=int, default=10000)
    p.add_argument("--output", default=None, help="file to write (stdout if omitted)")

    p = sub.add_parser("block", help="block an identifier")
    p.add_argument("identifier")
    p.add_argument("--dimension", type=_dimension, required=True)
    p.add_argument("--reason", required=True)
    p.add_argument("--blocked-by", default="admin-cli")
    p.add_argument("--ttl-seconds", type=int, default=None)

    p = sub.add_parser("unblock", help="lift the active block on an identifier")
    p.add_argument("identifier")
    p.add_argument("--dimension", type=_dimension, required=True)
    p.add_argument("--unblocked-by", default="admin-cli")

    sub.add_parser("prune-counters", help="delete rate-limit counters for closed windows")

    sub.add_parser("init-db", help="create the database schema")
    return parser


def _emit(out: TextIO, payload: Any) -> None:
    out.write(json.dumps(payload, indent=2, default=str))
    out.write("\n")


async def run(args: argparse.Namespace, services: Services, out: TextIO = sys.stdout) -> int:
    """Execute one parsed command against ``services``. Returns the exit code."""
    try:
        if args.command == "escalate":
            escalated = await services.escalation.auto_block_persistent_violators(
                args.threshold, args.lookback_hours
            )
            _emit(out, {"blocked": [e.to_dict() for e in escalated], "count": len(escalated)})

        elif args.command == "patterns":
            if args.list:
                patterns = await services.patterns.get_violation_patterns(
                    args.lookback_hours or 24, args.min_confidence if args.min_confidence is not None else 0.5
                )
            else:
                patterns = await services.patterns.detect_patterns(args.lookback_hours, args.min_confidence)
            _emit(out, {"patterns": [p.to_dict() for p in patterns], "count": len(patterns)})

        elif args.command == "alerts":
            raised: List[Any] = []
            if args.check:
                raised += await services.alerts.check_repeated_violators()
                raised += await services.alerts.check_high_violation_rate()
            alerts = await services.alerts.list_alerts(
                resolved=None if args.all else False, limit=args.limit
            )
            _emit(out, {"raised": len(raised), "alerts": [a.to_dict() for a in alerts]})

        elif args.command == "export":
            if args.format == "json":
                body = await services.reports.export_json(args.start, args.end, args.dimension, args.limit)
            else:
                body = await services.reports.export_csv(args.start, args.end, args.dimension, args.limit)
            if args.output:
                with open(args.output, "w", encoding="utf-8", newline="") as fh:
                    fh.write(body)
                logger.info({"admin_cli": "exported", "path": args.output, "format": args.format})
            else:
                out.write(body)

        elif args.command == "block":
            entry, created = await services.blocks.block(
                require_identifier(args.identifier, args.dimension),
                args.reason,
                args.blocked_by,
                ttl_seconds=args.ttl_seconds,
            )
            _emit(out, {"block": entry.to_dict(), "created": created})

        elif args.command == "unblock":
            ident = require_identifier(args.identifier, args.dimension)
            removed = await services.blocks.unblock(ident, args.unblocked_by)
            _emit(out, {"unblocked": removed})

        elif args.command == "prune-counters":
            _emit(out, {"pruned": await services.rate_limits.prune_expired()})

        elif args.command == "init-db":
            if services.database is None:
                logger.error({"admin_cli": "init_db_skipped", "reason": "no database url configured"})
                return 2
            await services.database.create_schema()
            _emit(out, {"schema": "created"})

    except (RegistrationError, ValueError) as e:
        logger.error({"admin_cli": args.command, "error": str(e)})
        return 2
    return 0


async def _run_and_close(args: argparse.Namespace, services: Services) -> int:
    try:
        return await run(args, services)
    finally:
        await services.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    env_loaded = load_dotenv(args.env_file, override=False)

    settings = load_settings()
    configure_logging(settings.logging.level, mask_emails=settings.logging.mask_emails)
    logger.debug({"env_file_loaded": env_loaded, "settings": sanitize_dict(settings.model_dump())})

    services = Services.build(settings)
    return asyncio.run(_run_and_close(args, services))


if __name__ == "__main__":
    sys.exit(main())
