#!/usr/bin/env python3
"""
dbtransit command line

    dbtransit cp <from-locator> <to-locator> [options]
    dbtransit count <locator> [options]
    dbtransit conv <from-locator> <to-locator> [--if-exists=...]

Exit status is 0 on success and a distinct non-zero code per error kind
(see dbtransit.core.errors.EXIT_CODES).
"""

import sys
import asyncio
import logging
import argparse
from typing import Dict, List, Optional

from dbtransit.config.settings import Credentials, TransitConfig, configure_logging, parse_size
from dbtransit.core.copy_runner import CopyRequest, CopyRunner, CountMismatchPolicy, StagingMode
from dbtransit.core.driver_registry import IfExists
from dbtransit.core.errors import EXIT_CODES, ErrorCode, TransitError
from dbtransit.core.locator import parse_locator, sanitize_message
from dbtransit.core.type_registry import LossPolicy
from dbtransit.drivers import default_registry

logger = logging.getLogger(__name__)


def _key_value(text: str) -> tuple:
    key, sep, value = text.partition('=')
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {text!r}")
    return key, value


def _if_exists(text: str) -> IfExists:
    try:
        return IfExists.parse(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def _size(text: str) -> int:
    try:
        return parse_size(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def _positive_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {text!r}") from None
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return value


def _args_dict(pairs: Optional[List[tuple]]) -> Dict[str, str]:
    return dict(pairs or [])


def build_parser(config: TransitConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dbtransit", description="Copy tables between databases, files and warehouses")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    commands = parser.add_subparsers(dest="command", required=True)

    cp = commands.add_parser("cp", help="Copy a table from one locator to another")
    cp.add_argument("source", help="Source locator (e.g. postgres://user@host/db#table)")
    cp.add_argument("destination", help="Destination locator")
    cp.add_argument("--if-exists", type=_if_exists, default=IfExists(),
                    help="error | overwrite | append | upsert-on:COL (default: error)")
    cp.add_argument("--max-streams", type=_positive_int, default=config.max_streams,
                    help=f"Maximum parallel streams (default: {config.max_streams})")
    cp.add_argument("--stream-size", type=_size, help="Target chunk size, e.g. 64MiB (default: 8MiB)")
    cp.add_argument("--schema", help="Locator to read the schema from instead of the source")
    cp.add_argument("--where", help="SQL filter applied by the source")
    cp.add_argument("--temporary", action="append", default=[], help="Temporary location (repeatable)")
    cp.add_argument("--from-arg", type=_key_value, action="append", help="Source driver argument K=V")
    cp.add_argument("--to-arg", type=_key_value, action="append", help="Destination driver argument K=V")
    cp.add_argument("--display-output-locators", action="store_true",
                    help="Print every destination locator written")
    cp.add_argument("--allow-lossy", action="store_true",
                    help="Degrade types the destination cannot represent instead of failing")
    cp.add_argument("--staging", choices=[m.value for m in StagingMode], default=StagingMode.AUTO.value,
                    help="When to route rows through a temporary location (default: auto)")
    cp.add_argument("--count-mismatch", choices=[m.value for m in CountMismatchPolicy],
                    default=CountMismatchPolicy.WARN.value,
                    help="Row count mismatch handling (default: warn)")

    count = commands.add_parser("count", help="Count the rows a copy would move")
    count.add_argument("locator", help="Locator to count")
    count.add_argument("--schema", help="Locator to read the schema from")
    count.add_argument("--where", help="SQL filter applied by the source")
    count.add_argument("--temporary", action="append", default=[], help="Temporary location (repeatable)")
    count.add_argument("--from-arg", type=_key_value, action="append", help="Source driver argument K=V")

    conv = commands.add_parser("conv", help="Convert a schema between formats; no rows move")
    conv.add_argument("source", help="Schema source locator")
    conv.add_argument("destination", help="Schema destination locator")
    conv.add_argument("--if-exists", type=_if_exists, default=IfExists(),
                      help="error | overwrite | append (default: error)")
    conv.add_argument("--allow-lossy", action="store_true",
                      help="Degrade types the destination cannot represent instead of failing")
    return parser


async def _cp(runner: CopyRunner, args) -> int:
    request = CopyRequest(
        source=parse_locator(args.source),
        destination=parse_locator(args.destination),
        if_exists=args.if_exists,
        max_streams=args.max_streams,
        stream_size=args.stream_size,
        schema=parse_locator(args.schema) if args.schema else None,
        where=args.where,
        temporaries=tuple(parse_locator(t) for t in args.temporary),
        from_args=_args_dict(args.from_arg),
        to_args=_args_dict(args.to_arg),
        loss_policy=LossPolicy.PERMIT if args.allow_lossy else LossPolicy.STRICT,
        staging=StagingMode(args.staging),
        count_mismatch=CountMismatchPolicy(args.count_mismatch),
    )
    result = await runner.copy(request)
    if args.display_output_locators:
        for locator in result.written_locators:
            print(locator)
    return 0


async def _count(runner: CopyRunner, args) -> int:
    total = await runner.count(
        parse_locator(args.locator),
        schema=parse_locator(args.schema) if args.schema else None,
        where=args.where,
        temporaries=tuple(parse_locator(t) for t in args.temporary),
        args=_args_dict(args.from_arg),
    )
    print(total)
    return 0


async def _conv(runner: CopyRunner, args) -> int:
    await runner.convert(
        parse_locator(args.source),
        parse_locator(args.destination),
        if_exists=args.if_exists,
        loss_policy=LossPolicy.PERMIT if args.allow_lossy else LossPolicy.STRICT,
    )
    return 0


COMMANDS = {'cp': _cp, 'count': _count, 'conv': _conv}


def run(argv: Optional[List[str]] = None, environ=None) -> int:
    """Parse `argv`, run one command and return the process exit status"""
    config = TransitConfig(environ=environ)
    parser = build_parser(config)
    args = parser.parse_args(argv)
    configure_logging("DEBUG" if args.verbose else config.log_level)
    logger.debug(f"dbtransit {args.command}: max_streams={config.max_streams}, max_retries={config.max_retries}")

    runner = CopyRunner(default_registry(Credentials.from_environ(environ)), config)
    try:
        return asyncio.run(COMMANDS[args.command](runner, args))
    except TransitError as e:
        print(f"error: {e.code.value}: {sanitize_message(e.message)}", file=sys.stderr)
        return EXIT_CODES[e.code]
    except KeyboardInterrupt:
        print(f"error: {ErrorCode.CANCELLED.value}: interrupted", file=sys.stderr)
        return EXIT_CODES[ErrorCode.CANCELLED]


def main():
    sys.exit(run())


if __name__ == "__main__":
    main()
