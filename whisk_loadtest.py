from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from loadgen import DEFAULT_FETCH_RETRIES, DEFAULT_FETCH_RETRY_DELAY_S, parse_overrides
from runner import RunConfig, run_benchmark
from whisk_client import WhiskError

log = logging.getLogger("whisk_loadtest")

EXIT_OK = 0
EXIT_SETUP_FAILURE = 1
EXIT_ABORTED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Rate and provisioned-concurrency sweeps against an OpenWhisk action."
    )

    parser.add_argument(
        "--mode",
        choices=["rate-sweep", "provisioned-sweep", "burst"],
        default="rate-sweep",
    )
    parser.add_argument("--action", dest="action_name", required=True)
    parser.add_argument("--payload-file", type=Path, required=True)
    parser.add_argument(
        "--set",
        dest="payload_overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a request payload field, e.g. --set key_service_address=10.0.0.1",
    )

    parser.add_argument("--wskprops", type=Path, default=None)
    parser.add_argument("--insecure", action="store_true")
    parser.add_argument("--timeout-s", type=float, default=300.0)

    parser.add_argument(
        "--create-image",
        default=None,
        help="Create the action from this container image before the run.",
    )
    parser.add_argument("--kind", dest="action_kind", default="blackbox")
    parser.add_argument("--action-concurrency", type=int, default=1)
    parser.add_argument("--delete-action", action="store_true")

    parser.add_argument("--start-rate", type=int, default=20)
    parser.add_argument("--end-rate", type=int, default=200)
    parser.add_argument("--rate-step", type=int, default=20)
    parser.add_argument("--duration-min", dest="duration_minutes", type=float, default=1.0)
    parser.add_argument("--warmup-step", type=int, default=4)

    parser.add_argument("--max-provisioned", type=int, default=4)
    parser.add_argument("--cooldown-min", dest="cooldown_minutes", type=float, default=10.0)

    parser.add_argument("--concurrency", type=int, default=128)
    parser.add_argument(
        "--attempts",
        type=int,
        default=1,
        help="Repeat a failed burst until it runs clean, at most this many times.",
    )

    parser.add_argument("--fetch-retries", type=int, default=DEFAULT_FETCH_RETRIES)
    parser.add_argument("--fetch-retry-delay-s", type=float, default=DEFAULT_FETCH_RETRY_DELAY_S)

    parser.add_argument("--output-dir", type=Path, default=Path("runs"))
    parser.add_argument("--run-name", default=None)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
    )

    return parser


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.mode == "rate-sweep":
        if args.start_rate <= 0 or args.rate_step <= 0:
            parser.error("--start-rate and --rate-step must be > 0")
        if args.end_rate < args.start_rate:
            parser.error("--end-rate must be >= --start-rate")
        if args.duration_minutes <= 0:
            parser.error("--duration-min must be > 0")
        if args.warmup_step <= 0:
            parser.error("--warmup-step must be > 0")
    if args.mode == "provisioned-sweep":
        if args.max_provisioned <= 0:
            parser.error("--max-provisioned must be > 0")
        if args.cooldown_minutes < 0:
            parser.error("--cooldown-min must be >= 0")
    if args.mode == "burst":
        if args.concurrency <= 0:
            parser.error("--concurrency must be > 0")
        if args.attempts <= 0:
            parser.error("--attempts must be > 0")

    if args.fetch_retries < 0:
        parser.error("--fetch-retries must be >= 0")
    if args.fetch_retry_delay_s < 0:
        parser.error("--fetch-retry-delay-s must be >= 0")
    if args.timeout_s <= 0:
        parser.error("--timeout-s must be > 0")
    if args.action_concurrency <= 0:
        parser.error("--action-concurrency must be > 0")
    if not args.payload_file.exists():
        parser.error(f"--payload-file not found: {args.payload_file}")
    try:
        args.payload_overrides = parse_overrides(args.payload_overrides)
    except ValueError as exc:
        parser.error(str(exc))


def _config_from_args(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        action_name=args.action_name,
        payload_file=args.payload_file,
        mode=args.mode,
        payload_overrides=args.payload_overrides,
        wskprops=args.wskprops,
        insecure=bool(args.insecure),
        timeout_s=args.timeout_s,
        create_image=args.create_image,
        action_kind=args.action_kind,
        action_concurrency=args.action_concurrency,
        delete_action=bool(args.delete_action),
        start_rate=args.start_rate,
        end_rate=args.end_rate,
        rate_step=args.rate_step,
        duration_minutes=args.duration_minutes,
        warmup_step=args.warmup_step,
        max_provisioned=args.max_provisioned,
        cooldown_minutes=args.cooldown_minutes,
        concurrency=args.concurrency,
        attempts=args.attempts,
        max_fetch_retries=args.fetch_retries,
        fetch_retry_delay_s=args.fetch_retry_delay_s,
        output_dir=args.output_dir,
        run_name=args.run_name,
    )


async def _run_from_args(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    try:
        output_dir, result = await run_benchmark(config)
    except (WhiskError, ValueError, OSError) as exc:
        log.error("Setup failed: %s", exc)
        return EXIT_SETUP_FAILURE

    if result.aborted:
        log.warning("Sweep aborted at %s. Outputs written to: %s", result.aborted_at, output_dir)
        return EXIT_ABORTED
    log.info("Run complete. Outputs written to: %s", output_dir)
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    sys.exit(asyncio.run(_run_from_args(args)))


if __name__ == "__main__":
    main()
