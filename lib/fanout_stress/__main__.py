"""Entry point for running the fan-out stress matrix.

Usage:
    fanout-stress [--config FILE] [--backend memory|redis] [--encoding text ...]

Environment variables:
    FANOUT_STRESS_<SETTING>: override any setting, e.g. FANOUT_STRESS_REDIS_URL
"""

import argparse
import json
import sys
from typing import List, Optional

from .config import BACKENDS, HarnessSettings
from .logs import configure_logging, get_logger
from .orchestrator import Orchestrator, ScenarioStatus, broker_factory_for, run_matrix
from .scenarios import PayloadEncoding, filter_scenarios, scenario_matrix

logger = get_logger("fanout_stress.cli")

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_SETUP_TIMEOUT = 2


def _flag(value: str) -> bool:
    lowered = value.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"expected a boolean, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fanout-stress",
        description="Fan-out delivery integrity stress harness",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("--config", type=str, help="YAML settings file")
    parser.add_argument("--backend", choices=BACKENDS, help="Broker backend")
    parser.add_argument("--redis-url", type=str, help="Redis URL for the redis backend")
    parser.add_argument("--consumers", type=int, help="Consumer worker count")
    parser.add_argument("--producers", type=int, help="Producer worker count")
    parser.add_argument("--run-seconds", type=float, help="Run time per scenario after readiness")
    parser.add_argument(
        "--encoding", action="append", choices=[e.value for e in PayloadEncoding],
        help="Only run these payload encodings (repeatable)"
    )
    parser.add_argument("--reduce-memory-footprint", type=_flag, help="Only run this policy value")
    parser.add_argument("--concurrent-dispatch", type=_flag, help="Only run this policy value")
    parser.add_argument("--log-level", type=str, help="Logging level")
    parser.add_argument("--json", action="store_true", help="Print results as JSON lines")
    return parser


def settings_from_args(args: argparse.Namespace) -> HarnessSettings:
    settings = HarnessSettings.load(args.config) if args.config else HarnessSettings()
    settings = HarnessSettings.from_env(settings)
    return settings.merge({
        "backend": args.backend,
        "redis_url": args.redis_url,
        "consumer_count": args.consumers,
        "producer_count": args.producers,
        "run_seconds": args.run_seconds,
        "log_level": args.log_level,
    }).validate()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = settings_from_args(args)
    except (OSError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_SETUP_TIMEOUT

    configure_logging(settings.log_level)

    scenarios = filter_scenarios(
        scenario_matrix(),
        encodings=[PayloadEncoding(e) for e in args.encoding] if args.encoding else None,
        reduce_memory_footprint=args.reduce_memory_footprint,
        concurrent_store_and_dispatch=args.concurrent_dispatch
    )
    orchestrator = Orchestrator.from_settings(settings, broker_factory_for(settings))
    results = run_matrix(orchestrator, scenarios)

    for result in results:
        if args.json:
            print(json.dumps(result.to_dict()))
        else:
            result.metrics.print_summary(result.status.value.upper())

    statuses = {r.status for r in results}
    logger.info(
        "%d scenarios run on %s backend: %d passed",
        len(results), settings.backend, sum(1 for r in results if r.passed)
    )
    if ScenarioStatus.SETUP_TIMEOUT in statuses:
        return EXIT_SETUP_TIMEOUT
    if ScenarioStatus.FAILED in statuses:
        return EXIT_FAILED
    return EXIT_PASSED


if __name__ == "__main__":
    sys.exit(main())
