"""Release ladder simulation CLI."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import sys

from .config import RunProfile, load_run_profile
from .engine import ReleaseEngine
from .errors import ReleaseLadderError
from .logging_utils import configure_logging
from .providers import ConsoleDeliveryProvider, DeliveryProvider, JsonlDeliveryProvider


logger = logging.getLogger("release_ladder.cli")


def build_engine(profile: RunProfile, provider: DeliveryProvider) -> ReleaseEngine:
    engine = ReleaseEngine(provider, policy=profile.policy, clock=profile.build_clock())
    for seed in profile.allocations:
        allocation = engine.register(seed.allocation_id, cap=seed.cap, base_units=seed.base_units)
        if seed.activate:
            engine.activate(allocation.id)
    return engine


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Doubling release simulator")
    parser.add_argument("--profile", required=True, help="Path to run profile YAML")
    parser.add_argument("--ticks", type=int, default=8, help="Number of ticks to advance")
    parser.add_argument("--until-idle", action="store_true", help="Stop early once no allocation is active")
    parser.add_argument("--sink", choices=("console", "jsonl"), default="console", help="Delivery sink")
    parser.add_argument("--out", help="Output path for the jsonl sink")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--log-file", help="Also write log records to this file")
    args = parser.parse_args(argv)

    configure_logging(args.log_level, log_file=args.log_file)
    if args.sink == "jsonl" and not args.out:
        parser.error("--out is required with --sink jsonl")
    provider: DeliveryProvider
    if args.sink == "jsonl":
        provider = JsonlDeliveryProvider(Path(args.out))
    else:
        provider = ConsoleDeliveryProvider(stream=sys.stdout)

    try:
        engine = build_engine(load_run_profile(Path(args.profile)), provider)
    except (ReleaseLadderError, ValueError, OSError) as exc:
        logger.error("release ladder setup failed: %s", exc)
        return 2

    if args.until_idle:
        engine.run_until_idle(max_ticks=max(1, args.ticks))
    else:
        engine.run(args.ticks)
    logger.info("release ladder metrics: %s", json.dumps(engine.metrics_snapshot(), sort_keys=True, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
