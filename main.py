"""
Command line entry point for the expansion engine.

    python main.py generate feeds/germany.json --seed 42 --target 20
    python main.py list --db scenarios.db
    python main.py compare scenario_a scenario_b
    python main.py export scenario_a --format csv
"""

import sys
import json
import argparse
import logging

from expansion import (
    ConfigurationError,
    EngineConfig,
    ExpansionEngine,
    GenerationParams,
    InMemoryMetricsSink,
    RegionOverride,
    ScenarioNotFoundError,
    ScenarioStore,
)
from loaders import (
    OverpassAnchorSource,
    StaticAnchorSource,
    load_anchor_features,
    load_region_inputs,
    load_stores_csv,
)

log = logging.getLogger("expansion.cli")


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s │ %(name)-20s │ %(levelname)-8s │ %(message)s',
        datefmt='%H:%M:%S',
        handlers=[
            logging.StreamHandler()
        ]
    )


def parse_cap(value: str) -> RegionOverride:
    """REGION=CAP[:reason]"""
    try:
        region, rest = value.split("=", 1)
        cap, _, reason = rest.partition(":")
        return RegionOverride(region=region, cap=int(cap), reason=reason)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Expected REGION=CAP[:reason], got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Expansion candidate scoring and fair allocation")
    parser.add_argument("--db", default=ScenarioStore.DEFAULT_DB_PATH, help="Scenario database path")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Run one generation batch from a region feed")
    gen.add_argument("feed", help="Region feed JSON file")
    gen.add_argument("--region", help="Region name (defaults to the feed's region)")
    gen.add_argument("--seed", type=int, help="Sampling seed")
    gen.add_argument("--target", type=int, help="Acceptance budget")
    gen.add_argument("--aggression", type=int, default=50, help="0-100, sets the budget when --target is absent")
    gen.add_argument("--population-bias", type=float, default=0.5)
    gen.add_argument("--proximity-bias", type=float, default=0.5)
    gen.add_argument("--turnover-bias", type=float, default=0.5)
    gen.add_argument("--mix", type=float, help="Settlement share of the candidate pool")
    gen.add_argument("--min-distance", type=float, help="Minimum spacing in meters")
    gen.add_argument("--pop-min", type=int, help="Population floor")
    gen.add_argument("--cap", type=parse_cap, action="append", default=[],
                     help="Manual region cap, REGION=CAP[:reason] (repeatable)")
    gen.add_argument("--stores-csv", help="Replace the feed's stores with this CSV")
    gen.add_argument("--live-anchors", action="store_true", help="Fetch anchors from Overpass")
    gen.add_argument("--name", help="Scenario name")
    gen.add_argument("--output", help="Write the full result as JSON to this file")
    gen.add_argument("--workers", type=int, default=8, help="Scoring threads")

    sub.add_parser("list", help="List stored scenarios")

    cmp_ = sub.add_parser("compare", help="Compare two scenarios")
    cmp_.add_argument("first")
    cmp_.add_argument("second")

    exp = sub.add_parser("export", help="Export one scenario")
    exp.add_argument("scenario_id")
    exp.add_argument("--format", choices=["json", "csv"], default="json")
    return parser


def run_generate(args, store: ScenarioStore) -> int:
    inputs = load_region_inputs(args.feed)
    if args.stores_csv:
        inputs.stores = load_stores_csv(args.stores_csv)

    if args.live_anchors:
        source = OverpassAnchorSource()
    else:
        source = StaticAnchorSource(load_anchor_features(args.feed), live=True)

    params = GenerationParams(
        region=args.region or inputs.region,
        seed=args.seed,
        target_count=args.target,
        aggression=args.aggression,
        population_bias=args.population_bias,
        proximity_bias=args.proximity_bias,
        turnover_bias=args.turnover_bias,
        settlement_mix_ratio=args.mix,
        min_distance_m=args.min_distance,
        population_floor=args.pop_min,
        manual_caps=args.cap,
        scenario_name=args.name,
    )

    engine = ExpansionEngine(
        EngineConfig.from_env(),
        anchor_source=source,
        scenario_store=store,
        max_workers=args.workers,
    )
    metrics = InMemoryMetricsSink()
    result = engine.run(inputs, params, metrics=metrics)

    print(f"\n=== {result.region}: {result.status.upper()} ({result.scenario_id}) ===")
    shown = result.suggestions or result.provisional
    label = "Accepted" if result.suggestions else "Provisional"
    print(f"{label}: {len(shown)} of {result.stats['evaluated']} evaluated (target {result.target_count})")
    for s in shown[:20]:
        print(f"  {s['final_score']:.3f}  c={s['completeness']:.2f}  {s['region']:<20} {s['name'] or s['id']}")
    if result.guardrail and result.guardrail.violations:
        print("\nGuardrail violations:")
        for v in result.guardrail.violations:
            print(f"  - {v.message}")
    print(f"\nMetrics: {metrics.snapshot()['counters']}")

    if args.output:
        with open(args.output, "w") as f:
            json.dump(result.to_dict(), f, indent=2, default=str)
        log.info(f"Wrote result to {args.output}")
    return 0 if not result.is_held else 2


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    store = ScenarioStore(args.db)

    try:
        if args.command == "generate":
            return run_generate(args, store)
        if args.command == "list":
            for record in store.list_scenarios():
                r = record.results
                print(f"{record.id}  {record.created_at[:19]}  {record.name:<30} "
                      f"{r.get('status', '?'):<9} {r.get('suggestion_count', 0)} suggestions")
            return 0
        if args.command == "compare":
            print(json.dumps(store.compare(args.first, args.second), indent=2, default=str))
            return 0
        if args.command == "export":
            print(store.export(args.scenario_id, fmt=args.format))
            return 0
    except ConfigurationError as e:
        log.error(f"Invalid configuration: {e}")
        return 1
    except ScenarioNotFoundError as e:
        log.error(f"Scenario not found: {e}")
        return 1
    finally:
        store.close()
    return 1


if __name__ == "__main__":
    sys.exit(main())
