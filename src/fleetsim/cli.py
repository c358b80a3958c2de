"""fleetsim command line.

Usage:
    fleetsim run scenarios/hover_endurance.yaml [--realtime] [--seed N]
    fleetsim validate scenarios/survey_grid.json
    fleetsim results list [--scenario NAME]
    fleetsim results show RUN_ID

Exit codes for ``run``: 0 success, 1 validation error, 2 runtime failure,
3 timed out, 4 cancelled (Ctrl-C cancels at the next tick boundary).
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
from dataclasses import replace
from pathlib import Path

from loguru import logger

from fleetsim.config import Settings, settings
from fleetsim.errors import ConfigurationError, ResourceExhaustion
from fleetsim.scenarios.library import ResultArchive, load_scenario, parse_scenario
from fleetsim.scenarios.schema import ScenarioDefinition, ScenarioOutcome, ScenarioResult
from fleetsim.simulation.bridge import TelemetryBridge
from fleetsim.simulation.clock import Pacing
from fleetsim.simulation.orchestrator import ScenarioOrchestrator, aborted_result

EXIT_SUCCESS = 0
EXIT_VALIDATION = 1
EXIT_FAILURE = 2
EXIT_TIMEOUT = 3
EXIT_CANCELLED = 4

EXIT_CODES = {
    ScenarioOutcome.SUCCESS: EXIT_SUCCESS,
    ScenarioOutcome.FAILURE: EXIT_FAILURE,
    ScenarioOutcome.TIMED_OUT: EXIT_TIMEOUT,
    ScenarioOutcome.CANCELLED: EXIT_CANCELLED,
}


def setup_logging(level: str, json_logs: bool = False) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), serialize=json_logs)


def _positive_float(value: str) -> float:
    number = float(value)
    if not number > 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleetsim", description="Drone fleet simulation engine")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a scenario file to completion")
    run.add_argument("file", type=Path)
    pacing = run.add_mutually_exclusive_group()
    pacing.add_argument("--realtime", dest="pacing", action="store_const", const=Pacing.REALTIME)
    pacing.add_argument("--accelerated", dest="pacing", action="store_const", const=Pacing.ACCELERATED)
    run.add_argument("--time-scale", type=_positive_float, default=None,
                     help="Wall seconds per simulated second in realtime pacing")
    run.add_argument("--seed", type=int, default=None)
    run.add_argument("--decimation", type=int, default=None,
                     help="Publish telemetry every N ticks")
    run.add_argument("--results-dir", type=Path, default=None)
    run.add_argument("--no-archive", action="store_true", help="Do not archive the result")
    run.add_argument("--mqtt", action="store_true", help="Relay the bridge over MQTT")
    run.add_argument("--api", action="store_true", help="Serve the HTTP API while running")

    validate = sub.add_parser("validate", help="Validate a scenario file without running it")
    validate.add_argument("file", type=Path)

    results = sub.add_parser("results", help="List or inspect archived results")
    results.add_argument("--results-dir", type=Path, default=None)
    results_sub = results.add_subparsers(dest="results_command", required=True)
    listing = results_sub.add_parser("list")
    listing.add_argument("--scenario", default=None)
    show = results_sub.add_parser("show")
    show.add_argument("run_id")
    return parser


def _print_result(result: ScenarioResult) -> None:
    print(f"\n  Scenario: {result.scenario_name}  (run {result.run_id}, seed {result.seed})")
    print(f"  Outcome:  {result.outcome.value} - {result.reason}")
    print(f"  Ticks:    {result.ticks}  simulated {result.sim_time_s:.1f}s  wall {result.wall_time_s:.2f}s")
    if result.fatal_cause:
        print(f"  Fatal:    {result.fatal_cause}")
    for drone in result.final_drones:
        print(f"  {drone.id:>12s}  {drone.mode.value:<11s} battery {drone.battery_pct:5.1f}%  "
              f"alt {drone.relative_alt:6.1f} m")
    counters = result.metrics.get("counters", {})
    if counters:
        print("  Counters: " + ", ".join(f"{k}={v}" for k, v in counters.items()))


def _apply_overrides(definition: ScenarioDefinition, args: argparse.Namespace,
                     cfg: Settings) -> ScenarioDefinition:
    """Re-validate the scenario with command-line overrides applied."""
    updates: dict[str, object] = {}
    if args.pacing is not None:
        updates["pacing"] = args.pacing
    if args.time_scale is not None:
        updates["time_scale"] = args.time_scale
    if args.seed is not None:
        updates["seed"] = args.seed
    if args.decimation is not None:
        updates["telemetry_decimation"] = max(1, args.decimation)
    elif "telemetry_decimation" not in definition.model_fields_set:
        updates["telemetry_decimation"] = max(1, cfg.telemetry_decimation)
    if not updates:
        return definition
    data = {**definition.model_dump(mode="json", exclude_unset=True), **updates}
    return parse_scenario(data, f"{args.file} (with overrides)")


def cmd_run(args: argparse.Namespace, cfg: Settings) -> int:
    try:
        definition = _apply_overrides(load_scenario(args.file), args, cfg)
    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_VALIDATION

    archive = ResultArchive(args.results_dir or cfg.results_dir)
    bridge = TelemetryBridge(queue_size=cfg.ingress_queue_size, history_size=cfg.history_size)

    try:
        orchestrator = ScenarioOrchestrator(definition, bridge, cfg.engine_limits())
    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_VALIDATION
    except ResourceExhaustion as e:
        logger.error(f"Scenario aborted: {e}")
        result = aborted_result(definition, str(e))
        bridge.publish_result(result)
        if not args.no_archive:
            archive.save(result)
        _print_result(result)
        return EXIT_FAILURE

    relay = None
    server = None
    if args.mqtt or cfg.mqtt_enabled:
        from fleetsim.comms.mqtt_relay import MQTTRelay

        relay = MQTTRelay(
            bridge,
            site_id=cfg.mqtt_site_id,
            broker_host=cfg.mqtt_host,
            broker_port=cfg.mqtt_port,
            username=cfg.mqtt_username,
            password=cfg.mqtt_password,
        )
        relay.start()
    if args.api:
        from fleetsim.app.main import APIServer, create_app

        server = APIServer(create_app(bridge, archive.directory), cfg.api_host, cfg.api_port)
        server.start()

    previous = signal.signal(signal.SIGINT, lambda signum, frame: orchestrator.cancel())
    try:
        result = orchestrator.run()
    finally:
        signal.signal(signal.SIGINT, previous)
        if relay is not None:
            relay.stop()
        if server is not None:
            server.stop()

    if not args.no_archive:
        path = archive.save(result)
        logger.info(f"Result archived: {path}")
    _print_result(result)
    return EXIT_CODES[result.outcome]


def cmd_validate(args: argparse.Namespace, cfg: Settings) -> int:
    try:
        definition = load_scenario(args.file)
        limits = replace(cfg.engine_limits(), physics_workers=0)
        with ScenarioOrchestrator(definition, limits=limits):
            pass
    except (ConfigurationError, ResourceExhaustion) as e:
        print(f"INVALID: {e}")
        return EXIT_VALIDATION
    print(f"OK: {definition.name} ({len(definition.drones)} drones, "
          f"{len(definition.events)} events, max {definition.max_duration_s:g}s)")
    return EXIT_SUCCESS


def cmd_results(args: argparse.Namespace, cfg: Settings) -> int:
    archive = ResultArchive(args.results_dir or cfg.results_dir)
    if args.results_command == "list":
        results = archive.list(args.scenario)
        if not results:
            print("No archived results")
        for r in results:
            print(f"  {r.run_id}  {r.scenario_name:30s}  {r.outcome.value:<10s}  "
                  f"{r.sim_time_s:8.1f}s  {r.reason}")
        return EXIT_SUCCESS

    result = archive.get(args.run_id)
    if result is None:
        print(f"Result not found: {args.run_id}")
        return EXIT_VALIDATION
    print(json.dumps(result.model_dump(mode="json"), indent=2))
    return EXIT_SUCCESS


def main(argv: list[str] | None = None, cfg: Settings | None = None) -> int:
    cfg = cfg or settings
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level or cfg.log_level, cfg.log_json)
    if args.command == "run":
        return cmd_run(args, cfg)
    if args.command == "validate":
        return cmd_validate(args, cfg)
    return cmd_results(args, cfg)


if __name__ == "__main__":
    sys.exit(main())
