from __future__ import annotations

import argparse
import json
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from opportunityos.app import OpportunityOS
from opportunityos.config import (
    Settings,
    config_exists,
    default_config,
    describe_settings,
    get_config_path,
    load_settings,
    save_config,
)
from opportunityos.domain import lifecycle
from opportunityos.errors import OpportunityOSError
from opportunityos.logging_config import configure_logging
from opportunityos.version import VERSION


def parse_metrics(pairs: Optional[List[str]]) -> Dict[str, float]:
    metrics: Dict[str, float] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"expected key=value, got {pair!r}")
        try:
            metrics[key.strip()] = float(value)
        except ValueError as exc:
            raise ValueError(f"metric {key.strip()!r} must be a number, got {value!r}") from exc
    return metrics


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _load(args) -> Settings:
    settings = load_settings(demo=True if getattr(args, "demo", False) else None)
    configure_logging(settings.log_level)
    return settings


def _open_app(args) -> OpportunityOS:
    app = OpportunityOS(_load(args), serve_http=False)
    app.initialize()
    return app


def cmd_init(args) -> int:
    path = get_config_path()
    if config_exists(path) and not args.force:
        print(f"Config already exists at {path}; use --force to overwrite.", file=sys.stderr)
        return 1
    save_config(default_config(demo=args.demo), path)
    print(f"Wrote {'demo ' if args.demo else ''}config to {path}")
    if not args.demo:
        print("Fill in the Userpilot, Slack and Kiro credentials (or set them as environment variables).")
    return 0


def cmd_config(args) -> int:
    path = get_config_path()
    if not config_exists(path):
        print(f"No config at {path}; showing defaults and environment overrides.", file=sys.stderr)
    _print_json(describe_settings(load_settings(validate=False)))
    return 0


def cmd_start(args) -> int:
    settings = _load(args)
    print(f"OpportunityOS {VERSION} starting ({'demo' if settings.demo else 'production'} mode); Ctrl+C to stop.")
    OpportunityOS(settings).run_forever()
    return 0


def cmd_detect(args) -> int:
    report = _open_app(args).coordinator.run_detection()
    _print_json(report.to_dict())
    return 0


def cmd_list(args) -> int:
    opportunities = _open_app(args).coordinator.list_opportunities(args.status)
    if not opportunities:
        print("No opportunities.")
        return 0
    for item in opportunities:
        print(f"{item['id']}  {item['status']:<15} {item['score']:>3}  {item['title']}")
    return 0


def cmd_show(args) -> int:
    opportunity = _open_app(args).coordinator.get_opportunity(args.id)
    if opportunity is None:
        print(f"Opportunity {args.id} not found.", file=sys.stderr)
        return 1
    _print_json(opportunity)
    return 0


def cmd_status(args) -> int:
    path = get_config_path()
    if not config_exists(path):
        print("Status: not configured (run `opportunityos init`).")
        return 0
    settings = load_settings(validate=False)
    app = OpportunityOS(settings, serve_http=False)
    app.initialize()
    schedule = settings.schedule
    print(f"Mode: {'demo' if settings.demo else 'production'}")
    print(f"Schedule: {schedule.weekday or 'daily'} at {schedule.hour:02d}:00 {schedule.timezone}")
    print(f"Data path: {settings.data_store_path}")
    print(f"Min score: {settings.detection.min_score}")
    last_run = app.scheduler.last_run_timestamp
    print(f"Last scheduled run: {last_run or 'never'}")
    for status, count in app.store.count_by_status().items():
        print(f"  {status:<15} {count}")
    return 0


def cmd_act(args) -> int:
    updated = _open_app(args).coordinator.handle_action(args.id, args.action)
    print(f"{updated['id']} is now {updated['status']}")
    return 0


def cmd_generate_spec(args) -> int:
    updated = _open_app(args).coordinator.generate_spec(args.id)
    print(f"{updated['id']} spec: {updated['spec_ref']}")
    return 0


def cmd_ship(args) -> int:
    before = parse_metrics(args.before)
    after = parse_metrics(args.after)
    updated = _open_app(args).coordinator.mark_shipped(args.id, before, after, rating=args.rating)
    print(f"{updated['id']} shipped")
    return 0


def cmd_demo(args) -> int:
    print("OpportunityOS demo: fake analytics, console notifications, no API keys required.\n")
    configure_logging("WARNING")
    with tempfile.TemporaryDirectory(prefix="opportunityos-demo-") as data_dir:
        settings = Settings(data_store_path=str(Path(data_dir) / "opportunities.json"), demo=True)
        app = OpportunityOS(settings, serve_http=False)
        app.initialize()
        coordinator = app.coordinator

        report = coordinator.run_detection()
        print(f"\nDetected {len(report.created)} opportunities.\n")

        scripted = [lifecycle.PROMOTE, lifecycle.INVESTIGATE, lifecycle.DISMISS]
        for opportunity_id, action in zip(report.created, scripted):
            updated = coordinator.handle_action(opportunity_id, action)
            print(f"-> {action}: {updated['title']}")
            if action == lifecycle.PROMOTE:
                coordinator.generate_spec(opportunity_id)

        print("\nSummary:")
        for status, count in app.store.count_by_status().items():
            if count:
                print(f"  {status:<15} {count}")
    return 0


def cmd_version(args) -> int:
    print(VERSION)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="opportunityos", description="Detect product opportunities and route them to Slack")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init = subparsers.add_parser("init", help="write a config template")
    init.add_argument("--demo", action="store_true")
    init.add_argument("--force", action="store_true")
    init.set_defaults(func=cmd_init)

    subparsers.add_parser("config", help="show the effective config with secrets masked").set_defaults(func=cmd_config)

    start = subparsers.add_parser("start", help="run the scheduler and interactions server in the foreground")
    start.add_argument("--demo", action="store_true")
    start.set_defaults(func=cmd_start)

    detect = subparsers.add_parser("detect", help="run one detection pass now")
    detect.add_argument("--demo", action="store_true")
    detect.set_defaults(func=cmd_detect)

    list_cmd = subparsers.add_parser("list", help="list opportunities")
    list_cmd.add_argument("--status", choices=sorted(lifecycle.ALL_STATUSES))
    list_cmd.set_defaults(func=cmd_list)

    show = subparsers.add_parser("show", help="print one opportunity as JSON")
    show.add_argument("id")
    show.set_defaults(func=cmd_show)

    subparsers.add_parser("status", help="show schedule and counts per status").set_defaults(func=cmd_status)

    act = subparsers.add_parser("act", help="apply a triage action")
    act.add_argument("id")
    act.add_argument("action", choices=sorted(lifecycle.ACTION_TARGETS))
    act.set_defaults(func=cmd_act)

    generate = subparsers.add_parser("generate-spec", help="generate the spec of a promoted opportunity")
    generate.add_argument("id")
    generate.set_defaults(func=cmd_generate_spec)

    ship = subparsers.add_parser("ship", help="record that an opportunity shipped")
    ship.add_argument("id")
    ship.add_argument("--before", action="append", metavar="KEY=VALUE", default=[])
    ship.add_argument("--after", action="append", metavar="KEY=VALUE", default=[])
    ship.add_argument("--rating", type=int, default=5)
    ship.set_defaults(func=cmd_ship)

    subparsers.add_parser("demo", help="run a scripted demo in a temporary data dir").set_defaults(func=cmd_demo)
    subparsers.add_parser("version", help="print the version").set_defaults(func=cmd_version)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except OpportunityOSError as exc:
        print(f"error ({exc.error_type}): {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
