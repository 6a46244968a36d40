"""
Command line entry point.

    tv-parity run flows/browse.yaml --target-native emulator-5554 \\
        --target-ported emulator-5556 --config parity.yaml --output report.json
    tv-parity compare native.xml ported.xml \\
        --native-resolution 1920x1080 --ported-resolution 1280x720

Exit codes: 0 when the report passes the severity gate, 1 when it does not,
2 for usage, configuration or device errors.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

from adbdevicemanager import PLATFORM_NATIVE, PLATFORM_PORTED, AdbDeviceManager, Target
from comparator import SEVERITY_ORDER, compare
from config import ParityConfig, load_config
from errors import ParityError
from geometry import normalize, parse_resolution
from navigation import load_script
from runner import ParityRun
from uitree import extract

logger = logging.getLogger(__name__)

EXIT_PASS = 0
EXIT_FAIL = 1
EXIT_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tv-parity", description="Verify UI parity between a native and a ported TV app.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    # Also accepted after the subcommand.
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", parents=[common], help="Replay a script on both targets and compare them")
    run.add_argument("script", help="Script file (YAML or JSON list of input events)")
    run.add_argument("--target-native", help="Device serial of the native target")
    run.add_argument("--target-ported", help="Device serial of the ported target")
    run.add_argument("--native-package", help="Package of the native app (overrides config)")
    run.add_argument("--ported-package", help="Package of the ported app (overrides config)")
    run.add_argument("--config", help="Configuration file (YAML or JSON)")
    run.add_argument("--output", help="Write the JSON report here")
    run.add_argument("--no-launch", action="store_true", help="Use the apps as they are instead of relaunching")
    run.add_argument("--adb-host", default="127.0.0.1")
    run.add_argument("--adb-port", type=int, default=5037)

    cmp_ = sub.add_parser("compare", parents=[common], help="Compare two saved UI dumps")
    cmp_.add_argument("native_dump")
    cmp_.add_argument("ported_dump")
    cmp_.add_argument("--native-resolution", required=True, help="WIDTHxHEIGHT")
    cmp_.add_argument("--ported-resolution", required=True, help="WIDTHxHEIGHT")
    cmp_.add_argument("--config", help="Configuration file (YAML or JSON)")
    cmp_.add_argument("--output", help="Write the JSON deltas here")
    return parser


def _make_target(platform: str, settings, package: str | None) -> Target:
    device = settings.device
    package = package or settings.package
    if not device:
        raise ParityError(f"No device given for the {platform} target (--target-{platform} or config targets.{platform}.device)")
    if not package:
        raise ParityError(f"No package given for the {platform} target (--{platform}-package or config targets.{platform}.package)")
    return Target(
        identifier=f"{platform}:{device}",
        platform=platform,
        device_serial=device,
        package=package,
        activity=settings.activity,
        resolution=settings.resolution,
    )


def cmd_run(args: argparse.Namespace) -> int:
    config = load_config(args.config).with_targets(args.target_native, args.target_ported)
    native_target = _make_target(PLATFORM_NATIVE, config.native, args.native_package)
    ported_target = _make_target(PLATFORM_PORTED, config.ported, args.ported_package)
    if native_target.device_serial == ported_target.device_serial:
        raise ParityError("Native and ported targets must run on different devices")

    script = load_script(args.script)
    native_adapter = AdbDeviceManager(native_target.device_serial, exit_on_error=False, host=args.adb_host, port=args.adb_port)
    ported_adapter = AdbDeviceManager(ported_target.device_serial, exit_on_error=False, host=args.adb_host, port=args.adb_port)

    run = ParityRun(
        native_adapter,
        ported_adapter,
        native_target,
        ported_target,
        script,
        config=config,
        launch=not args.no_launch,
    )
    previous = signal.signal(signal.SIGINT, lambda *_: run.cancel())
    try:
        report = run.execute()
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.output:
        report.write_json(args.output)
        logger.info("Report written to %s", args.output)
    print(report.render_text())
    return EXIT_PASS if report.passes_gate() else EXIT_FAIL


def cmd_compare(args: argparse.Namespace) -> int:
    config: ParityConfig = load_config(args.config)
    native = normalize(
        extract(Path(args.native_dump).read_text(encoding="utf-8"), config.screen_tag_resource_id),
        parse_resolution(args.native_resolution),
    )
    ported = normalize(
        extract(Path(args.ported_dump).read_text(encoding="utf-8"), config.screen_tag_resource_id),
        parse_resolution(args.ported_resolution),
    )
    result = compare(native, ported, config)
    grouped = result.by_severity()
    passed = SEVERITY_ORDER[result.max_severity] <= SEVERITY_ORDER[config.gate_severity]

    if args.output:
        out = Path(args.output)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(
            json.dumps(
                {
                    "comparedAt": datetime.now(timezone.utc).isoformat(),
                    "maxSeverity": result.max_severity,
                    "passed": passed,
                    "counts": {severity: len(items) for severity, items in grouped.items()},
                    "deltas": [delta.to_dict() for delta in result.deltas],
                },
                indent=2,
            ),
            encoding="utf-8",
        )

    print(
        f"{'PASS' if passed else 'FAIL'}: {len(grouped['ok'])} ok, {len(grouped['warn'])} warn, "
        f"{len(grouped['fail'])} fail (max severity {result.max_severity})"
    )
    for delta in grouped["fail"] + grouped["warn"]:
        ref = delta.native or delta.ported
        print(f"  [{delta.severity}] {delta.status} {ref.kind} {ref.text or ''} at {list(ref.path)}")
    return EXIT_PASS if passed else EXIT_FAIL


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    handlers = {"run": cmd_run, "compare": cmd_compare}
    try:
        return handlers[args.command](args)
    except (ParityError, ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
