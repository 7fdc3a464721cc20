"""Command-line entry points: simulated publisher and broker diagnostic."""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Callable, Dict

from pydantic import ValidationError

from sensor_dashboard.config import Settings, get_settings
from sensor_dashboard.observability import configure_logging
from sensor_dashboard.services.diagnostics import DiagnosticSubscriber
from sensor_dashboard.services.publisher import TelemetryPublisher
from sensor_dashboard.services.transport import ClientFactory

logger = logging.getLogger(__name__)


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--mqtt-url", help="MQTT broker URL (default: SENSOR_MQTT_URL or mqtt://127.0.0.1:1883)")
    parser.add_argument("--log-level", help="Logging level (default: SENSOR_LOG_LEVEL or INFO)")
    parser.add_argument("--log-format", choices=("json", "text"), help="Log output format")


def _add_publish_args(parser: argparse.ArgumentParser) -> None:
    _add_common(parser)
    parser.add_argument("--topic", help="Channel to publish readings to (default: sensor/data)")
    parser.add_argument("--interval", type=float, help="Seconds between readings (default: 5)")
    parser.add_argument("--count", type=int, help="Stop after this many readings")
    parser.add_argument("--seed", type=int, help="Seed for repeatable readings")
    parser.add_argument("--device-id", help="deviceId stamped on every reading")
    parser.add_argument("--location", help="Location stamped on every reading")
    parser.add_argument("--qos", type=int, choices=(0, 1, 2), help="MQTT QoS level (default: 1)")


def _add_diagnose_args(parser: argparse.ArgumentParser) -> None:
    _add_common(parser)
    parser.add_argument("--topic", help="Subscription filter (default: #)")
    parser.add_argument("--window", type=float, help="Observation window in seconds (default: 60)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sensor telemetry tools")
    sub = parser.add_subparsers(dest="command", required=True)
    _add_publish_args(sub.add_parser("publish", help="Publish simulated readings"))
    _add_diagnose_args(sub.add_parser("diagnose", help="Observe and classify broker traffic"))
    return parser


def _drop_none(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def settings_from_args(args: argparse.Namespace, base: Settings | None = None) -> Settings:
    """Overlay command-line flags on the environment settings; raises ValidationError."""

    base = base or get_settings()
    data = base.model_dump()
    data.update(
        _drop_none(
            {
                "mqtt_url": args.mqtt_url,
                "log_level": args.log_level,
                "log_format": args.log_format,
            }
        )
    )
    if args.mqtt_url:
        # credentials come from the new URL, not the previous one
        data["mqtt_username"] = base.mqtt_username if base.mqtt_url == args.mqtt_url else None
        data["mqtt_password"] = base.mqtt_password if base.mqtt_url == args.mqtt_url else None
    if args.command == "publish":
        data["publisher"].update(
            _drop_none(
                {
                    "topic": args.topic,
                    "interval_seconds": args.interval,
                    "max_messages": args.count,
                    "seed": args.seed,
                    "device_id": args.device_id,
                    "location": args.location,
                    "qos": args.qos,
                }
            )
        )
    else:
        data["diagnostics"].update(_drop_none({"topic": args.topic, "window_seconds": args.window}))
    return Settings(**data)


def _install_signal_handlers(callback: Callable[[], None]) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except (NotImplementedError, RuntimeError):
            pass


async def run_publish(settings: Settings, *, client_factory: ClientFactory | None = None) -> int:
    publisher = TelemetryPublisher(settings, client_factory=client_factory)
    _install_signal_handlers(publisher.request_stop)
    await publisher.run()
    return 0


async def run_diagnose(settings: Settings, *, client_factory: ClientFactory | None = None) -> int:
    subscriber = DiagnosticSubscriber(settings, client_factory=client_factory)
    _install_signal_handlers(subscriber.request_stop)
    summary = await subscriber.run()
    print(
        f"{summary.reason}: {summary.recognized} recognized, "
        f"{summary.unrecognized} unrecognized, {summary.opaque} opaque, "
        f"{summary.connection_errors} connection errors"
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = settings_from_args(args)
    except ValidationError as exc:
        parser.error(str(exc))
    configure_logging(settings.service_name, settings.log_level, settings.log_format)
    runner = run_publish if args.command == "publish" else run_diagnose
    try:
        return asyncio.run(runner(settings))
    except RuntimeError as exc:
        print(f"{args.command} failed: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0


def publish_main(argv: list[str] | None = None) -> int:
    return main(["publish", *(sys.argv[1:] if argv is None else argv)])


def diagnose_main(argv: list[str] | None = None) -> int:
    return main(["diagnose", *(sys.argv[1:] if argv is None else argv)])


if __name__ == "__main__":  # pragma: no cover - manual invocation
    raise SystemExit(main())
