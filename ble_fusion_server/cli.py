from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading

import uvicorn

from .api import create_app
from .broadcast import Broadcaster
from .config_manager import ConfigManager
from .mqtt_processor import MQTTDataProcessor
from .pipeline import PositioningEngine
from .scheduler import PeriodicTask, start_all, stop_all
from .upstream import UpstreamClient


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or os.environ.get("LOG_LEVEL", "INFO")).upper(),
        format=LOG_FORMAT,
    )


def build_tasks(engine: PositioningEngine, config: ConfigManager) -> list[PeriodicTask]:
    intervals = config.get_intervals()
    return [
        PeriodicTask("stale-sweep", float(intervals.get("stale_sweep_s", 30)), engine.sweep_stale),
        PeriodicTask("health-sweep", float(intervals.get("health_sweep_s", 60)), engine.sweep_health),
        PeriodicTask("stats", float(intervals.get("stats_s", 10)), engine.broadcast_stats),
    ]


def run_server(args):
    config = ConfigManager(args.config)
    broadcaster = Broadcaster()
    upstream = UpstreamClient.from_config(config.get_upstream_config())
    engine = PositioningEngine(config, broadcaster=broadcaster, upstream=upstream)
    if not upstream.configured:
        logger.info("Upstream API not configured, positions stay local")
    if args.mock:
        engine.seed_mock()

    processor = MQTTDataProcessor(config, engine)
    try:
        processor.connect()
    except OSError as e:
        logger.error("Cannot reach MQTT broker: %s", e)
        return 1

    t = threading.Thread(target=processor.start_mqtt_client, name="mqtt", daemon=True)
    t.start()
    tasks = build_tasks(engine, config)
    start_all(tasks)

    api_cfg = config.get_api_config()
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(engine, broadcaster),
            host=args.host or api_cfg.get("host", "0.0.0.0"),
            port=int(args.port or api_cfg.get("port", 3080)),
            log_config=None,
        )
    )

    # graceful shutdown
    def handle_signal(sig, frame):
        logger.info("Signal %s received, shutting down", sig)
        server.should_exit = True

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        # uvicorn installs its own handlers inside run(); ours cover the startup window
        server.run()
    finally:
        stop_all(tasks)
        processor.stop_mqtt_client()
        upstream.close()
    return 0 if server.started else 1


def main(argv=None):
    parser = argparse.ArgumentParser(prog="ble-fusion-server", description="BLE mesh indoor positioning server")
    parser.add_argument(
        "--config",
        default=None,
        help="config file path, defaults to $BLE_FUSION_CONFIG or ./config/config.yaml",
    )
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="run the MQTT ingestion, background sweeps and admin API")
    p_run.add_argument("--host", default=None, help="admin API bind address")
    p_run.add_argument("--port", type=int, default=None, help="admin API port")
    p_run.add_argument("--mock", action="store_true", help="seed the device cache with mock devices")
    p_run.set_defaults(func=run_server)

    args = parser.parse_args(argv)
    setup_logging()
    # no subcommand means run with defaults
    if not hasattr(args, "func"):
        args.host, args.port, args.mock = None, None, False
        return run_server(args)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
