"""
Prometheus metrics server and escalation worker.

Starts an HTTP server that exposes Prometheus metrics at /metrics. When a
database is given, the escalation sweep runs in the foreground on the
policy's scan interval, so the exported escalation metrics stay live.

Usage:
    python -m trackify_engine.metrics_server --port 9090
    python -m trackify_engine.metrics_server --port 9090 --db trackify.db
"""

import argparse
import threading
import time

from trackify_engine.collaborators.directory import StaticApproverDirectory
from trackify_engine.engine import TrackifyEngine
from trackify_engine.kernel.logging import configure_logging, get_logger
from trackify_engine.kernel.metrics import start_metrics_server
from trackify_engine.kernel.policy import EnginePolicy

logger = get_logger(__name__)


def main() -> None:
    """
    Start the Prometheus metrics server.

    The server exposes all engine metrics at http://0.0.0.0:<port>/metrics
    in Prometheus text format.
    """
    parser = argparse.ArgumentParser(description="Trackify Metrics Server")
    parser.add_argument(
        "--port",
        type=int,
        default=9090,
        help="Port to listen on (default: 9090)",
    )
    parser.add_argument("--db", type=str, default=None, help="Run escalation sweeps on this DB")
    parser.add_argument("--policy", type=str, default=None, help="Engine policy JSON file")
    parser.add_argument("--directory", type=str, default=None, help="Approver directory file")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs in JSON format (default: False)",
    )

    args = parser.parse_args()

    configure_logging(json_output=args.json_logs, log_level=args.log_level)

    logger.info(
        "Starting Prometheus metrics server",
        port=args.port,
        endpoint=f"http://0.0.0.0:{args.port}/metrics",
    )
    start_metrics_server(port=args.port)
    logger.info("Metrics server started successfully")

    stop_event = threading.Event()
    try:
        if args.db:
            engine = TrackifyEngine(
                args.db,
                policy=EnginePolicy.from_file(args.policy) if args.policy else None,
                directory=(
                    StaticApproverDirectory.from_file(args.directory) if args.directory else None
                ),
            )
            engine.scanner.run_forever(stop_event)
        else:
            while True:
                time.sleep(1)
    except KeyboardInterrupt:
        stop_event.set()
        logger.info("Shutting down metrics server")


if __name__ == "__main__":
    main()
