"""
CLI entrypoint for the DUT posix server.

    python -m dut.run_server --ip 0.0.0.0 --port 40000

Serves until SIGINT/SIGTERM. Optional status/summary JSON files let the
harness that launched the DUT watch it without speaking the RPC protocol.
"""

import sys
import argparse
import signal
import json
import threading
import time
import logging
from pathlib import Path
from typing import Optional

import psutil

from dut.config import CONFIG
from dut.logging_utils import METRICS, get_logger, configure_file_logger
from dut.rpc_server import DutServer

logger = get_logger("dut")


def signal_handler(signum, frame):
    """Turn SIGTERM into the same clean shutdown path as Ctrl-C."""
    raise KeyboardInterrupt


def write_json_report(json_path: Optional[str], payload: dict, *, quiet: bool = False) -> None:
    """Persist a JSON payload if a path is provided."""

    if not json_path:
        return

    try:
        path = Path(json_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(path)
        if not quiet:
            logger.debug("wrote JSON report", extra={"path": str(path)})
    except OSError as exc:
        logger.warning("failed to write JSON report", extra={"path": json_path, "error": str(exc)})


def open_fd_count() -> Optional[int]:
    try:
        return psutil.Process().num_fds()
    except (psutil.Error, AttributeError):
        # num_fds is POSIX-only
        return None


def build_status(server: DutServer, state: str) -> dict:
    return {
        "state": state,
        "listen": f"{server.address[0]}:{server.address[1]}",
        "uptime_s": round(time.time() - server.started_at, 3),
        "connections": server.connection_count,
        "open_fds": open_fd_count(),
        "metrics": METRICS.snapshot(),
        "ts_ns": time.time_ns(),
    }


def _status_loop(server: DutServer, status_file: str, interval: float, stop: threading.Event) -> None:
    while not stop.wait(interval):
        write_json_report(status_file, build_status(server, "serving"), quiet=True)


def run_server(args) -> int:
    if getattr(args, "quiet", False):
        logger.setLevel(logging.WARNING)
    if getattr(args, "verbose", False):
        logger.setLevel(logging.DEBUG)
    if getattr(args, "log_dir", None):
        log_path = configure_file_logger("dut", logger, log_dir=args.log_dir)
        logger.info("file logging enabled", extra={"path": str(log_path)})

    logger.info("posix server is starting")
    logger.info("Got IP %s and port %d", args.ip, args.port)
    try:
        server = DutServer(args.ip, args.port)
    except (OSError, ValueError) as exc:
        logger.error("cannot listen on %s:%s: %s", args.ip, args.port, exc)
        return 1

    status_stop = threading.Event()
    if args.status_file:
        write_json_report(args.status_file, build_status(server, "serving"), quiet=True)
        threading.Thread(
            target=_status_loop,
            args=(server, args.status_file, CONFIG["STATUS_INTERVAL_S"], status_stop),
            name="dut-status",
            daemon=True,
        ).start()

    server_thread = server.start()
    try:
        while server_thread.is_alive():
            server_thread.join(timeout=0.5)
    except KeyboardInterrupt:
        logger.info("interrupt received; shutting down")
    finally:
        status_stop.set()
        server.stop()
        final = build_status(server, "stopped")
        write_json_report(args.status_file, final, quiet=True)
        write_json_report(args.json_out, final, quiet=getattr(args, "quiet", False))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Remote socket-control endpoint (DUT posix server)")
    parser.add_argument("--ip", default=CONFIG["RPC_HOST"],
                        help=f"Address to listen on (default: {CONFIG['RPC_HOST']})")
    parser.add_argument("--port", type=int, default=CONFIG["RPC_PORT"],
                        help=f"TCP port to listen on, 0 for ephemeral (default: {CONFIG['RPC_PORT']})")
    parser.add_argument("--quiet", action="store_true",
                        help="Only log warnings and errors")
    parser.add_argument("--verbose", action="store_true",
                        help="Log every dispatched call")
    parser.add_argument("--log-dir",
                        help="Also write JSON logs to a timestamped file in this directory")
    parser.add_argument("--status-file",
                        help="Path to write periodic server status JSON")
    parser.add_argument("--json-out",
                        help="Optional path to write final counters JSON on shutdown")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if not (0 <= args.port <= 65535):
        print(f"Error: --port must be 0-65535, got {args.port}")
        return 2

    signal.signal(signal.SIGINT, signal.default_int_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)
    return run_server(args)


if __name__ == "__main__":
    sys.exit(main())
