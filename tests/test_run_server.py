"""Tests for the CLI entry point, status reporting and JSON logging."""

import json
import logging
import sys
import threading

import pytest

from dut import run_server
from dut.client import DutClient
from dut.logging_utils import JsonFormatter, Metrics, configure_file_logger
from dut.rpc_server import DutServer


def test_parser_defaults_and_overrides():
    args = run_server.build_parser().parse_args(["--ip", "0.0.0.0", "--port", "5000", "--quiet"])
    assert args.ip == "0.0.0.0"
    assert args.port == 5000
    assert args.quiet is True
    assert args.status_file is None


def test_main_rejects_bad_port(capsys):
    assert run_server.main(["--port", "70000"]) == 2
    assert "--port must be 0-65535" in capsys.readouterr().out


def test_write_json_report(tmp_path):
    target = tmp_path / "nested" / "status.json"
    run_server.write_json_report(str(target), {"state": "serving"})
    assert json.loads(target.read_text(encoding="utf-8")) == {"state": "serving"}


def test_write_json_report_without_path_is_noop(tmp_path):
    run_server.write_json_report(None, {"state": "serving"})
    assert list(tmp_path.iterdir()) == []


@pytest.mark.skipif(sys.platform == "win32", reason="descriptor counts are POSIX-only")
def test_build_status_snapshot():
    srv = DutServer("127.0.0.1", 0)
    try:
        status = run_server.build_status(srv, "serving")
    finally:
        srv.stop()
    assert status["state"] == "serving"
    assert status["listen"].startswith("127.0.0.1:")
    assert status["connections"] == 0
    assert isinstance(status["open_fds"], int) and status["open_fds"] > 0
    assert "counters" in status["metrics"]


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX libc socket API")
def test_run_server_serves_until_interrupted(tmp_path, monkeypatch):
    status_file = tmp_path / "status.json"
    json_out = tmp_path / "summary.json"
    args = run_server.build_parser().parse_args(
        ["--ip", "127.0.0.1", "--port", "0", "--status-file", str(status_file), "--json-out", str(json_out)]
    )

    started = threading.Event()
    holder = {}
    real_start = DutServer.start

    def start_and_signal(self):
        holder["server"] = self
        thread = real_start(self)
        started.set()
        return thread

    monkeypatch.setattr(DutServer, "start", start_and_signal)
    result = {}
    runner = threading.Thread(target=lambda: result.update(rc=run_server.run_server(args)), daemon=True)
    runner.start()
    assert started.wait(5)

    srv = holder["server"]
    host, port = srv.address
    assert DutClient(host, port, timeout=5).close(-1)["ret"] == -1
    assert json.loads(status_file.read_text(encoding="utf-8"))["state"] == "serving"

    srv.stop()
    runner.join(timeout=5)
    assert result["rc"] == 0
    summary = json.loads(json_out.read_text(encoding="utf-8"))
    assert summary["state"] == "stopped"
    assert summary["metrics"]["counters"]["calls.Close"] >= 1


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("dut", logging.INFO, __file__, 1, "call %s", ("Bind",), None)
    record.method = "Bind"
    record.errno = 98
    payload = json.loads(JsonFormatter().format(record))
    assert payload["msg"] == "call Bind"
    assert payload["level"] == "INFO"
    assert payload["method"] == "Bind"
    assert payload["errno"] == 98


def test_configure_file_logger(tmp_path):
    logger = logging.getLogger("dut.test-file-logger")
    logger.setLevel(logging.INFO)
    path = configure_file_logger("unit", logger, log_dir=str(tmp_path))
    try:
        logger.info("hello", extra={"peer": "127.0.0.1:1"})
        for handler in logger.handlers:
            handler.flush()
        line = path.read_text(encoding="utf-8").strip().splitlines()[-1]
        assert json.loads(line)["peer"] == "127.0.0.1:1"
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)


def test_metrics_snapshot_is_thread_safe():
    metrics = Metrics()
    counter = metrics.counter("calls.Recv")

    def bump():
        for _ in range(1000):
            counter.inc()

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert metrics.snapshot()["counters"]["calls.Recv"] == 4000
