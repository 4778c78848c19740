"""
Threaded JSON-line RPC server that routes driver requests to the dispatcher.

Responsibilities:
1. Accept driver connections on the configured TCP address.
2. Read one JSON request per line and run each on its own worker thread, so a
   blocking Accept/Recv never holds up unrelated calls (even on the same
   connection). At most RPC_MAX_INFLIGHT requests run per connection; past
   that the reader waits for a slot.
3. Write each response as one JSON line tagged with the request id; writes on
   a connection are serialized, completion order is not.

Native failures come back inside ``result``; only malformed requests get a
non-OK status.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import time
from ipaddress import ip_address
from typing import Any, Callable, Dict, Optional, Set, Tuple

from dut.config import CONFIG
from dut.dispatcher import OPERATIONS, InvalidArgument, SyscallResult
from dut.logging_utils import METRICS, get_logger
from dut.messages import (
    STATUS_INTERNAL,
    STATUS_INVALID_ARGUMENT,
    STATUS_UNIMPLEMENTED,
    error_response,
    ok_response,
    parse_request,
    result_to_wire,
)

logger = get_logger("dut")

# Operations whose buffer length is bounded by RECV_MAX_LEN
_LENGTH_BOUNDED = {"Recv", "GetSockOpt"}


class DutServer:
    """RPC front end for the syscall dispatcher."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        *,
        cfg: Optional[Dict[str, Any]] = None,
        operations: Optional[Dict[str, Callable[..., SyscallResult]]] = None,
    ) -> None:
        self.cfg = dict(CONFIG if cfg is None else cfg)
        host = self.cfg["RPC_HOST"] if host is None else host
        port = self.cfg["RPC_PORT"] if port is None else port
        self.operations = OPERATIONS if operations is None else operations

        family = socket.AF_INET6 if ip_address(host).version == 6 else socket.AF_INET
        self._srv = socket.socket(family, socket.SOCK_STREAM)
        try:
            self._srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._srv.bind((host, port))
            self._srv.listen(self.cfg["RPC_BACKLOG"])
        except OSError:
            self._srv.close()
            raise
        self.address: Tuple[str, int] = self._srv.getsockname()[:2]

        self._stop = threading.Event()
        self._conns: Set[socket.socket] = set()
        self._conns_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.started_at = time.time()

    # ------------------------------------------------------------------ lifecycle

    def serve_forever(self) -> None:
        logger.info("Server listening on %s:%d", self.address[0], self.address[1])
        self._srv.settimeout(0.2)
        while not self._stop.is_set():
            try:
                conn, peer = self._srv.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._stop.is_set():
                    break
                raise
            conn.settimeout(None)
            t = threading.Thread(
                target=self._serve_connection,
                args=(conn, peer),
                name=f"dut-conn-{peer[1]}",
                daemon=True,
            )
            t.start()
        logger.info("posix server is finished")

    def start(self) -> threading.Thread:
        """Serve from a background thread; returns the thread."""
        self._thread = threading.Thread(target=self.serve_forever, name="dut-server", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        with self._conns_lock:
            conns = list(self._conns)
        for conn in conns:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._srv.close()

    def __enter__(self) -> "DutServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    @property
    def connection_count(self) -> int:
        with self._conns_lock:
            return len(self._conns)

    # ------------------------------------------------------------------ transport

    def _serve_connection(self, conn: socket.socket, peer) -> None:
        limit = self.cfg["RPC_MAX_LINE_BYTES"]
        write_lock = threading.Lock()
        inflight = threading.BoundedSemaphore(self.cfg["RPC_MAX_INFLIGHT"])
        with self._conns_lock:
            self._conns.add(conn)
        METRICS.gauge("connections").set(self.connection_count)
        logger.info("driver connected", extra={"peer": f"{peer[0]}:{peer[1]}"})
        workers = []
        try:
            with conn, conn.makefile("rb") as reader:
                while not self._stop.is_set():
                    try:
                        raw = reader.readline(limit + 1)
                    except OSError:
                        break
                    if not raw:
                        break
                    if len(raw) > limit and not raw.endswith(b"\n"):
                        logger.warning("request line exceeds limit; dropping connection",
                                       extra={"peer": f"{peer[0]}:{peer[1]}", "limit": limit})
                        METRICS.counter("requests.oversize").inc()
                        break
                    if not raw.strip():
                        continue
                    if not self._wait_for_slot(inflight, peer):
                        break
                    worker = threading.Thread(
                        target=self._handle_line,
                        args=(raw, conn, write_lock, inflight),
                        daemon=True,
                    )
                    worker.start()
                    workers = [w for w in workers if w.is_alive()]
                    workers.append(worker)
                # A driver that half-closes still gets its outstanding responses
                for worker in workers:
                    while worker.is_alive() and not self._stop.is_set():
                        worker.join(timeout=0.2)
        finally:
            with self._conns_lock:
                self._conns.discard(conn)
            METRICS.gauge("connections").set(self.connection_count)
            logger.info("driver disconnected", extra={"peer": f"{peer[0]}:{peer[1]}"})

    def _wait_for_slot(self, inflight: threading.BoundedSemaphore, peer) -> bool:
        """Block the reader until a request slot frees up; False once the server stops."""
        if inflight.acquire(blocking=False):
            return True
        logger.warning("in-flight request cap reached; pausing reads",
                       extra={"peer": f"{peer[0]}:{peer[1]}", "limit": self.cfg["RPC_MAX_INFLIGHT"]})
        METRICS.counter("requests.throttled").inc()
        while not self._stop.is_set():
            if inflight.acquire(timeout=0.2):
                return True
        return False

    def _handle_line(self, raw: bytes, conn: socket.socket, write_lock: threading.Lock,
                     inflight: threading.BoundedSemaphore) -> None:
        try:
            response = self.handle_line(raw)
            data = json.dumps(response).encode("utf-8") + b"\n"
            with write_lock:
                try:
                    conn.sendall(data)
                except OSError as exc:
                    logger.warning("failed to deliver response", extra={"id": response.get("id"), "error": str(exc)})
        finally:
            inflight.release()

    # ------------------------------------------------------------------ routing

    def handle_line(self, raw: bytes) -> Dict[str, Any]:
        try:
            request = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            METRICS.counter("requests.malformed").inc()
            logger.warning("undecodable request line", extra={"error": str(exc)})
            return error_response(None, STATUS_INVALID_ARGUMENT, f"request is not valid JSON: {exc}")
        if not isinstance(request, dict):
            METRICS.counter("requests.malformed").inc()
            return error_response(None, STATUS_INVALID_ARGUMENT, "request must be a JSON object")
        return self.handle_request(request)

    def handle_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        req_id = request.get("id")
        method = request.get("method")
        op = self.operations.get(method) if isinstance(method, str) else None
        if op is None:
            METRICS.counter("requests.unimplemented").inc()
            logger.warning("unknown method", extra={"id": req_id, "method": str(method)})
            return error_response(req_id, STATUS_UNIMPLEMENTED, f"unknown method: {method!r}")

        try:
            kwargs = parse_request(method, request.get("params"))
            if method in _LENGTH_BOUNDED:
                kwargs["max_len"] = self.cfg["RECV_MAX_LEN"]
            result = op(**kwargs)
        except InvalidArgument as exc:
            METRICS.counter("requests.malformed").inc()
            logger.warning("rejected request", extra={"id": req_id, "method": method, "reason": str(exc)})
            return error_response(req_id, STATUS_INVALID_ARGUMENT, str(exc))
        except Exception as exc:
            METRICS.counter("requests.internal_error").inc()
            logger.exception("dispatch failed", extra={"id": req_id, "method": method})
            return error_response(req_id, STATUS_INTERNAL, f"{type(exc).__name__}: {exc}")

        METRICS.counter(f"calls.{method}").inc()
        level = logging.INFO if self.cfg.get("LOG_CALLS") else logging.DEBUG
        logger.log(level, "call", extra={"id": req_id, "method": method, "ret": result.ret, "errno": result.errno})
        return ok_response(req_id, result_to_wire(method, result))
