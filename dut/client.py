"""Thin driver-side wrapper around the DUT posix server."""

from __future__ import annotations

import itertools
import json
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from dut.messages import STATUS_OK, sockaddr_from_wire, sockaddr_to_wire
from dut.sockaddr import AF_INET, AF_INET6, Inet4Address, Inet6Address, WireAddress

_UNSET: Any = object()


class RpcError(RuntimeError):
    """Server answered with a non-OK status (malformed request, unknown method)."""

    def __init__(self, status: str, message: str) -> None:
        super().__init__(f"{status}: {message}")
        self.status = status
        self.message = message


def inet4(host: str, port: int) -> Inet4Address:
    return Inet4Address(family=AF_INET, port=port, addr=socket.inet_pton(socket.AF_INET, host))


def inet6(host: str, port: int, flowinfo: int = 0, scope_id: int = 0) -> Inet6Address:
    return Inet6Address(
        family=AF_INET6,
        port=port,
        flowinfo=flowinfo,
        addr=socket.inet_pton(socket.AF_INET6, host),
        scope_id=scope_id,
    )


@dataclass
class DutClient:
    """One TCP connection per call, so concurrent calls from threads never share a socket.

    ``timeout`` bounds waiting for the response; pass ``timeout=None`` to a
    call that is expected to block on the DUT (Accept, Recv).
    """

    host: str
    port: int
    timeout: Optional[float] = 10.0
    _ids: Any = field(default_factory=itertools.count, repr=False)

    def call(self, method: str, params: Dict[str, Any], *, timeout: Any = _UNSET) -> Dict[str, Any]:
        req_id = next(self._ids)
        payload = {"id": req_id, "method": method, "params": params}
        wait = self.timeout if timeout is _UNSET else timeout
        data = json.dumps(payload).encode("utf-8") + b"\n"
        with socket.create_connection((self.host, self.port), timeout=self.timeout) as conn:
            conn.settimeout(wait)
            conn.sendall(data)
            with conn.makefile("r", encoding="utf-8") as buffer:
                raw = buffer.readline()
        if not raw:
            raise RuntimeError("DUT server closed connection")
        try:
            response = json.loads(raw)
        except json.JSONDecodeError as exc:  # pragma: no cover
            raise RuntimeError(f"invalid DUT response: {raw!r}") from exc
        if response.get("id") != req_id:
            raise RuntimeError(f"response id {response.get('id')!r} does not match request {req_id!r}")
        if response.get("status") != STATUS_OK:
            raise RpcError(response.get("status", "UNKNOWN"), response.get("message", ""))
        return self._convert(response["result"])

    @staticmethod
    def _convert(result: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(result)
        if out.get("addr") is not None:
            out["addr"] = sockaddr_from_wire(out["addr"])
        for key in ("buf", "optval"):
            if key in out:
                out[key] = bytes.fromhex(out[key])
        return out

    # -- one method per RPC -------------------------------------------------

    def socket(self, domain: int, type: int, protocol: int = 0) -> Dict[str, Any]:
        return self.call("Socket", {"domain": domain, "type": type, "protocol": protocol})

    def bind(self, sockfd: int, addr: WireAddress) -> Dict[str, Any]:
        return self.call("Bind", {"sockfd": sockfd, "addr": sockaddr_to_wire(addr)})

    def connect(self, sockfd: int, addr: WireAddress, *, timeout: Any = _UNSET) -> Dict[str, Any]:
        return self.call("Connect", {"sockfd": sockfd, "addr": sockaddr_to_wire(addr)}, timeout=timeout)

    def listen(self, sockfd: int, backlog: int) -> Dict[str, Any]:
        return self.call("Listen", {"sockfd": sockfd, "backlog": backlog})

    def accept(self, sockfd: int, *, timeout: Any = None) -> Dict[str, Any]:
        return self.call("Accept", {"sockfd": sockfd}, timeout=timeout)

    def getsockname(self, sockfd: int) -> Dict[str, Any]:
        return self.call("GetSockName", {"sockfd": sockfd})

    def setsockopt(self, sockfd: int, level: int, optname: int, optval: bytes) -> Dict[str, Any]:
        return self.call(
            "SetSockOpt",
            {"sockfd": sockfd, "level": level, "optname": optname, "optval": optval.hex()},
        )

    def setsockopt_timeval(self, sockfd: int, level: int, optname: int,
                           seconds: int, microseconds: int) -> Dict[str, Any]:
        return self.call(
            "SetSockOptTimeval",
            {
                "sockfd": sockfd,
                "level": level,
                "optname": optname,
                "timeval": {"seconds": seconds, "microseconds": microseconds},
            },
        )

    def getsockopt(self, sockfd: int, level: int, optname: int, optlen: int) -> Dict[str, Any]:
        return self.call(
            "GetSockOpt",
            {"sockfd": sockfd, "level": level, "optname": optname, "optlen": optlen},
        )

    def recv(self, sockfd: int, length: int, flags: int = 0, *, timeout: Any = None) -> Dict[str, Any]:
        return self.call("Recv", {"sockfd": sockfd, "len": length, "flags": flags}, timeout=timeout)

    def send(self, sockfd: int, buf: bytes, flags: int = 0) -> Dict[str, Any]:
        return self.call("Send", {"sockfd": sockfd, "buf": buf.hex(), "flags": flags})

    def shutdown(self, fd: int, how: int) -> Dict[str, Any]:
        return self.call("Shutdown", {"fd": fd, "how": how})

    def close(self, fd: int) -> Dict[str, Any]:
        return self.call("Close", {"fd": fd})


__all__ = ["DutClient", "RpcError", "inet4", "inet6"]
