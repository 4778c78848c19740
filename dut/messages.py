"""
Wire messages for the DUT RPC surface.

Requests and responses are JSON objects, one per line. Byte fields (address
bytes, option values, received data) travel as lowercase hex strings. A
socket address is an object with exactly one variant key::

    {"in":  {"family": 2,  "port": 80, "addr": "7f000001"}}
    {"in6": {"family": 10, "port": 80, "flowinfo": 0, "addr": "<32 hex>", "scope_id": 0}}

Shape problems (missing field, wrong JSON type, unknown variant, bad hex)
raise ``InvalidArgument``; width and range of the address fields are
checked by the codec when the dispatcher decodes the address.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Dict, Optional, Tuple

from dut.dispatcher import InvalidArgument, SyscallResult
from dut.sockaddr import Inet4Address, Inet6Address, WireAddress

STATUS_OK = "OK"
STATUS_INVALID_ARGUMENT = "INVALID_ARGUMENT"
STATUS_UNIMPLEMENTED = "UNIMPLEMENTED"
STATUS_INTERNAL = "INTERNAL"

_INT32 = (-(1 << 31), (1 << 31) - 1)
_INT64 = (-(1 << 63), (1 << 63) - 1)
_HEX = re.compile(r"(?:[0-9a-f]{2})*")


def _field(params: Dict[str, Any], name: str) -> Any:
    if name not in params or params[name] is None:
        raise InvalidArgument(f"missing required field '{name}'")
    return params[name]


def _integer(value: Any, name: str, bounds: Tuple[int, int]) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"field '{name}' must be an integer, got {type(value).__name__}")
    lo, hi = bounds
    if not lo <= value <= hi:
        raise InvalidArgument(f"field '{name}' out of range [{lo}, {hi}]: {value}")
    return value


def _hex(value: Any, name: str) -> bytes:
    if not isinstance(value, str):
        raise InvalidArgument(f"field '{name}' must be a hex string, got {type(value).__name__}")
    if not _HEX.fullmatch(value):
        raise InvalidArgument(f"field '{name}' is not valid lowercase hex: {value!r}")
    return bytes.fromhex(value)


def int32(params: Dict[str, Any], name: str) -> int:
    return _integer(_field(params, name), name, _INT32)


def int64(params: Dict[str, Any], name: str) -> int:
    return _integer(_field(params, name), name, _INT64)


def hexbytes(params: Dict[str, Any], name: str) -> bytes:
    return _hex(_field(params, name), name)


def sockaddr_from_wire(value: Any) -> WireAddress:
    """Parse a wire socket address object into ``Inet4Address``/``Inet6Address``."""
    if not isinstance(value, dict):
        raise InvalidArgument("Missing address")
    variants = [k for k in ("in", "in6") if value.get(k) is not None]
    unknown = set(value) - {"in", "in6"}
    if unknown or len(variants) != 1:
        raise InvalidArgument("Unknown Sockaddr")
    kind = variants[0]
    body = value[kind]
    if not isinstance(body, dict):
        raise InvalidArgument(f"Sockaddr '{kind}' must be an object")
    if kind == "in":
        return Inet4Address(
            family=_integer(_field(body, "family"), "family", _INT64),
            port=_integer(_field(body, "port"), "port", _INT64),
            addr=hexbytes(body, "addr"),
        )
    return Inet6Address(
        family=_integer(_field(body, "family"), "family", _INT64),
        port=_integer(_field(body, "port"), "port", _INT64),
        flowinfo=_integer(body.get("flowinfo", 0), "flowinfo", _INT64),
        addr=hexbytes(body, "addr"),
        scope_id=_integer(body.get("scope_id", 0), "scope_id", _INT64),
    )


def sockaddr_to_wire(addr: WireAddress) -> Dict[str, Any]:
    if isinstance(addr, Inet4Address):
        return {"in": {"family": addr.family, "port": addr.port, "addr": addr.addr.hex()}}
    return {
        "in6": {
            "family": addr.family,
            "port": addr.port,
            "flowinfo": addr.flowinfo,
            "addr": addr.addr.hex(),
            "scope_id": addr.scope_id,
        }
    }


def _sockaddr(params: Dict[str, Any], name: str) -> WireAddress:
    if params.get(name) is None:
        raise InvalidArgument("Missing address")
    return sockaddr_from_wire(params[name])


def _timeval(params: Dict[str, Any], name: str) -> Dict[str, int]:
    tv = _field(params, name)
    if not isinstance(tv, dict):
        raise InvalidArgument(f"field '{name}' must be an object")
    return {"seconds": int64(tv, "seconds"), "microseconds": int64(tv, "microseconds")}


# method -> ((wire name, keyword, parser), ...); keyword None merges a dict result
_Parser = Callable[[Dict[str, Any], str], Any]
REQUEST_FIELDS: Dict[str, Tuple[Tuple[str, Optional[str], _Parser], ...]] = {
    "Socket": (("domain", "domain", int32), ("type", "type", int32), ("protocol", "protocol", int32)),
    "Bind": (("sockfd", "sockfd", int32), ("addr", "addr", _sockaddr)),
    "Connect": (("sockfd", "sockfd", int32), ("addr", "addr", _sockaddr)),
    "Listen": (("sockfd", "sockfd", int32), ("backlog", "backlog", int32)),
    "Accept": (("sockfd", "sockfd", int32),),
    "GetSockName": (("sockfd", "sockfd", int32),),
    "SetSockOpt": (
        ("sockfd", "sockfd", int32),
        ("level", "level", int32),
        ("optname", "optname", int32),
        ("optval", "optval", hexbytes),
    ),
    "SetSockOptTimeval": (
        ("sockfd", "sockfd", int32),
        ("level", "level", int32),
        ("optname", "optname", int32),
        ("timeval", None, _timeval),
    ),
    "GetSockOpt": (
        ("sockfd", "sockfd", int32),
        ("level", "level", int32),
        ("optname", "optname", int32),
        ("optlen", "optlen", int32),
    ),
    "Recv": (("sockfd", "sockfd", int32), ("len", "length", int32), ("flags", "flags", int32)),
    "Send": (("sockfd", "sockfd", int32), ("buf", "buf", hexbytes), ("flags", "flags", int32)),
    "Shutdown": (("fd", "fd", int32), ("how", "how", int32)),
    "Close": (("fd", "fd", int32),),
}

_FD_RESULT = {"Socket", "Accept"}
_ADDR_RESULT = {"Accept", "GetSockName"}
_DATA_RESULT = {"Recv": "buf", "GetSockOpt": "optval"}


def parse_request(method: str, params: Any) -> Dict[str, Any]:
    """Map a request's ``params`` object to keyword arguments for the dispatcher."""
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise InvalidArgument("params must be an object")
    kwargs: Dict[str, Any] = {}
    for wire_name, keyword, parser in REQUEST_FIELDS[method]:
        value = parser(params, wire_name)
        if keyword is None:
            kwargs.update(value)
        else:
            kwargs[keyword] = value
    return kwargs


def result_to_wire(method: str, result: SyscallResult) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        ("fd" if method in _FD_RESULT else "ret"): result.ret,
        "errno": result.errno,
    }
    if method in _ADDR_RESULT:
        out["addr"] = sockaddr_to_wire(result.addr) if result.addr is not None else None
        if result.addr_error:
            out["addr_error"] = result.addr_error
    if method in _DATA_RESULT:
        out[_DATA_RESULT[method]] = (result.data or b"").hex()
    return out


def ok_response(req_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": req_id, "status": STATUS_OK, "result": result}


def error_response(req_id: Any, status: str, message: str) -> Dict[str, Any]:
    return {"id": req_id, "status": status, "message": message}
