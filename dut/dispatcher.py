"""
Syscall dispatcher: one function per exposed socket primitive.

Each operation makes exactly one native call and returns a ``SyscallResult``
carrying the native return value and errno untouched. Native failures are
never raised; the only exception an operation raises is ``InvalidArgument``,
for requests that cannot be turned into a syscall at all (bad address
variant or width, impossible buffer length, out-of-range timeval).
"""

from __future__ import annotations

import ctypes
import struct
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from dut import libc
from dut.config import CONFIG
from dut.logging_utils import get_logger
from dut.sockaddr import (
    SOCKADDR_STORAGE_LEN,
    AddressError,
    WireAddress,
    decode,
    encode,
)

logger = get_logger("dut")

# struct timeval { time_t tv_sec; suseconds_t tv_usec; } -- both C longs on LP64
_TIMEVAL = struct.Struct("@ll")


class InvalidArgument(Exception):
    """Request cannot be mapped to a syscall; reported at the transport level."""


@dataclass
class SyscallResult:
    ret: int
    errno: int
    addr: Optional[WireAddress] = None
    addr_error: Optional[str] = None
    data: Optional[bytes] = None


def _decode_or_reject(addr: WireAddress):
    try:
        return decode(addr)
    except AddressError as exc:
        raise InvalidArgument(str(exc)) from exc


def _check_len(name: str, length: int, max_len: int) -> None:
    if length < 0:
        raise InvalidArgument(f"{name} must be non-negative, got {length}")
    if length > max_len:
        raise InvalidArgument(f"{name} must be <= {max_len}, got {length}")


def _result_with_address(ret: int, err: int, buf, addrlen: int) -> SyscallResult:
    """Attach the encoded address when the call succeeded.

    An address in an unsupported family does not turn the call into a failure:
    the native ret/errno are still reported and only the address is left out.
    """
    result = SyscallResult(ret=ret, errno=err)
    if ret < 0:
        return result
    try:
        result.addr = encode(buf.raw, addrlen)
    except AddressError as exc:
        result.addr_error = f"invalid argument: {exc}"
        logger.debug("address not representable", extra={"ret": ret, "reason": str(exc)})
    return result


def socket(domain: int, type: int, protocol: int) -> SyscallResult:
    ret, err = libc.invoke("socket", domain, type, protocol)
    return SyscallResult(ret=ret, errno=err)


def bind(sockfd: int, addr: WireAddress) -> SyscallResult:
    native = _decode_or_reject(addr)
    ret, err = libc.invoke("bind", sockfd, native.buf, native.length)
    return SyscallResult(ret=ret, errno=err)


def connect(sockfd: int, addr: WireAddress) -> SyscallResult:
    native = _decode_or_reject(addr)
    ret, err = libc.invoke("connect", sockfd, native.buf, native.length)
    return SyscallResult(ret=ret, errno=err)


def listen(sockfd: int, backlog: int) -> SyscallResult:
    ret, err = libc.invoke("listen", sockfd, backlog)
    return SyscallResult(ret=ret, errno=err)


def accept(sockfd: int) -> SyscallResult:
    buf = ctypes.create_string_buffer(SOCKADDR_STORAGE_LEN)
    addrlen = libc.socklen_t(SOCKADDR_STORAGE_LEN)
    ret, err = libc.invoke("accept", sockfd, buf, ctypes.byref(addrlen))
    return _result_with_address(ret, err, buf, addrlen.value)


def getsockname(sockfd: int) -> SyscallResult:
    buf = ctypes.create_string_buffer(SOCKADDR_STORAGE_LEN)
    addrlen = libc.socklen_t(SOCKADDR_STORAGE_LEN)
    ret, err = libc.invoke("getsockname", sockfd, buf, ctypes.byref(addrlen))
    return _result_with_address(ret, err, buf, addrlen.value)


def setsockopt(sockfd: int, level: int, optname: int, optval: bytes) -> SyscallResult:
    ret, err = libc.invoke("setsockopt", sockfd, level, optname, bytes(optval), len(optval))
    return SyscallResult(ret=ret, errno=err)


def setsockopt_timeval(sockfd: int, level: int, optname: int,
                       seconds: int, microseconds: int) -> SyscallResult:
    try:
        tv = _TIMEVAL.pack(seconds, microseconds)
    except struct.error as exc:
        raise InvalidArgument(f"timeval out of range: {exc}") from exc
    ret, err = libc.invoke("setsockopt", sockfd, level, optname, tv, len(tv))
    return SyscallResult(ret=ret, errno=err)


def getsockopt(sockfd: int, level: int, optname: int, optlen: int,
               max_len: Optional[int] = None) -> SyscallResult:
    _check_len("optlen", optlen, CONFIG["RECV_MAX_LEN"] if max_len is None else max_len)
    buf = ctypes.create_string_buffer(optlen)
    actual = libc.socklen_t(optlen)
    ret, err = libc.invoke("getsockopt", sockfd, level, optname, buf, ctypes.byref(actual))
    data = buf.raw[: min(actual.value, optlen)] if ret == 0 else b""
    return SyscallResult(ret=ret, errno=err, data=data)


def recv(sockfd: int, length: int, flags: int, max_len: Optional[int] = None) -> SyscallResult:
    _check_len("len", length, CONFIG["RECV_MAX_LEN"] if max_len is None else max_len)
    buf = ctypes.create_string_buffer(length)
    ret, err = libc.invoke("recv", sockfd, buf, length, flags)
    # MSG_TRUNC on datagram sockets may report more than the buffer held
    data = buf.raw[: min(ret, length)] if ret > 0 else b""
    return SyscallResult(ret=ret, errno=err, data=data)


def send(sockfd: int, buf: bytes, flags: int) -> SyscallResult:
    payload = bytes(buf)
    ret, err = libc.invoke("send", sockfd, payload, len(payload), flags)
    return SyscallResult(ret=ret, errno=err)


def shutdown(fd: int, how: int) -> SyscallResult:
    ret, err = libc.invoke("shutdown", fd, how)
    return SyscallResult(ret=ret, errno=err)


def close(fd: int) -> SyscallResult:
    ret, err = libc.invoke("close", fd)
    return SyscallResult(ret=ret, errno=err)


OPERATIONS: Dict[str, Callable[..., SyscallResult]] = {
    "Socket": socket,
    "Bind": bind,
    "Connect": connect,
    "Listen": listen,
    "Accept": accept,
    "GetSockName": getsockname,
    "SetSockOpt": setsockopt,
    "SetSockOptTimeval": setsockopt_timeval,
    "GetSockOpt": getsockopt,
    "Recv": recv,
    "Send": send,
    "Shutdown": shutdown,
    "Close": close,
}
