"""
Socket address codec.

Converts between the wire representation of an address (a closed variant of
``Inet4Address`` / ``Inet6Address`` whose integer fields are host order) and
the native ``struct sockaddr_in`` / ``struct sockaddr_in6`` byte layout the
kernel consumes and produces (port, flowinfo and scope id in network order).

Layouts (Linux; BSDs replace the 16-bit family with ``sa_len`` + 8-bit family)::

    sockaddr_in   family:u16  port:be16  addr:4   zero:8              16 bytes
    sockaddr_in6  family:u16  port:be16  flowinfo:be32  addr:16  scope_id:be32   28 bytes
"""

from __future__ import annotations

import socket
import struct
import sys
from dataclasses import dataclass
from typing import ClassVar, Union

AF_INET = socket.AF_INET
AF_INET6 = socket.AF_INET6

SOCKADDR_STORAGE_LEN = 128
SOCKADDR_IN_LEN = 16
SOCKADDR_IN6_LEN = 28

# BSD-derived kernels prefix every sockaddr with a one-byte length
HAS_SA_LEN = sys.platform.startswith(("darwin", "freebsd", "openbsd", "netbsd", "dragonfly"))

_PORT = struct.Struct("!H")
_U32_BE = struct.Struct("!I")


class AddressError(Exception):
    pass


class InvalidAddress(AddressError):
    pass


class UnsupportedFamily(AddressError):
    pass


@dataclass(frozen=True)
class Inet4Address:
    family: int
    port: int
    addr: bytes

    WIDTH: ClassVar[int] = 4


@dataclass(frozen=True)
class Inet6Address:
    family: int
    port: int
    flowinfo: int
    addr: bytes
    scope_id: int

    WIDTH: ClassVar[int] = 16


WireAddress = Union[Inet4Address, Inet6Address]


@dataclass(frozen=True)
class NativeAddress:
    """Kernel-layout address bytes; ``length`` is what goes into ``socklen_t``."""

    buf: bytes
    length: int


def _check_uint(name: str, value: object, bits: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAddress(f"{name} must be an integer, got {type(value).__name__}")
    if not 0 <= value < (1 << bits):
        raise InvalidAddress(f"{name} must fit in {bits} unsigned bits, got {value}")
    return value


def _check_width(label: str, addr: object, width: int) -> bytes:
    if not isinstance(addr, (bytes, bytearray)) or len(addr) != width:
        raise InvalidAddress(f"{label} address must be {width} bytes")
    return bytes(addr)


def _pack_family(family: int, length: int) -> bytes:
    if HAS_SA_LEN:
        if family > 0xFF:
            raise InvalidAddress(f"family must fit in 8 bits on this platform, got {family}")
        return struct.pack("=BB", length, family)
    return struct.pack("=H", family)


def _unpack_family(buf: bytes) -> int:
    if HAS_SA_LEN:
        return buf[1]
    return struct.unpack_from("=H", buf, 0)[0]


def decode(wire: WireAddress) -> NativeAddress:
    """Build the native sockaddr bytes for ``wire``.

    The family field is copied as given; it is not required to agree with the
    variant so that a driver can observe how the kernel treats a mismatched tag.
    Raises ``InvalidAddress`` for an unknown variant, an address whose byte
    width does not match the variant, or an integer field out of range.
    """
    if isinstance(wire, Inet4Address):
        family = _check_uint("family", wire.family, 16)
        port = _check_uint("port", wire.port, 16)
        addr = _check_width("IPv4", wire.addr, Inet4Address.WIDTH)
        buf = (
            _pack_family(family, SOCKADDR_IN_LEN)
            + _PORT.pack(port)
            + addr
            + bytes(8)
        )
        return NativeAddress(buf=buf, length=SOCKADDR_IN_LEN)

    if isinstance(wire, Inet6Address):
        family = _check_uint("family", wire.family, 16)
        port = _check_uint("port", wire.port, 16)
        flowinfo = _check_uint("flowinfo", wire.flowinfo, 32)
        scope_id = _check_uint("scope_id", wire.scope_id, 32)
        addr = _check_width("IPv6", wire.addr, Inet6Address.WIDTH)
        buf = (
            _pack_family(family, SOCKADDR_IN6_LEN)
            + _PORT.pack(port)
            + _U32_BE.pack(flowinfo)
            + addr
            + _U32_BE.pack(scope_id)
        )
        return NativeAddress(buf=buf, length=SOCKADDR_IN6_LEN)

    raise InvalidAddress("Unknown Sockaddr")


def encode(buf: bytes, length: int) -> WireAddress:
    """Read a kernel-filled sockaddr of ``length`` bytes back into a wire address.

    Raises ``UnsupportedFamily`` when the family is neither AF_INET nor
    AF_INET6, and ``InvalidAddress`` when ``length`` is too short for the
    family it claims.
    """
    length = min(length, len(buf))
    if length < 2:
        raise InvalidAddress(f"sockaddr too short to carry a family ({length} bytes)")
    family = _unpack_family(buf)

    if family == AF_INET:
        if length < SOCKADDR_IN_LEN:
            raise InvalidAddress(f"sockaddr_in needs {SOCKADDR_IN_LEN} bytes, got {length}")
        (port,) = _PORT.unpack_from(buf, 2)
        return Inet4Address(family=family, port=port, addr=bytes(buf[4:8]))

    if family == AF_INET6:
        if length < SOCKADDR_IN6_LEN:
            raise InvalidAddress(f"sockaddr_in6 needs {SOCKADDR_IN6_LEN} bytes, got {length}")
        (port,) = _PORT.unpack_from(buf, 2)
        (flowinfo,) = _U32_BE.unpack_from(buf, 4)
        (scope_id,) = _U32_BE.unpack_from(buf, 24)
        return Inet6Address(
            family=family,
            port=port,
            flowinfo=flowinfo,
            addr=bytes(buf[8:24]),
            scope_id=scope_id,
        )

    raise UnsupportedFamily(f"Unknown Sockaddr family {family}")
