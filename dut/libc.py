"""
ctypes bindings for the C library socket primitives.

Calls go straight to libc so the kernel sees exactly the arguments a native
program would pass, and ``errno`` is read from the ctypes private copy that
is saved immediately after each foreign call. CDLL releases the GIL around
calls, so a blocking accept/recv only ties up its own thread.
"""

from __future__ import annotations

import ctypes
import ctypes.util
from typing import Tuple

socklen_t = ctypes.c_uint32


def _load_libc() -> ctypes.CDLL:
    name = ctypes.util.find_library("c")
    return ctypes.CDLL(name, use_errno=True)


_libc = _load_libc()

# name -> (restype, argtypes)
_PROTOTYPES = {
    "socket": (ctypes.c_int, [ctypes.c_int, ctypes.c_int, ctypes.c_int]),
    "bind": (ctypes.c_int, [ctypes.c_int, ctypes.c_void_p, socklen_t]),
    "connect": (ctypes.c_int, [ctypes.c_int, ctypes.c_void_p, socklen_t]),
    "listen": (ctypes.c_int, [ctypes.c_int, ctypes.c_int]),
    "accept": (ctypes.c_int, [ctypes.c_int, ctypes.c_void_p, ctypes.POINTER(socklen_t)]),
    "getsockname": (ctypes.c_int, [ctypes.c_int, ctypes.c_void_p, ctypes.POINTER(socklen_t)]),
    "setsockopt": (ctypes.c_int, [ctypes.c_int, ctypes.c_int, ctypes.c_int, ctypes.c_void_p, socklen_t]),
    "getsockopt": (
        ctypes.c_int,
        [ctypes.c_int, ctypes.c_int, ctypes.c_int, ctypes.c_void_p, ctypes.POINTER(socklen_t)],
    ),
    "recv": (ctypes.c_ssize_t, [ctypes.c_int, ctypes.c_void_p, ctypes.c_size_t, ctypes.c_int]),
    "send": (ctypes.c_ssize_t, [ctypes.c_int, ctypes.c_void_p, ctypes.c_size_t, ctypes.c_int]),
    "shutdown": (ctypes.c_int, [ctypes.c_int, ctypes.c_int]),
    "close": (ctypes.c_int, [ctypes.c_int]),
}

for _name, (_restype, _argtypes) in _PROTOTYPES.items():
    _fn = getattr(_libc, _name)
    _fn.restype = _restype
    _fn.argtypes = _argtypes


def invoke(name: str, *args) -> Tuple[int, int]:
    """Call libc ``name`` once and return ``(return value, errno)``.

    errno is cleared first so a call that succeeds reports 0 rather than a
    value left over from an earlier call on the same thread.
    """
    fn = getattr(_libc, name)
    ctypes.set_errno(0)
    ret = fn(*args)
    return int(ret), ctypes.get_errno()
