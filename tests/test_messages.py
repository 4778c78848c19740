"""Request-shape validation and response shaping for the JSON wire format."""

import pytest

from dut.dispatcher import InvalidArgument, SyscallResult
from dut.messages import (
    REQUEST_FIELDS,
    parse_request,
    result_to_wire,
    sockaddr_from_wire,
    sockaddr_to_wire,
)
from dut.sockaddr import AF_INET, AF_INET6, Inet4Address, Inet6Address

V6 = bytes(range(16))


def test_every_dispatcher_operation_has_a_schema():
    from dut.dispatcher import OPERATIONS

    assert set(REQUEST_FIELDS) == set(OPERATIONS)


def test_parse_socket():
    assert parse_request("Socket", {"domain": 2, "type": 1, "protocol": 0}) == {
        "domain": 2,
        "type": 1,
        "protocol": 0,
    }


def test_parse_bind_ipv4():
    kwargs = parse_request("Bind", {"sockfd": 3, "addr": {"in": {"family": 2, "port": 80, "addr": "7f000001"}}})
    assert kwargs == {"sockfd": 3, "addr": Inet4Address(family=2, port=80, addr=b"\x7f\x00\x00\x01")}


def test_parse_bind_ipv6_defaults_optional_fields():
    kwargs = parse_request("Bind", {"sockfd": 3, "addr": {"in6": {"family": 10, "port": 1, "addr": V6.hex()}}})
    assert kwargs["addr"] == Inet6Address(family=10, port=1, flowinfo=0, addr=V6, scope_id=0)


def test_parse_keeps_wrong_width_for_the_codec():
    # width is the codec's call so the message layer does not double-report it
    kwargs = parse_request("Bind", {"sockfd": 3, "addr": {"in": {"family": 2, "port": 80, "addr": "7f00"}}})
    assert kwargs["addr"].addr == b"\x7f\x00"


def test_parse_timeval_is_flattened():
    kwargs = parse_request(
        "SetSockOptTimeval",
        {"sockfd": 4, "level": 1, "optname": 20, "timeval": {"seconds": 2, "microseconds": 5}},
    )
    assert kwargs == {"sockfd": 4, "level": 1, "optname": 20, "seconds": 2, "microseconds": 5}


def test_parse_recv_renames_len():
    assert parse_request("Recv", {"sockfd": 4, "len": 10, "flags": 0}) == {"sockfd": 4, "length": 10, "flags": 0}


def test_parse_optval_hex():
    kwargs = parse_request("SetSockOpt", {"sockfd": 4, "level": 1, "optname": 2, "optval": "01000000"})
    assert kwargs["optval"] == b"\x01\x00\x00\x00"


@pytest.mark.parametrize(
    "method, params, message",
    [
        ("Socket", {"domain": 2, "type": 1}, "protocol"),
        ("Close", {}, "fd"),
        ("Close", None, "fd"),
        ("Close", {"fd": "3"}, "integer"),
        ("Close", {"fd": True}, "integer"),
        ("Close", {"fd": 1 << 31}, "out of range"),
        ("Listen", {"sockfd": 3, "backlog": 1.5}, "integer"),
        ("Bind", {"sockfd": 3}, "Missing address"),
        ("Bind", {"sockfd": 3, "addr": {}}, "Unknown Sockaddr"),
        ("Bind", {"sockfd": 3, "addr": {"un": {"path": "/tmp/x"}}}, "Unknown Sockaddr"),
        (
            "Bind",
            {
                "sockfd": 3,
                "addr": {
                    "in": {"family": 2, "port": 1, "addr": "7f000001"},
                    "in6": {"family": 10, "port": 1, "addr": V6.hex()},
                },
            },
            "Unknown Sockaddr",
        ),
        ("Bind", {"sockfd": 3, "addr": {"in": {"family": 2, "port": 1, "addr": "zz"}}}, "hex"),
        ("Bind", {"sockfd": 3, "addr": {"in": {"family": 2, "port": 1, "addr": "7f 00 00 01"}}}, "lowercase hex"),
        ("Bind", {"sockfd": 3, "addr": {"in": {"family": 2, "port": 1, "addr": "7F000001"}}}, "lowercase hex"),
        ("SetSockOpt", {"sockfd": 3, "level": 1, "optname": 2, "optval": "010"}, "lowercase hex"),
        ("Send", {"sockfd": 3, "buf": "61\n62", "flags": 0}, "lowercase hex"),
        ("Bind", {"sockfd": 3, "addr": {"in": {"family": 2, "addr": "7f000001"}}}, "port"),
        ("SetSockOpt", {"sockfd": 3, "level": 1, "optname": 2, "optval": 1}, "hex string"),
        ("SetSockOptTimeval", {"sockfd": 3, "level": 1, "optname": 2, "timeval": 5}, "object"),
        ("SetSockOptTimeval", {"sockfd": 3, "level": 1, "optname": 2, "timeval": {"seconds": 1}}, "microseconds"),
        ("Recv", [], "params must be an object"),
    ],
)
def test_parse_rejects_malformed(method, params, message):
    with pytest.raises(InvalidArgument, match=message):
        parse_request(method, params)


def test_sockaddr_wire_round_trip():
    for addr in (
        Inet4Address(family=AF_INET, port=65535, addr=b"\x01\x02\x03\x04"),
        Inet6Address(family=AF_INET6, port=7, flowinfo=9, addr=V6, scope_id=11),
    ):
        assert sockaddr_from_wire(sockaddr_to_wire(addr)) == addr


def test_result_socket_uses_fd_key():
    assert result_to_wire("Socket", SyscallResult(ret=5, errno=0)) == {"fd": 5, "errno": 0}


def test_result_bind_uses_ret_key():
    assert result_to_wire("Bind", SyscallResult(ret=-1, errno=98)) == {"ret": -1, "errno": 98}


def test_result_accept_with_address():
    res = SyscallResult(ret=7, errno=0, addr=Inet4Address(family=AF_INET, port=9, addr=b"\x7f\x00\x00\x01"))
    assert result_to_wire("Accept", res) == {
        "fd": 7,
        "errno": 0,
        "addr": {"in": {"family": AF_INET, "port": 9, "addr": "7f000001"}},
    }


def test_result_getsockname_with_unrepresentable_address():
    res = SyscallResult(ret=0, errno=0, addr_error="invalid argument: Unknown Sockaddr family 1")
    wire = result_to_wire("GetSockName", res)
    assert wire["ret"] == 0
    assert wire["addr"] is None
    assert wire["addr_error"].startswith("invalid argument")


def test_result_recv_hex_data():
    assert result_to_wire("Recv", SyscallResult(ret=2, errno=0, data=b"hi")) == {"ret": 2, "errno": 0, "buf": "6869"}
    assert result_to_wire("Recv", SyscallResult(ret=-1, errno=11, data=b"")) == {"ret": -1, "errno": 11, "buf": ""}
