import struct

import pytest

from sockcan.cangw import (
    Command,
    GatewayRequest,
    NetlinkError,
    add_attr,
    parse_args,
    parse_rtlist,
    usage,
)
from sockcan.isotprecv import UsageError

NAMES = {1: "can0", 2: "vcan3"}


def _ifname(index):
    return NAMES.get(index, "(null)")


def _resolved(argv):
    req = parse_args(argv)
    req.src_ifindex = 1
    req.dst_ifindex = 2
    return req


def test_usage_example_round_trip():
    req = _resolved(["-A", "-s", "can0", "-d", "vcan3", "-e", "-f", "123:C00007FF",
                     "-m", "SET:IL:333.4.1122334455667788"])
    lines, done = parse_rtlist(req.encode(), "/usr/bin/cangw", _ifname)
    assert done is False
    assert lines == [
        "cangw -A -s can0 -d vcan3 -e -f 123:C00007FF "
        "-m SET:IL:333.4.1122334455667788 # 0 handled 0 dropped 0 deleted"
    ]


def test_header_fields():
    req = _resolved(["-A", "-s", "a", "-d", "b"])
    data = req.encode()
    length, msg_type, flags = struct.unpack_from("=IHH", data)
    assert length == len(data)
    assert msg_type == 24
    assert flags == 1 | 4


def test_flush_zeroes_interfaces():
    req = _resolved(["-F"])
    lines, _ = parse_rtlist(req.encode(), "cangw", _ifname)
    assert lines[0].startswith("cangw -A -s (null) -d (null) ")


def test_uid_hops_and_flags_listed():
    req = _resolved(["-A", "-s", "a", "-d", "b", "-X", "-t", "-u", "1F", "-l", "3"])
    lines, _ = parse_rtlist(req.encode(), "cangw", _ifname)
    assert "-X -t " in lines[0]
    assert "-u 1F " in lines[0]
    assert "-l 3 " in lines[0]


def test_done_message_finishes():
    done_msg = struct.pack("=IHHII", 20, 3, 2, 0, 0) + bytes(4)
    assert parse_rtlist(done_msg, "cangw", _ifname) == ([], True)


def test_unknown_attribute_rejected():
    msg = bytearray(struct.pack("=IHHII", 0, 24, 0, 0, 0) + struct.pack("=BBH", 29, 1, 0))
    add_attr(msg, 99, b"\0\0\0\0", 1520)
    with pytest.raises(NetlinkError):
        parse_rtlist(bytes(msg), "cangw", _ifname)


def test_add_attr_alignment_and_limit():
    msg = bytearray(struct.pack("=IHHII", 0, 0, 0, 0, 0))
    add_attr(msg, 13, b"\x05", 1520)
    assert len(msg) % 4 == 0
    assert struct.unpack_from("=I", msg)[0] == len(msg)
    with pytest.raises(NetlinkError):
        add_attr(msg, 13, bytes(100), len(msg) + 8)


@pytest.mark.parametrize("argv", [[], ["-A", "-s", "can0"], ["-L", "extra"]])
def test_usage_errors(argv):
    with pytest.raises(UsageError) as exc:
        parse_args(argv)
    assert exc.value.exit_code == 1


def test_fd_mode_rejects_classic_mod():
    with pytest.raises(UsageError, match="No -m modifications allowed in CAN FD mode!"):
        parse_args(["-A", "-s", "a", "-d", "b", "-X", "-m", "SET:I:1.2.1122334455667788"])


def test_checksum_needs_mod():
    with pytest.raises(UsageError, match="-c or -x can only"):
        parse_args(["-A", "-s", "a", "-d", "b", "-x", "1:2:3:4"])


def test_bad_hop_limit():
    with pytest.raises(UsageError, match="Bad hop limit"):
        parse_args(["-A", "-s", "a", "-d", "b", "-l", "0"])


def test_bad_mod_reports_problem_code():
    with pytest.raises(UsageError, match="Problem 2"):
        parse_args(["-A", "-s", "a", "-d", "b", "-m", "NOP:I:1.2.1122334455667788"])


def test_first_command_wins():
    assert parse_args(["-L", "-A"]).command is Command.LIST


def test_unspec_encode_fails():
    with pytest.raises(NetlinkError):
        GatewayRequest(Command.UNSPEC).encode()


def test_usage_names_program():
    assert usage("gw").startswith("gw - manage PF_CAN netlink gateway.")