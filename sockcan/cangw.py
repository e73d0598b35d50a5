"""Manage the CAN gateway rules of the kernel over netlink."""

from __future__ import annotations

import getopt
import os
import re
import socket
import struct
import sys
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable

from sockcan.gwrules import (
    CanFilter,
    Crc8Checksum,
    Crc8Profile,
    Modification,
    ModInstruction,
    RuleParseError,
    XorChecksum,
    parse_cs_crc8,
    parse_cs_xor,
    parse_fdmod,
    parse_filter,
    parse_mod,
    parse_crc8_profile,
)
from sockcan.isotprecv import UsageError

AF_CAN = 29
CGW_TYPE_CAN_CAN = 1

NLMSG_ERROR = 2
NLMSG_DONE = 3
RTM_NEWROUTE = 24
RTM_DELROUTE = 25
RTM_GETROUTE = 26
NLM_F_REQUEST = 0x01
NLM_F_ACK = 0x04
NLM_F_DUMP = 0x300

CGW_CS_XOR = 5
CGW_CS_CRC8 = 6
CGW_HANDLED = 7
CGW_DROPPED = 8
CGW_SRC_IF = 9
CGW_DST_IF = 10
CGW_FILTER = 11
CGW_DELETED = 12
CGW_LIM_HOPS = 13
CGW_MOD_UID = 14

CGW_FLAGS_CAN_ECHO = 0x01
CGW_FLAGS_CAN_SRC_TSTAMP = 0x02
CGW_FLAGS_CAN_IIF_TX_OK = 0x04
CGW_FLAGS_CAN_FD = 0x08

CGW_MOD_FUNCS = 4
REQUEST_LIMIT = 16 + 4 + 1500

_NLMSGHDR = struct.Struct("=IHHII")
_RTCANMSG = struct.Struct("=BBH")
_RTATTR = struct.Struct("=HH")

_HEX = re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)")
_DEC = re.compile(r"\s*([+-]?)([0-9]+)")


class Command(Enum):
    UNSPEC = 0
    ADD = 1
    DEL = 2
    FLUSH = 3
    LIST = 4


class NetlinkError(Exception):
    """A netlink message could not be built or understood."""


def _align(n: int) -> int:
    return (n + 3) & ~3


def _number(pattern: re.Pattern, text: str, base: int, bits: int) -> int | None:
    m = pattern.match(text)
    if not m:
        return None
    value = int(m.group(2), base)
    if m.group(1) == "-":
        value = -value
    return value & ((1 << bits) - 1)


def add_attr(message: bytearray, attr_type: int, payload: bytes, limit: int) -> None:
    """Append one route attribute to ``message`` and update its length field."""
    length = _RTATTR.size + len(payload)
    if _align(len(message)) + _align(length) > limit:
        raise NetlinkError(f"addattr_l: message exceeded bound of {limit}")
    message.extend(bytes(_align(len(message)) - len(message)))
    message.extend(_RTATTR.pack(length, attr_type))
    message.extend(payload)
    message.extend(bytes(_align(length) - length))
    struct.pack_into("=I", message, 0, len(message))


@dataclass
class GatewayRequest:
    command: Command
    src_dev: str = ""
    dst_dev: str = ""
    src_ifindex: int = 0
    dst_ifindex: int = 0
    flags: int = 0
    filter: CanFilter | None = None
    cs_xor: XorChecksum | None = None
    cs_crc8: Crc8Checksum | None = None
    uid: int = 0
    limit_hops: int = 0
    mods: list[Modification] = field(default_factory=list)

    def encode(self) -> bytes:
        """Build the netlink request for this command."""
        kinds = {
            Command.ADD: (RTM_NEWROUTE, NLM_F_REQUEST | NLM_F_ACK),
            Command.DEL: (RTM_DELROUTE, NLM_F_REQUEST | NLM_F_ACK),
            Command.FLUSH: (RTM_DELROUTE, NLM_F_REQUEST | NLM_F_ACK),
            Command.LIST: (RTM_GETROUTE, NLM_F_REQUEST | NLM_F_DUMP),
        }
        if self.command not in kinds:
            raise NetlinkError("This function is not yet implemented.")
        msg_type, msg_flags = kinds[self.command]
        src, dst = self.src_ifindex, self.dst_ifindex
        if self.command is Command.FLUSH:
            src = dst = 0

        message = bytearray(_NLMSGHDR.pack(0, msg_type, msg_flags, 0, 0))
        message += _RTCANMSG.pack(AF_CAN, CGW_TYPE_CAN_CAN, self.flags)
        struct.pack_into("=I", message, 0, len(message))

        add_attr(message, CGW_SRC_IF, struct.pack("=I", src), REQUEST_LIMIT)
        add_attr(message, CGW_DST_IF, struct.pack("=I", dst), REQUEST_LIMIT)
        if self.filter is not None:
            add_attr(message, CGW_FILTER, self.filter.pack(), REQUEST_LIMIT)
        if self.cs_crc8 is not None:
            add_attr(message, CGW_CS_CRC8, self.cs_crc8.pack(), REQUEST_LIMIT)
        if self.cs_xor is not None:
            add_attr(message, CGW_CS_XOR, self.cs_xor.pack(), REQUEST_LIMIT)
        if self.uid:
            add_attr(message, CGW_MOD_UID, struct.pack("=I", self.uid), REQUEST_LIMIT)
        if self.limit_hops:
            add_attr(message, CGW_LIM_HOPS, bytes([self.limit_hops]), REQUEST_LIMIT)
        for mod in (m for m in self.mods if not m.fd):
            add_attr(message, mod.attr_type, mod.pack(), REQUEST_LIMIT)
        for mod in (m for m in self.mods if m.fd):
            add_attr(message, mod.attr_type, mod.pack(), REQUEST_LIMIT)
        return bytes(message)


def parse_args(argv) -> GatewayRequest:
    """Turn command line arguments into a gateway request."""
    try:
        opts, args = getopt.getopt(list(argv), "ADFLs:d:Xteiu:l:f:c:p:x:m:M:?")
    except getopt.GetoptError:
        raise UsageError("", 1) from None

    req = GatewayRequest(Command.UNSPEC)
    commands = {"-A": Command.ADD, "-D": Command.DEL,
                "-F": Command.FLUSH, "-L": Command.LIST}
    flag_opts = {"-X": CGW_FLAGS_CAN_FD, "-t": CGW_FLAGS_CAN_SRC_TSTAMP,
                 "-e": CGW_FLAGS_CAN_ECHO, "-i": CGW_FLAGS_CAN_IIF_TX_OK}
    crc8 = Crc8Checksum(0, 0, 0, 0, 0)
    have_crc8 = False
    classic_mods: list[Modification] = []
    fd_mods: list[Modification] = []

    for opt, val in opts:
        if opt in commands:
            if req.command is Command.UNSPEC:
                req.command = commands[opt]
        elif opt == "-s":
            req.src_dev = val
        elif opt == "-d":
            req.dst_dev = val
        elif opt in flag_opts:
            req.flags |= flag_opts[opt]
        elif opt == "-u":
            req.uid = _number(_HEX, val, 16, 32) or 0
        elif opt == "-l":
            hops = _number(_DEC, val, 10, 8)
            if not hops:
                raise UsageError(f"Bad hop limit definition '{val}'.", 1)
            req.limit_hops = hops
        elif opt == "-f":
            try:
                req.filter = parse_filter(val)
            except RuleParseError as exc:
                raise UsageError(str(exc), 1) from None
        elif opt == "-x":
            try:
                req.cs_xor = parse_cs_xor(val)
            except RuleParseError as exc:
                raise UsageError(str(exc), 1) from None
        elif opt == "-c":
            try:
                parsed = parse_cs_crc8(val)
            except RuleParseError as exc:
                raise UsageError(str(exc), 1) from None
            crc8 = replace(parsed, profile=crc8.profile, profile_data=crc8.profile_data)
            have_crc8 = True
        elif opt == "-p":
            try:
                crc8 = parse_crc8_profile(val, crc8)
            except RuleParseError as exc:
                raise UsageError(str(exc), 1) from None
        elif opt in ("-m", "-M"):
            target = classic_mods if opt == "-m" else fd_mods
            if len(target) < CGW_MOD_FUNCS:
                try:
                    target.append(parse_mod(val) if opt == "-m" else parse_fdmod(val))
                except RuleParseError as exc:
                    raise UsageError(
                        f"Problem {exc.code} with modification definition '{val}'.", 1
                    ) from None
        else:
            raise UsageError("", 0)

    if args or req.command is Command.UNSPEC:
        raise UsageError("", 1)
    if req.command in (Command.ADD, Command.DEL) and not (req.src_dev and req.dst_dev):
        raise UsageError("", 1)
    if req.flags & CGW_FLAGS_CAN_FD:
        if classic_mods:
            raise UsageError("No -m modifications allowed in CAN FD mode!", 1)
    elif fd_mods:
        raise UsageError("No -M modifications allowed in Classic CAN mode!", 1)
    if not classic_mods and not fd_mods and (have_crc8 or req.cs_xor is not None):
        raise UsageError("-c or -x can only be used in conjunction with -m/-M", 1)

    if have_crc8:
        req.cs_crc8 = crc8
    req.mods = classic_mods + fd_mods
    return req


def _default_ifname(index: int) -> str:
    try:
        return socket.if_indextoname(index)
    except OSError:
        return "(null)"


def _attributes(data: bytes, start: int, end: int):
    pos = start
    while end - pos >= _RTATTR.size:
        length, attr_type = _RTATTR.unpack_from(data, pos)
        if length < _RTATTR.size or length > end - pos:
            break
        yield attr_type, data[pos + _RTATTR.size : pos + length]
        pos += _align(length)


_COUNTERS = {CGW_HANDLED: "handled", CGW_DROPPED: "dropped", CGW_DELETED: "deleted"}


def _format_attr(attr_type: int, payload: bytes) -> str:
    if attr_type == CGW_FILTER:
        return CanFilter.unpack(payload).format()
    if 1 <= attr_type <= 4 or 15 <= attr_type <= 18:
        instruction, fd = ModInstruction.from_attr_type(attr_type)
        return Modification.unpack(instruction, payload, fd).format()
    if attr_type == CGW_MOD_UID:
        return f"-u {struct.unpack_from('=I', payload)[0]:X} "
    if attr_type == CGW_LIM_HOPS:
        return f"-l {payload[0]} "
    if attr_type == CGW_CS_XOR:
        return XorChecksum.unpack(payload).format()
    if attr_type == CGW_CS_CRC8:
        return Crc8Checksum.unpack(payload).format()
    return ""


def parse_rtlist(data: bytes, prog: str,
                 ifname: Callable[[int], str] = _default_ifname) -> tuple[list[str], bool]:
    """Render a dump answer as command lines; the flag tells if the dump ended."""
    known = {CGW_FILTER, CGW_MOD_UID, CGW_LIM_HOPS, CGW_CS_XOR, CGW_CS_CRC8,
             CGW_SRC_IF, CGW_DST_IF, *_COUNTERS, 1, 2, 3, 4, 15, 16, 17, 18}
    lines: list[str] = []
    pos = 0
    while len(data) - pos >= _NLMSGHDR.size:
        msg_len, msg_type, _, _, _ = _NLMSGHDR.unpack_from(data, pos)
        if msg_len < _NLMSGHDR.size or msg_len > len(data) - pos:
            break
        if msg_type == NLMSG_ERROR:
            lines.append("NLMSG_ERROR")
            return lines, True
        if msg_type == NLMSG_DONE:
            return lines, True
        family, gwtype, flags = _RTCANMSG.unpack_from(data, pos + _NLMSGHDR.size)
        if family != AF_CAN:
            raise NetlinkError(f"received msg from unknown family {family}")
        if gwtype != CGW_TYPE_CAN_CAN:
            raise NetlinkError(f"received msg with unknown gwtype {gwtype}")

        attrs = list(_attributes(data, pos + _NLMSGHDR.size + _align(_RTCANMSG.size),
                                 pos + msg_len))
        counters = dict.fromkeys(_COUNTERS.values(), 0)
        src = dst = 0
        for attr_type, payload in attrs:
            if attr_type not in known:
                raise NetlinkError(f"Unknown attribute {attr_type}!")
            if attr_type == CGW_SRC_IF:
                src = struct.unpack_from("=I", payload)[0]
            elif attr_type == CGW_DST_IF:
                dst = struct.unpack_from("=I", payload)[0]
            elif attr_type in _COUNTERS:
                counters[_COUNTERS[attr_type]] = struct.unpack_from("=I", payload)[0]

        line = f"{os.path.basename(prog)} -A -s {ifname(src)} -d {ifname(dst)} "
        for bit, opt in ((CGW_FLAGS_CAN_FD, "-X "), (CGW_FLAGS_CAN_ECHO, "-e "),
                         (CGW_FLAGS_CAN_SRC_TSTAMP, "-t "), (CGW_FLAGS_CAN_IIF_TX_OK, "-i ")):
            if flags & bit:
                line += opt
        line += "".join(_format_attr(t, p) for t, p in attrs)
        line += (f"# {counters['handled']} handled {counters['dropped']} dropped "
                 f"{counters['deleted']} deleted")
        lines.append(line)
        pos += _align(msg_len)
    return lines, False


def usage(prog: str) -> str:
    return (
        f"{prog} - manage PF_CAN netlink gateway.\n"
        f"\nUsage: {prog} [options]\n\n"
        "Commands:\n"
        "          -A  (add a new rule)\n"
        "          -D  (delete a rule)\n"
        "          -F  (flush / delete all rules)\n"
        "          -L  (list all rules)\n"
        "Mandatory:\n"
        "          -s <src_dev>  (source netdevice)\n"
        "          -d <dst_dev>  (destination netdevice)\n"
        "Options:\n"
        "          -X  (this is a CAN FD rule)\n"
        "          -t  (preserve src_dev rx timestamp)\n"
        "          -e  (echo sent frames - recommended on vcanx)\n"
        "          -i  (allow to route to incoming interface)\n"
        "          -u <uid>  (user defined modification identifier)\n"
        "          -l <hops>  (limit the number of frame hops / routings)\n"
        "          -f <filter>  (set CAN filter)\n"
        "          -m <mod>  (set Classical CAN frame modifications)\n"
        "          -M <MOD>  (set CAN FD frame modifications)\n"
        "          -x <from_idx>:<to_idx>:<result_idx>:<init_xor_val>  (XOR checksum)\n"
        "          -c <from>:<to>:<result>:<init_val>:<xor_val>:<crctab[256]>  (CRC8 cs)\n"
        "          -p <profile>:[<profile_data>]  (CRC8 checksum profile & parameters)\n"
        "\nValues are given and expected in hexadecimal values. Leading 0s can be omitted.\n"
        "\n"
        "<filter> is a <value><mask> CAN identifier filter:\n"
        "  <can_id>:<can_mask>  (matches when <received_can_id> & mask == can_id & mask)\n"
        "  <can_id>~<can_mask>  (matches when <received_can_id> & mask != can_id & mask)\n"
        "\n"
        "<mod> is a Classical CAN frame modification instruction consisting of\n"
        "<instruction>:<can_frame-elements>:<can_id>.<can_dlc>.<can_data>\n"
        "  <instruction>  is one of 'AND' 'OR' 'XOR' 'SET'\n"
        "  <can_frame-elements>  is _one_ or _more_ of 'I'dentifier 'L'ength 'D'ata\n"
        "  <can_id>  is an u32 value containing the CAN Identifier\n"
        "  <can_dlc>  is an u8 value containing the data length code in hex (0 .. F)\n"
        "  <can_data>  is always eight(!) u8 values containing the CAN frames data\n"
        "\n"
        "<MOD> is a CAN FD frame modification instruction consisting of\n"
        "<instruction>:<canfd_frame-elements>:<can_id>.<flags>.<len>.<can_data>\n"
        "  <instruction>  is one of 'AND' 'OR' 'XOR' 'SET'\n"
        "  <canfd_frame-elements>  is _one_ or _more_ of 'I'd 'F'lags 'L'ength 'D'ata\n"
        "  <can_id>  is an u32 value containing the CAN FD Identifier\n"
        "  <flags>  is an u8 value containing CAN FD flags (CANFD_BRS, CANFD_ESI)\n"
        "  <len>  is an u8 value containing the data length in hex (0 .. 40)\n"
        "  <can_data>  is always 64(!) u8 values containing the CAN FD frames data\n"
        "The max. four modifications are performed in the order AND -> OR -> XOR -> SET\n"
        "\n"
        "Supported CRC 8 profiles:\n"
        f" Profile '{Crc8Profile.ONE_U8.value}' (1U8)        add one additional u8 value\n"
        f" Profile '{Crc8Profile.SIXTEEN_U8.value}' (16U8)       "
        "add u8 value from table[16] indexed by (data[1] & 0xF)\n"
        f" Profile '{Crc8Profile.SFFID_XOR.value}' (SFFID_XOR)  "
        "add u8 value (can_id & 0xFF) ^ (can_id >> 8 & 0xFF)\n"
        "\n"
        "Examples:\n"
        f"{prog} -A -s can0 -d vcan3 -e -f 123:C00007FF -m SET:IL:333.4.1122334455667788\n"
        "\n"
    )


def _ifindex(name: str) -> int:
    if not name:
        return 0
    try:
        return socket.if_nametoindex(name)
    except OSError:
        return 0


def main(argv=None) -> int:
    prog_path = sys.argv[0] or "cangw"
    prog = os.path.basename(prog_path)
    if argv is None:
        argv = sys.argv[1:]
    try:
        req = parse_args(argv)
        req.src_ifindex = _ifindex(req.src_dev)
        req.dst_ifindex = _ifindex(req.dst_dev)
        if req.command in (Command.ADD, Command.DEL) and not (req.src_ifindex and req.dst_ifindex):
            raise UsageError("", 1)
    except UsageError as exc:
        if exc.message:
            print(exc.message)
        else:
            sys.stderr.write(usage(prog))
        return exc.exit_code

    try:
        request = req.encode()
    except NetlinkError as exc:
        print(exc, file=sys.stderr)
        return 1

    with socket.socket(socket.AF_NETLINK, socket.SOCK_RAW, socket.NETLINK_ROUTE) as sock:
        try:
            sock.sendto(request, (0, 0))
        except OSError as exc:
            print(f"netlink sendto: {exc}", file=sys.stderr)
            return 1

        if req.command is not Command.LIST:
            try:
                answer = sock.recv(8192)
            except OSError as exc:
                print(f"netlink recv: {exc}", file=sys.stderr)
                return 1
            msg_type = _NLMSGHDR.unpack_from(answer)[1]
            if msg_type != NLMSG_ERROR:
                print(f"unexpected netlink answer of type {msg_type}", file=sys.stderr)
                return 1
            err = struct.unpack_from("=i", answer, _NLMSGHDR.size)[0]
            if err < 0:
                print(f"netlink error {err} ({os.strerror(-err)})", file=sys.stderr)
                return 1
            return 0

        while True:
            try:
                answer = sock.recv(8192)
            except OSError as exc:
                print(f"netlink recv: {exc}", file=sys.stderr)
                return 1
            try:
                lines, done = parse_rtlist(answer, prog_path)
            except NetlinkError as exc:
                print(exc)
                return 0
            for line in lines:
                print(line)
            if done:
                return 0


if __name__ == "__main__":
    sys.exit(main())