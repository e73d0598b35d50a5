"""Receive one ISO 15765-2 PDU (or keep receiving) and print it as hex."""

from __future__ import annotations

import getopt
import os
import re
import socket
import struct
import sys
from dataclasses import dataclass

NO_CAN_ID = 0xFFFFFFFF
CAN_EFF_FLAG = 0x80000000
BUFSIZE = 5000

SOL_CAN_ISOTP = 106
CAN_ISOTP_OPTS = 1
CAN_ISOTP_RECV_FC = 2
CAN_ISOTP_RX_STMIN = 4
CAN_ISOTP_LL_OPTS = 5

CAN_ISOTP_EXTEND_ADDR = 0x002
CAN_ISOTP_TX_PADDING = 0x004
CAN_ISOTP_RX_PADDING = 0x008
CAN_ISOTP_CHK_PAD_LEN = 0x010
CAN_ISOTP_CHK_PAD_DATA = 0x020
CAN_ISOTP_FORCE_RXSTMIN = 0x100
CAN_ISOTP_RX_EXT_ADDR = 0x200

_NUM = {
    16: re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)"),
    10: re.compile(r"\s*([+-]?)([0-9]+)"),
}


class UsageError(Exception):
    """Bad command line; ``exit_code`` is what the program exits with."""

    def __init__(self, message: str = "", exit_code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code


def _strtoul(text: str, base: int) -> int:
    m = _NUM[base].match(text)
    if not m:
        return 0
    value = int(m.group(2), base)
    return (-value if m.group(1) == "-" else value) & 0xFFFFFFFF


def _scan_bytes(text: str, base: int, count: int) -> list[int]:
    """Scan up to ``count`` ':'-separated numbers, each truncated to a byte."""
    values = []
    pos = 0
    for n in range(count):
        if n:
            if not text.startswith(":", pos):
                break
            pos += 1
        m = _NUM[base].match(text, pos)
        if not m:
            break
        value = int(m.group(2), base)
        values.append((-value if m.group(1) == "-" else value) & 0xFF)
        pos = m.end()
    return values


def parse_can_id(text: str) -> int:
    """Hex CAN id; more than seven characters make it an extended id."""
    can_id = _strtoul(text, 16)
    if len(text) > 7:
        can_id |= CAN_EFF_FLAG
    return can_id


@dataclass
class ReceiverConfig:
    interface: str
    tx_id: int
    rx_id: int
    flags: int = 0
    ext_address: int = 0
    rx_ext_address: int = 0
    txpad_content: int = 0
    rxpad_content: int = 0
    bs: int = 0
    stmin: int = 0
    wftmax: int = 0
    force_rx_stmin: int = 0
    ll_mtu: int = 0
    ll_tx_dl: int = 0
    ll_tx_flags: int = 0
    loop: bool = False

    def socket_options(self) -> list[tuple[int, bytes]]:
        """The (option, value) pairs to set on the ISO-TP socket, in order."""
        options = [
            (CAN_ISOTP_OPTS, struct.pack("=IIBBBB", self.flags, 0, self.ext_address,
                                         self.txpad_content, self.rxpad_content,
                                         self.rx_ext_address)),
            (CAN_ISOTP_RECV_FC, struct.pack("=BBB", self.bs, self.stmin, self.wftmax)),
        ]
        if self.ll_tx_dl:
            options.append((CAN_ISOTP_LL_OPTS, struct.pack(
                "=BBB", self.ll_mtu, self.ll_tx_dl, self.ll_tx_flags)))
        if self.flags & CAN_ISOTP_FORCE_RXSTMIN:
            options.append((CAN_ISOTP_RX_STMIN, struct.pack("=I", self.force_rx_stmin)))
        return options


def parse_args(argv) -> ReceiverConfig:
    try:
        opts, args = getopt.getopt(list(argv), "s:d:x:p:P:b:m:w:f:lL:h?")
    except getopt.GetoptError as exc:
        raise UsageError(str(exc), 0) from None

    cfg = ReceiverConfig("", NO_CAN_ID, NO_CAN_ID)
    for opt, val in opts:
        if opt == "-s":
            cfg.tx_id = parse_can_id(val)
        elif opt == "-d":
            cfg.rx_id = parse_can_id(val)
        elif opt == "-x":
            values = _scan_bytes(val, 16, 2)
            if not values:
                raise UsageError(f"incorrect extended addr values '{val}'.", 0)
            cfg.ext_address = values[0]
            cfg.flags |= CAN_ISOTP_EXTEND_ADDR
            if len(values) == 2:
                cfg.rx_ext_address = values[1]
                cfg.flags |= CAN_ISOTP_RX_EXT_ADDR
        elif opt == "-p":
            values = _scan_bytes(val, 16, 2)
            if values:
                cfg.txpad_content = values[0]
                cfg.flags |= CAN_ISOTP_TX_PADDING
                if len(values) == 2:
                    cfg.rxpad_content = values[1]
                    cfg.flags |= CAN_ISOTP_RX_PADDING
            elif val.startswith(":") and _scan_bytes(val[1:], 16, 1):
                cfg.rxpad_content = _scan_bytes(val[1:], 16, 1)[0]
                cfg.flags |= CAN_ISOTP_RX_PADDING
            else:
                raise UsageError(f"incorrect padding values '{val}'.", 0)
        elif opt == "-P":
            modes = {"l": CAN_ISOTP_CHK_PAD_LEN, "c": CAN_ISOTP_CHK_PAD_DATA,
                     "a": CAN_ISOTP_CHK_PAD_LEN | CAN_ISOTP_CHK_PAD_DATA}
            if val[:1] not in modes or not val:
                raise UsageError(f"unknown padding check option '{val[:1]}'.", 0)
            cfg.flags |= modes[val[0]]
        elif opt == "-b":
            cfg.bs = _strtoul(val, 16) & 0xFF
        elif opt == "-m":
            cfg.stmin = _strtoul(val, 16) & 0xFF
        elif opt == "-w":
            cfg.wftmax = _strtoul(val, 16) & 0xFF
        elif opt == "-f":
            cfg.flags |= CAN_ISOTP_FORCE_RXSTMIN
            cfg.force_rx_stmin = _strtoul(val, 10)
        elif opt == "-l":
            cfg.loop = True
        elif opt == "-L":
            values = _scan_bytes(val, 10, 3)
            if len(values) != 3:
                raise UsageError(f"unknown link layer options '{val}'.", 0)
            cfg.ll_mtu, cfg.ll_tx_dl, cfg.ll_tx_flags = values
        else:
            raise UsageError("", 0)

    if len(args) != 1 or cfg.tx_id == NO_CAN_ID or cfg.rx_id == NO_CAN_ID:
        raise UsageError("", 1)
    cfg.interface = args[0]
    return cfg


def format_pdu(data: bytes) -> str:
    """Space separated hex bytes, each followed by a space."""
    return "".join(f"{b:02X} " for b in data)


def usage(prog: str) -> str:
    return (
        f"\nUsage: {prog} [options] <CAN interface>\n"
        "Options:\n"
        "         -s <can_id>   (source can_id. Use 8 digits for extended IDs)\n"
        "         -d <can_id>   (destination can_id. Use 8 digits for extended IDs)\n"
        "         -x <addr>[:<rxaddr>]  (extended addressing / opt. separate rxaddr)\n"
        "         -p [tx]:[rx]  (set and enable tx/rx padding bytes)\n"
        "         -P <mode>     (check rx padding for (l)ength (c)ontent (a)ll)\n"
        "         -b <bs>       (blocksize. 0 = off)\n"
        "         -m <val>      (STmin in ms/ns. See spec.)\n"
        "         -f <time ns>  (force rx stmin value in nanosecs)\n"
        "         -w <num>      (max. wait frame transmissions.)\n"
        "         -l            (loop: do not exit after pdu reception.)\n"
        "         -L <mtu>:<tx_dl>:<tx_flags>  (link layer options for CAN FD)\n"
        "\nCAN IDs and addresses are given and expected in hexadecimal values.\n"
        "The pdu data is written on STDOUT in space separated ASCII hex values.\n\n"
    )


def main(argv=None) -> int:
    prog = os.path.basename(sys.argv[0] or "isotprecv")
    if argv is None:
        argv = sys.argv[1:]
    try:
        cfg = parse_args(argv)
    except UsageError as exc:
        if exc.message:
            print(exc.message)
        sys.stderr.write(usage(prog))
        return exc.exit_code

    try:
        sock = socket.socket(socket.AF_CAN, socket.SOCK_DGRAM, socket.CAN_ISOTP)
    except OSError as exc:
        print(f"socket: {exc}", file=sys.stderr)
        return 1
    with sock:
        for option, value in cfg.socket_options():
            try:
                sock.setsockopt(SOL_CAN_ISOTP, option, value)
            except OSError as exc:
                if option == CAN_ISOTP_LL_OPTS:
                    print(f"link layer sockopt: {exc}", file=sys.stderr)
                    return 1
        try:
            sock.bind((cfg.interface, cfg.rx_id, cfg.tx_id))
        except OSError as exc:
            print(f"bind: {exc}", file=sys.stderr)
            return 1
        while True:
            data = sock.recv(BUFSIZE)
            print(format_pdu(data) if 0 < len(data) < BUFSIZE else "", flush=True)
            if not cfg.loop:
                break
    return 0


if __name__ == "__main__":
    sys.exit(main())