"""Send CAN frames with a rising sequence number, or check received ones."""

from __future__ import annotations

import errno
import getopt
import os
import re
import select
import signal
import socket
import struct
import sys
from dataclasses import dataclass
from itertools import count as _count, islice
from typing import Iterator

from sockcan.isotprecv import UsageError

CAN_ID_DEFAULT = 2
CAN_EFF_FLAG = 0x80000000
CAN_ERR_FLAG = 0x20000000
CAN_SFF_MASK = 0x000007FF
CAN_EFF_MASK = 0x1FFFFFFF
CAN_ERR_MASK = 0x1FFFFFFF
SO_RXQ_OVFL = 40
SEQUENCE_MASK = 0xFF

_FRAME = struct.Struct("=IB3x8s")
_NUMBER = re.compile(r"\s*([+-]?)(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)")


def _strtoul(text: str) -> int:
    m = _NUMBER.match(text)
    if not m:
        return 0
    digits = m.group(2)
    if digits[:2].lower() == "0x":
        value = int(digits, 16)
    elif digits.startswith("0"):
        value = int(digits, 8)
    else:
        value = int(digits)
    return (-value if m.group(1) == "-" else value) & 0xFFFFFFFF


@dataclass
class SequenceConfig:
    interface: str = "can0"
    extended: bool = False
    can_id: int = CAN_ID_DEFAULT
    loopcount: int | None = None
    use_poll: bool = False
    drop_until_quit: int = 0
    receive: bool = False
    verbose: int = 0

    def filter(self) -> tuple[int, int]:
        """The (can_id, can_mask) receive filter; its id is also the sent id."""
        if self.extended:
            mask = CAN_EFF_MASK
            can_id = (self.can_id & CAN_EFF_MASK) | CAN_EFF_FLAG
        else:
            mask = CAN_SFF_MASK
            can_id = self.can_id & CAN_SFF_MASK
        return can_id, mask | CAN_EFF_FLAG


def _normalize_quit(argv: list[str]) -> list[str]:
    # -q takes its optional value only when attached, like getopt_long does
    out = []
    for arg in argv:
        if arg in ("-q", "--quit"):
            out.append("--quit=1")
        elif arg.startswith("-q") and not arg.startswith("--"):
            out.append("--quit=" + arg[2:])
        else:
            out.append(arg)
    return out


def parse_args(argv) -> SequenceConfig:
    try:
        opts, args = getopt.gnu_getopt(
            _normalize_quit(list(argv)), "ei:prvh",
            ["extended", "identifier=", "loop=", "poll", "quit=", "receive",
             "verbose", "help"])
    except getopt.GetoptError as exc:
        raise UsageError(str(exc), 1) from None

    cfg = SequenceConfig()
    for opt, val in opts:
        if opt in ("-e", "--extended"):
            cfg.extended = True
        elif opt in ("-i", "--identifier"):
            cfg.can_id = _strtoul(val)
        elif opt in ("-r", "--receive"):
            cfg.receive = True
        elif opt == "--loop":
            cfg.loopcount = _strtoul(val)
        elif opt in ("-p", "--poll"):
            cfg.use_poll = True
        elif opt == "--quit":
            cfg.drop_until_quit = _strtoul(val)
        elif opt in ("-v", "--verbose"):
            cfg.verbose += 1
        elif opt in ("-h", "--help"):
            raise UsageError("", 0)
    if args:
        cfg.interface = args[0]
    return cfg


class TooManyDrops(Exception):
    """The configured number of sequence errors was reached."""

    def __init__(self, lines: list[tuple[bool, str]]) -> None:
        super().__init__(lines[-1][1] if lines else "")
        self.lines = lines


class SequenceChecker:
    """Follows the received sequence numbers and reports gaps."""

    def __init__(self, verbose: int = 0, drop_until_quit: int = 0) -> None:
        self.verbose = verbose
        self.drop_until_quit = drop_until_quit
        self.sequence = 0
        self.drop_count = 0
        self.overflow_old = 0
        self.wraps = 0
        self._initialized = False

    def feed(self, can_id: int, data: bytes, overflow: int = 0) -> list[tuple[bool, str]]:
        """Take one frame; returns (is_error, text) lines to report."""
        lines: list[tuple[bool, str]] = []
        if can_id & CAN_ERR_FLAG:
            payload = " ".join(f"{b:02x}" for b in bytes(data).ljust(8, b"\0")[:8])
            lines.append((True, f"sequence CNT: {self.sequence:6d}, "
                                f"ERRORFRAME {can_id:7x}   {payload}"))
            return lines

        rx = data[0]
        if not self._initialized:
            self._initialized = True
            self.sequence = rx

        delta = (rx - self.sequence) & SEQUENCE_MASK
        if delta:
            self.drop_count += 1
            overflow_delta = (overflow - self.overflow_old) & 0xFFFFFFFF
            lines.append((True,
                f"sequence CNT: {self.sequence:6d}, RX: {rx:6d}    "
                f"expected: {self.sequence & SEQUENCE_MASK:3d}    missing: {delta:4d}    "
                f"skt overfl d: {overflow_delta:4d} a: {overflow:4d}    "
                f"delta: {(delta - overflow_delta) & 0xFFFFFFFF:3d}    "
                f"incident: {self.drop_count}"))
            if self.drop_count == self.drop_until_quit:
                raise TooManyDrops(lines)
            self.sequence = rx
            self.overflow_old = overflow
        elif self.verbose > 1:
            lines.append((False, f"sequence CNT: {self.sequence:6d}, RX: {rx:6d}"))

        self.sequence = (self.sequence + 1) & 0xFFFFFFFF
        if self.verbose and not self.sequence & SEQUENCE_MASK:
            lines.append((False, f"sequence wrap around ({self.wraps})"))
            self.wraps += 1
        return lines


def sequence_values(count: int | None = None) -> Iterator[int]:
    """Payload bytes of the sent frames: 0, 1, ... 255, 0, ...; endless if None."""
    values = (n & SEQUENCE_MASK for n in _count())
    return values if count is None else islice(values, count)


def usage(prog: str) -> str:
    return (
        f"Usage: {prog} [<can-interface>] [Options]\n"
        "\n"
        "cansequence sends CAN messages with a rising sequence number as payload.\n"
        "When the -r option is given, cansequence expects to receive these messages\n"
        "and prints an error message if a wrong sequence number is encountered.\n"
        "The main purpose of this program is to test the reliability of CAN links.\n"
        "\n"
        "Options:\n"
        " -e, --extended\t\tsend extended frame\n"
        f" -i, --identifier=ID\tCAN Identifier (default = {CAN_ID_DEFAULT})\n"
        "     --loop=COUNT\tsend message COUNT times\n"
        " -p, --poll\t\tuse poll(2) to wait for buffer space while sending\n"
        " -q, --quit <num>\tquit if <num> wrong sequences are encountered\n"
        " -r, --receive\t\twork as receiver\n"
        " -v, --verbose\t\tbe verbose (twice to be even more verbose\n"
        " -h, --help\t\tthis help\n"
    )


class _Stop(Exception):
    pass


def _receive(sock: socket.socket, cfg: SequenceConfig, can_filter) -> int:
    try:
        sock.setsockopt(socket.SOL_SOCKET, SO_RXQ_OVFL, 1)
    except OSError as exc:
        print(f"setsockopt() SO_RXQ_OVFL not supported by your Linux Kernel: {exc}",
              file=sys.stderr)
    sock.setsockopt(socket.SOL_CAN_RAW, socket.CAN_RAW_ERR_FILTER,
                    struct.pack("=I", CAN_ERR_MASK))
    sock.setsockopt(socket.SOL_CAN_RAW, socket.CAN_RAW_FILTER, struct.pack("=II", *can_filter))

    checker = SequenceChecker(cfg.verbose, cfg.drop_until_quit)
    remaining = cfg.loopcount
    while remaining is None or remaining > 0:
        if remaining is not None:
            remaining -= 1
        data, ancdata, _, _ = sock.recvmsg(_FRAME.size, socket.CMSG_SPACE(16) * 2)
        can_id, _, payload = _FRAME.unpack(data.ljust(_FRAME.size, b"\0"))
        overflow = 0
        for level, kind, value in ancdata:
            if level == socket.SOL_SOCKET and kind == SO_RXQ_OVFL:
                overflow = struct.unpack_from("=I", value)[0]
                break
        try:
            lines = checker.feed(can_id, payload, overflow)
        except TooManyDrops as exc:
            for _, text in exc.lines:
                print(text, file=sys.stderr)
            return 1
        for is_error, text in lines:
            print(text, file=sys.stderr if is_error else sys.stdout)
    return 0


def _send(sock: socket.socket, cfg: SequenceConfig, can_id: int) -> int:
    wraps = 0
    for n, value in enumerate(sequence_values(cfg.loopcount)):
        if cfg.verbose > 1:
            print(f"sending frame. sequence number: {n & SEQUENCE_MASK}")
        frame = _FRAME.pack(can_id, 1, bytes([value]).ljust(8, b"\0"))
        while True:
            try:
                sock.send(frame)
                break
            except InterruptedError:
                continue
            except OSError as exc:
                if exc.errno != errno.ENOBUFS or not cfg.use_poll:
                    print(f"write: {exc}", file=sys.stderr)
                    return 1
                poller = select.poll()
                poller.register(sock, select.POLLOUT)
                poller.poll(1000)
        if cfg.verbose and not (n + 1) & SEQUENCE_MASK:
            print(f"sequence wrap around ({wraps})")
            wraps += 1
    return 0


def main(argv=None) -> int:
    prog = os.path.basename(sys.argv[0] or "cansequence")
    if argv is None:
        argv = sys.argv[1:]
    try:
        cfg = parse_args(argv)
    except UsageError as exc:
        sys.stderr.write(usage(prog))
        return exc.exit_code

    can_filter = cfg.filter()
    print(f"interface = {cfg.interface}, family = {socket.PF_CAN}, "
          f"type = {socket.SOCK_RAW}, proto = {socket.CAN_RAW}")

    def _stop(signo, frame):
        raise _Stop()

    for sig in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(sig, _stop)

    try:
        with socket.socket(socket.PF_CAN, socket.SOCK_RAW, socket.CAN_RAW) as sock:
            sock.setsockopt(socket.SOL_CAN_RAW, socket.CAN_RAW_FILTER, b"")
            sock.bind((cfg.interface,))
            if cfg.receive:
                return _receive(sock, cfg, can_filter)
            return _send(sock, cfg, can_filter[0])
    except (KeyboardInterrupt, _Stop):
        return 0
    except OSError as exc:
        print(exc, file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())