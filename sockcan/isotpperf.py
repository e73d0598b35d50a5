"""Show the progress and throughput of ISO 15765-2 transfers seen on a CAN bus."""

from __future__ import annotations

import fcntl
import getopt
import os
import select
import socket
import struct
import sys
import time
from dataclasses import dataclass

from sockcan.isotprecv import UsageError, parse_can_id

NO_CAN_ID = 0xFFFFFFFF
CAN_EFF_FLAG = 0x80000000
CAN_RTR_FLAG = 0x40000000
CAN_SFF_MASK = 0x000007FF
CAN_EFF_MASK = 0x1FFFFFFF
CAN_MTU = 16
CANFD_MTU = 72
CANFD_MAX_DLEN = 64
CANFD_BRS = 0x01
SIOCGSTAMP = 0x8906
UINT32_MAX = 0xFFFFFFFF

PERCENTRES = 2  # resolution in percent for the bar graph
NUMBAR = 100 // PERCENTRES  # number of bar graph elements


def getdigits(value: int) -> int:
    """Number of decimal digits needed to print ``value``."""
    digits = 1
    while value > 9:
        digits += 1
        value //= 10
    return digits


@dataclass
class PerfConfig:
    interface: str = ""
    src: int = NO_CAN_ID
    dst: int = NO_CAN_ID
    ext: bool = False
    extaddr: int = 0
    rx_ext: bool = False
    rx_extaddr: int = 0


def parse_args(argv) -> PerfConfig:
    """Build the monitor configuration from the command line."""
    try:
        opts, args = getopt.getopt(list(argv), "s:d:x:X:?")
    except getopt.GetoptError as exc:
        raise UsageError(str(exc), 0) from None

    cfg = PerfConfig()
    for opt, val in opts:
        if opt == "-s":
            cfg.src = parse_can_id(val)
        elif opt == "-d":
            cfg.dst = parse_can_id(val)
        elif opt == "-x":
            cfg.ext = True
            cfg.extaddr = parse_can_id(val) & 0xFF
        elif opt == "-X":
            cfg.rx_ext = True
            cfg.rx_extaddr = parse_can_id(val) & 0xFF
        else:
            raise UsageError("", 0)

    if len(args) != 1 or cfg.src == NO_CAN_ID or cfg.dst == NO_CAN_ID:
        raise UsageError("", 0)
    cfg.interface = args[0]
    return cfg


class PerfMonitor:
    """Follows one PDU at a time and renders its progress and final throughput."""

    def __init__(self, config: PerfConfig) -> None:
        self.config = config
        self.fflen = 0
        self.rcvlen = 0
        self.fflen_digits = 0
        self.last_sn = 0
        self.bs = 0
        self.stmin = 0
        self.brs = False
        self.ll_dl = 0
        self.canfd_on = True
        self._start = 0

    def _reset(self) -> None:
        self.fflen = self.rcvlen = 0

    def _start_pdu(self, flags: int, length: int, is_fd: bool, stamp_us: int) -> None:
        self.fflen_digits = getdigits(self.fflen)
        self.brs = bool(flags & CANFD_BRS)
        self._start = stamp_us
        self.canfd_on = is_fd

    def process(self, can_id: int, data: bytes, flags: int, is_fd: bool,
                stamp: float) -> str:
        """Take one received frame; returns the text to write to the terminal."""
        cfg = self.config
        length = len(data)
        d = bytes(data).ljust(CANFD_MAX_DLEN, b"\0")
        ext = int(cfg.ext)
        rx_ext = int(cfg.rx_ext)
        stamp_us = round(stamp * 1_000_000)

        # only follow the frame type that started the current PDU
        if self.rcvlen and self.canfd_on != is_fd:
            return ""
        if cfg.ext and cfg.extaddr != d[0]:
            return ""

        if can_id == cfg.dst:
            if cfg.rx_ext and d[0] != cfg.rx_extaddr:
                return ""
            if d[rx_ext] & 0xF0 != 0x30:
                return ""
            self.bs = d[rx_ext + 1]
            self.stmin = d[rx_ext + 2]

        out: list[str] = []
        n_pci = d[ext]
        kind = n_pci & 0xF0

        if kind == 0x00:
            if n_pci & 0xF:
                self.fflen = self.rcvlen = n_pci & 0xF
                datidx = ext + 1
            else:
                self.fflen = self.rcvlen = d[ext + 1]
                datidx = ext + 2
            if length < self.rcvlen + datidx:
                self._reset()
            self._start_pdu(flags, length, is_fd, stamp_us)
            self.ll_dl = max(length, 8)
        elif kind == 0x10:
            fflen = ((n_pci & 0x0F) << 8) + d[ext + 1]
            if fflen:
                datidx = ext + 2
            else:
                fflen = int.from_bytes(d[ext + 2 : ext + 6], "big")
                datidx = ext + 6
            if fflen >= UINT32_MAX // 1000:
                self._reset()
                return f"fflen {fflen} is more than ~4.2 MB - ignoring PDU\n"
            self.fflen = fflen
            # a too short first frame counts as complete, as its length wraps around
            self.rcvlen = length - datidx if length >= datidx else fflen
            self.last_sn = 0
            self._start_pdu(flags, length, is_fd, stamp_us)
            self.ll_dl = length
        elif kind == 0x20 and self.rcvlen:
            sn = n_pci & 0x0F
            if sn == (self.last_sn + 1) & 0xF:
                self.last_sn = sn
                self.rcvlen += length - (ext + 1)

        if self.rcvlen:
            if self.rcvlen > self.fflen:
                self.rcvlen = self.fflen
            if not self.fflen:
                self._reset()
                return "".join(out)
            percent = self.rcvlen * 100 // self.fflen
            bars = min(percent, 100) // PERCENTRES
            out.append(f"\r {percent:3d}% |")
            out.append("X" * bars + "." * (NUMBAR - bars))
            out.append(f"| {self.rcvlen:>{self.fflen_digits}d}/{self.fflen} ")

        if self.rcvlen and self.rcvlen >= self.fflen:
            out.append(self._summary(stamp_us))
            self._reset()
        return "".join(out)

    def _summary(self, end_us: int) -> str:
        mode = "CAN-FD" if self.canfd_on else "CAN2.0"
        parts = [f"\r{mode} {self.ll_dl:02d}{'*' if self.brs else ' '} (BS:{self.bs:2d} # "]
        if self.stmin < 0x80:
            parts.append(f"STmin:{self.stmin:3d} msec)")
        elif 0xF0 < self.stmin < 0xFA:
            parts.append(f"STmin:{(self.stmin & 0xF) * 100:3d} usec)")
        else:
            parts.append("STmin: invalid   )")
        parts.append(f" : {self.fflen} byte in ")

        diff = max(end_us - self._start, 0)
        sec, usec = divmod(diff, 1_000_000)
        millis = sec * 1000 + usec // 1000
        if millis:
            parts.append(f"{sec}.{usec:06d}s ")
            parts.append(f"=> {self.fflen * 1000 // millis} byte/s")
        else:
            parts.append("(no time available)     ")
        parts.append("\n")
        return "".join(parts)

    def timeout(self) -> str:
        """Abort a started transfer after a silent period; returns the notice."""
        if not self.rcvlen:
            return ""
        self._reset()
        return f"\r{' (transmission timed out)':<78}"


def usage(prog: str) -> str:
    return (
        f"{prog} - ISO15765-2 protocol performance visualisation.\n"
        f"\nUsage: {prog} [options] <CAN interface>\n"
        "Options:\n"
        "         -s <can_id>  (source can_id. Use 8 digits for extended IDs)\n"
        "         -d <can_id>  (destination can_id. Use 8 digits for extended IDs)\n"
        "         -x <addr>    (extended addressing mode)\n"
        "         -X <addr>    (extended addressing mode (rx addr))\n"
        "\nCAN IDs and addresses are given and expected in hexadecimal values.\n"
        "\n"
    )


def _single_id_filter(can_id: int) -> bytes:
    if can_id & CAN_EFF_FLAG:
        return struct.pack("=II", can_id & (CAN_EFF_MASK | CAN_EFF_FLAG),
                           CAN_EFF_MASK | CAN_EFF_FLAG | CAN_RTR_FLAG)
    return struct.pack("=II", can_id & CAN_SFF_MASK,
                       CAN_SFF_MASK | CAN_EFF_FLAG | CAN_RTR_FLAG)


def _receive_stamp(sock: socket.socket) -> float:
    try:
        raw = fcntl.ioctl(sock.fileno(), SIOCGSTAMP, struct.pack("@ll", 0, 0))
        sec, usec = struct.unpack("@ll", raw)
        return sec + usec / 1_000_000
    except OSError:
        return time.time()


def main(argv=None) -> int:
    prog = os.path.basename(sys.argv[0] or "isotpperf")
    if argv is None:
        argv = sys.argv[1:]
    try:
        cfg = parse_args(argv)
    except UsageError as exc:
        sys.stderr.write(usage(prog))
        return exc.exit_code

    try:
        sock = socket.socket(socket.PF_CAN, socket.SOCK_RAW, socket.CAN_RAW)
    except OSError as exc:
        print(f"socket: {exc}", file=sys.stderr)
        return 1

    monitor = PerfMonitor(cfg)
    with sock:
        try:
            sock.setsockopt(socket.SOL_CAN_RAW, socket.CAN_RAW_FD_FRAMES, 1)
        except OSError:
            pass
        sock.setsockopt(socket.SOL_CAN_RAW, socket.CAN_RAW_FILTER,
                        _single_id_filter(cfg.src) + _single_id_filter(cfg.dst))
        try:
            sock.bind((cfg.interface,))
        except OSError as exc:
            print(f"bind: {exc}", file=sys.stderr)
            return 1

        try:
            while True:
                try:
                    readable, _, _ = select.select([sock], [], [], 1.0)
                except (OSError, InterruptedError):
                    return 0
                if not readable:
                    notice = monitor.timeout()
                    if notice:
                        sys.stdout.write(notice)
                        sys.stdout.flush()
                    continue
                try:
                    frame = sock.recv(CANFD_MTU)
                except OSError as exc:
                    print(f"read: {exc}", file=sys.stderr)
                    return 1
                if len(frame) not in (CAN_MTU, CANFD_MTU):
                    print(f"read: incomplete CAN frame {CANFD_MTU} {len(frame)}",
                          file=sys.stderr)
                    return 1
                can_id, length, flags = struct.unpack_from("=IBB", frame)
                data = frame[8 : 8 + min(length, len(frame) - 8)]
                text = monitor.process(can_id, data, flags, len(frame) == CANFD_MTU,
                                       _receive_stamp(sock))
                sys.stdout.write(text)
                sys.stdout.flush()
        except KeyboardInterrupt:
            return 0


if __name__ == "__main__":
    sys.exit(main())