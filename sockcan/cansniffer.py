"""Volatile CAN content visualizer: shows changing payloads per CAN identifier."""

from __future__ import annotations

import fcntl
import getopt
import os
import re
import select
import signal
import socket
import struct
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

from sockcan.isotprecv import UsageError

SETFNAME = "sniffset."
ANYDEV = "any"
MAX_SLOTS = 2048
IFNAMSIZ = 16

TIMEOUT = 500  # in 10ms
HOLD = 100  # in 10ms
LOOP = 20  # in 10ms

CAN_EFF_FLAG = 0x80000000
CAN_SFF_MASK = 0x000007FF
CAN_EFF_MASK = 0x1FFFFFFF
SFF_FLAGS_MASK = 0xFFFF800  # flags are cleared in this mask
MAX_COMMAND = len("+1234567812345678\n")
SETTINGS_RECORD = 29
SIOCGSTAMP = 0x8906

ESC = "\x1b"
CSR_HIDE = ESC + "[?25l"
CSR_SHOW = ESC + "[?25h"
CLR_SCREEN = ESC + "[2J"
CSR_HOME = ESC + "[H"
CSR_DOWN = ESC + "[B"
ATTBOLD = ESC + "[1m"
FGRED = ESC + "[31m"
ATTRESET = ESC + "[0m"
ATTCOLOR = ATTBOLD + FGRED

LDL = " | "  # long delimiter
SDL = "|"  # short delimiter for binary on 80 chars terminal

_FRAME = struct.Struct("=IB3x8s")
_HEX = re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)")
_DEC = re.compile(r"\s*([+-]?)([0-9]+)")


def _number(pattern: re.Pattern, text: str, base: int) -> int | None:
    m = pattern.match(text)
    if not m:
        return None
    value = int(m.group(2), base)
    return -value if m.group(1) == "-" else value


def _hex(text: str) -> int | None:
    value = _number(_HEX, text, 16)
    return None if value is None else value & 0xFFFFFFFF


@dataclass
class SniffSlot:
    """State of one CAN identifier on the screen; stamps are in microseconds."""

    can_id: int
    enabled: bool = True
    dlc: int = 0
    data: bytes = bytes(8)
    last_dlc: int = 0
    last_data: bytes = bytes(8)
    marker: bytearray = field(default_factory=lambda: bytearray(8))
    notch: bytearray = field(default_factory=lambda: bytearray(8))
    displayed: bool = False
    update: bool = False
    hold: int = 0
    timeout: int = 0
    laststamp: int = 0
    currstamp: int = 0


@dataclass
class Sniffer:
    """Slot table and display settings; times given as ``now`` are in 10ms."""

    interface: str = ""
    timeout: int = TIMEOUT
    hold: int = HOLD
    loop: int = LOOP
    print_eff: bool = False
    binary: bool = False
    binary8: bool = False
    binary_gap: bool = False
    color: bool = False
    default_enable: bool = True
    settings_dir: str = "."
    slots: list[SniffSlot] = field(default_factory=list)
    clearscreen: bool = True
    notch: bool = False
    running: bool = True
    vdl: str = LDL
    frame_count: int = 0

    def switch_vdl(self, delim: str) -> None:
        # a short delimiter keeps EFF binary lines within 80 chars
        if self.binary8:
            self.vdl = delim

    def index(self, can_id: int) -> SniffSlot | None:
        """The slot of ``can_id``, or None."""
        return next((s for s in self.slots if s.can_id == can_id), None)

    def modify(self, value: int, mask: int, enable: bool) -> None:
        """Enable or disable every slot whose id matches ``value`` under ``mask``."""
        for slot in self.slots:
            if slot.can_id & mask == value & mask:
                slot.enabled = enable

    def handle_command(self, line: str) -> None:
        """Apply one line typed by the user."""
        text = line[:-1] if line.endswith("\n") else line
        if len(text) + 1 > MAX_COMMAND:
            return
        cmd, arg = text[:1], text[1:]
        clen = len(arg)

        if cmd in ("+", "-") and cmd:
            enable = cmd == "+"
            if clen == 6:
                value = _hex(arg)
                if value is not None:
                    self.modify((value >> 12) & 0x7FF, value | SFF_FLAGS_MASK, enable)
            elif clen == 16:
                mask = _hex(arg[8:])
                value = _hex(arg[:8])
                if mask is not None and value is not None:
                    self.modify(value | CAN_EFF_FLAG, mask | CAN_EFF_FLAG, enable)
            elif clen in (3, 8):
                value = _hex(arg)
                if value is not None:
                    if clen == 8:
                        value |= CAN_EFF_FLAG
                    slot = self.index(value)
                    if slot is not None:
                        slot.enabled = enable
        elif cmd == "a":
            self.modify(0, SFF_FLAGS_MASK, True)
        elif cmd == "n":
            self.modify(0, SFF_FLAGS_MASK, False)
        elif cmd == "A":
            self.modify(CAN_EFF_FLAG, CAN_EFF_FLAG, True)
        elif cmd == "N":
            self.modify(CAN_EFF_FLAG, CAN_EFF_FLAG, False)
        elif cmd == "w":
            try:
                self.write_settings(arg)
            except OSError:
                print(f"unable to write setting file '{self._settings_name(arg)}'!")
        elif cmd == "r":
            try:
                self.read_settings(arg)
            except OSError:
                pass
        elif cmd == "q":
            self.running = False
        elif cmd == "B":
            self.binary_gap = True
            self.switch_vdl(LDL)
            self.binary = not self.binary
        elif cmd in ("8", "b"):
            if cmd == "8":
                self.binary8 = True
            self.binary_gap = False
            self.binary = not self.binary
            self.switch_vdl(SDL if self.binary else LDL)
        elif cmd == "c":
            self.color = not self.color
        elif cmd == "#":
            self.notch = True
        elif cmd == "*":
            for slot in self.slots:
                slot.notch[:] = bytes(8)

        self.clearscreen = True

    def handle_frame(self, can_id: int, data: bytes, stamp: float | None, now: int) -> None:
        """Take one received classic CAN frame; ``stamp`` is in seconds."""
        data = bytes(data)[:8]
        if stamp is None:
            stamp = time.time()

        if not self.print_eff and can_id & CAN_EFF_FLAG:
            self.print_eff = True
            self.clearscreen = True

        rx_changed = False
        new_slot = False
        slot = self.index(can_id)
        if slot is None:
            if len(self.slots) >= MAX_SLOTS:
                raise OverflowError("number of different CAN IDs exceeded MAX_SLOTS")
            slot = SniffSlot(can_id, enabled=self.default_enable)
            self.slots.append(slot)
            rx_changed = new_slot = True
        elif len(data) != slot.dlc or data != slot.data[: slot.dlc]:
            rx_changed = True

        # print the frame even without changes to get a gap time
        if slot.laststamp == 0:
            rx_changed = True

        if rx_changed:
            slot.laststamp = slot.currstamp
            slot.currstamp = round(stamp * 1_000_000)
            slot.dlc = len(data)
            slot.data = data.ljust(8, b"\0")
            for i, (cur, last) in enumerate(zip(slot.data, slot.last_data)):
                slot.marker[i] |= cur ^ last
            slot.timeout = now + self.timeout if self.timeout else 0
            if not slot.displayed:
                self.clearscreen = True
            slot.displayed = True
            slot.update = True

        if new_slot:
            self.slots.sort(key=lambda s: s.can_id)

    def handle_timeout(self, now: int) -> str:
        """Redraw what needs redrawing; returns the terminal output."""
        out = []
        force_redraw = False
        if self.clearscreen:
            if self.print_eff:
                out.append(f"{CLR_SCREEN}{CSR_HOME}XX|ms{self.vdl}-- ID --{self.vdl}"
                           f"data ...     < {self.interface} # l={self.loop} "
                           f"h={self.hold} t={self.timeout} slots={len(self.slots)} >")
            else:
                out.append(f"{CLR_SCREEN}{CSR_HOME}XX|ms{LDL}ID {LDL}"
                           f"data ...     < {self.interface} # l={self.loop} "
                           f"h={self.hold} t={self.timeout} slots={len(self.slots)} >")
            force_redraw = True
            self.clearscreen = False

        if self.notch:
            for slot in self.slots:
                for i, bits in enumerate(slot.marker):
                    slot.notch[i] |= bits
            self.notch = False

        out.append(CSR_HOME)
        out.append(f"{self.frame_count:02d}\n")
        self.frame_count = (self.frame_count + 1) % 100

        for slot in self.slots:
            if not slot.enabled:
                continue
            if slot.displayed:
                if slot.update or force_redraw:
                    out.append(self.format_line(slot))
                    slot.hold = now + self.hold
                    slot.update = False
                elif slot.hold and slot.hold < now:
                    slot.marker[:] = bytes(8)
                    out.append(self.format_line(slot))
                    slot.hold = 0
                else:
                    out.append(CSR_DOWN)

                if slot.timeout and slot.timeout < now:
                    slot.displayed = False
                    slot.update = False
                    self.clearscreen = True
            slot.last_dlc = slot.dlc
            slot.last_data = slot.data
        return "".join(out)

    def format_line(self, slot: SniffSlot) -> str:
        """One screen line for ``slot``; clears its change marker."""
        diff = slot.currstamp - slot.laststamp
        diffsec, diffusec = divmod(diff, 1_000_000) if diff >= 0 else (0, 0)
        if diffsec >= 100:
            diffsec, diffusec = 99, 999999
        dlc_diff = slot.last_dlc - slot.dlc
        gap = f"{diffsec:02d}{diffusec // 1000:03d}"

        cid = slot.can_id
        if cid & CAN_EFF_FLAG:
            out = [f"{gap}{self.vdl}{cid & CAN_EFF_MASK:08X}{self.vdl}"]
        elif self.print_eff:
            out = [f"{gap}{self.vdl}---- {cid & CAN_SFF_MASK:03X}{self.vdl}"]
        else:
            out = [f"{gap}{LDL}{cid & CAN_SFF_MASK:03X}{LDL}"]

        payload = slot.data[: slot.dlc]
        if self.binary:
            for i, byte in enumerate(payload):
                for bit in range(7, -1, -1):
                    digit = "1" if byte & (1 << bit) else "0"
                    if (self.color and slot.marker[i] & (1 << bit)
                            and not slot.notch[i] & (1 << bit)):
                        out.append(f"{ATTCOLOR}{digit}{ATTRESET}")
                    else:
                        out.append(digit)
                if self.binary_gap:
                    out.append(" ")
            for _ in range(dlc_diff):
                out.append("        " + (" " if self.binary_gap else ""))
        else:
            highlighted = [self.color and bool(slot.marker[i] & ~slot.notch[i])
                           for i in range(len(payload))]
            for byte, hl in zip(payload, highlighted):
                out.append(f"{ATTCOLOR}{byte:02X}{ATTRESET} " if hl else f"{byte:02X} ")
            if len(payload) < 8:
                out.append(" " * ((8 - len(payload)) * 3))
            for byte, hl in zip(payload, highlighted):
                if 0x1F < byte < 0x7F:
                    out.append(f"{ATTCOLOR}{chr(byte)}{ATTRESET}" if hl else chr(byte))
                else:
                    out.append(".")
            out.append(" " * max(dlc_diff, 0))

        out.append("\n")
        slot.marker[:] = bytes(8)
        return "".join(out)

    def _settings_name(self, name: str) -> str:
        return (SETFNAME + name)[:SETTINGS_RECORD]

    def _settings_path(self, name: str) -> Path:
        return Path(self.settings_dir) / self._settings_name(name)

    def write_settings(self, name: str) -> None:
        """Store ids, enable state and notches in the settings file ``name``."""
        records = "".join(
            f"<{slot.can_id:08X}>{'1' if slot.enabled else '0'}.{slot.notch.hex().upper()}\n"
            for slot in self.slots
        )
        fd = os.open(self._settings_path(name), os.O_WRONLY | os.O_CREAT, 0o644)
        with os.fdopen(fd, "wb") as fh:
            fh.write(records.encode("ascii"))

    def read_settings(self, name: str) -> int:
        """Replace the slot table from the settings file; returns the slot count."""
        with open(self._settings_path(name), "rb") as fh:
            content = fh.read()
        slots = []
        for pos in range(0, len(content) - SETTINGS_RECORD + 1, SETTINGS_RECORD):
            record = content[pos : pos + SETTINGS_RECORD]
            text = record.decode("latin-1")
            can_id = _hex(text[1:]) or 0
            notch = bytearray(
                (_hex(text[2 * j + 12 : 2 * j + 14]) or 0) & 0xFF for j in range(8)
            )
            slots.append(SniffSlot(can_id, enabled=bool(record[10] & 1), notch=notch))
            if len(slots) >= MAX_SLOTS:
                break
        self.slots = slots
        return len(slots)


MANUAL = (
    "commands that can be entered at runtime:\n"
    " q<ENTER>        - quit\n"
    " b<ENTER>        - toggle binary / HEX-ASCII output\n"
    " 8<ENTER>        - toggle binary / HEX-ASCII output (small for EFF on 80 chars)\n"
    " B<ENTER>        - toggle binary with gap / HEX-ASCII output (exceeds 80 chars!)\n"
    " c<ENTER>        - toggle color mode\n"
    " <SPACE><ENTER>  - force a clear screen\n"
    " #<ENTER>        - notch currently marked/changed bits (can be used repeatedly)\n"
    " *<ENTER>        - clear notched marked\n"
    " rMYNAME<ENTER>  - read settings file (filter/notch)\n"
    " wMYNAME<ENTER>  - write settings file (filter/notch)\n"
    " a<ENTER>        - enable 'a'll SFF CAN-IDs to sniff\n"
    " n<ENTER>        - enable 'n'one SFF CAN-IDs to sniff\n"
    " A<ENTER>        - enable 'A'll EFF CAN-IDs to sniff\n"
    " N<ENTER>        - enable 'N'one EFF CAN-IDs to sniff\n"
    " +FILTER<ENTER>  - add CAN-IDs to sniff\n"
    " -FILTER<ENTER>  - remove CAN-IDs to sniff\n"
    "\n"
    "FILTER can be a single CAN-ID or a CAN-ID/Bitmask:\n"
    "\n"
    " single SFF 11 bit IDs:\n"
    "  +1F5<ENTER>               - add SFF CAN-ID 0x1F5\n"
    "  -42E<ENTER>               - remove SFF CAN-ID 0x42E\n"
    "\n"
    " single EFF 29 bit IDs:\n"
    "  +18FEDF55<ENTER>          - add EFF CAN-ID 0x18FEDF55\n"
    "  -00000090<ENTER>          - remove EFF CAN-ID 0x00000090\n"
    "\n"
    " CAN-ID/Bitmask SFF:\n"
    "  -42E7FF<ENTER>            - remove SFF CAN-ID 0x42E (using Bitmask)\n"
    "  -500700<ENTER>            - remove SFF CAN-IDs 0x500 - 0x5FF\n"
    "  +400600<ENTER>            - add SFF CAN-IDs 0x400 - 0x5FF\n"
    "  +000000<ENTER>            - add all SFF CAN-IDs\n"
    "  -000000<ENTER>            - remove all SFF CAN-IDs\n"
    "\n"
    " CAN-ID/Bitmask EFF:\n"
    "  -0000000000000000<ENTER>  - remove all EFF CAN-IDs\n"
    "  +12345678000000FF<ENTER>  - add EFF CAN IDs xxxxxx78\n"
    "  +0000000000000000<ENTER>  - add all EFF CAN-IDs\n"
    "\n"
    "if (id & filter) == (sniff-id & filter) the action (+/-) is performed,\n"
    "which is quite easy when the filter is 000 resp. 00000000 for EFF.\n"
    "\n"
)


def usage(prog: str) -> str:
    return (
        f"{prog} - volatile CAN content visualizer.\n"
        f"\nUsage: {prog} [can-interface]\n"
        "Options:\n"
        "         -q          (quiet - all IDs deactivated)\n"
        f"         -r <name>   (read {SETFNAME}name from file)\n"
        "         -e          (fix extended frame format output - no auto detect)\n"
        "         -b          (start with binary mode)\n"
        "         -8          (start with binary mode - for EFF on 80 chars)\n"
        "         -B          (start with binary mode with gap - exceeds 80 chars!)\n"
        "         -c          (color changes)\n"
        f"         -t <time>   (timeout for ID display [x10ms] default: {TIMEOUT}, 0 = OFF)\n"
        f"         -h <time>   (hold marker on changes [x10ms] default: {HOLD})\n"
        f"         -l <time>   (loop time (display) [x10ms] default: {LOOP})\n"
        "         -?          (print this help text)\n"
        f"Use interface name '{ANYDEV}' to receive from all can-interfaces.\n"
        "\n" + MANUAL
    )


def parse_args(argv) -> Sniffer:
    """Build a configured sniffer from the command line."""
    try:
        opts, args = getopt.getopt(list(argv), "r:t:h:l:qeb8Bc?")
    except getopt.GetoptError:
        raise UsageError("", 0) from None

    sniffer = Sniffer()
    quiet = False
    for opt, val in opts:
        if opt == "-r":
            try:
                sniffer.read_settings(val)
            except OSError:
                raise UsageError(
                    f"Unable to read setting file '{SETFNAME}{val}'!", 1) from None
        elif opt in ("-t", "-h", "-l"):
            value = _number(_DEC, val, 10)
            if value is not None:
                setattr(sniffer, {"-t": "timeout", "-h": "hold", "-l": "loop"}[opt], value)
        elif opt == "-q":
            quiet = True
        elif opt == "-e":
            sniffer.print_eff = True
        elif opt == "-b":
            sniffer.binary = True
            sniffer.binary_gap = False
        elif opt == "-8":
            sniffer.binary = True
            sniffer.binary8 = True
            sniffer.switch_vdl(SDL)
            sniffer.binary_gap = False
        elif opt == "-B":
            sniffer.binary = True
            sniffer.binary_gap = True
        elif opt == "-c":
            sniffer.color = True
        else:
            raise UsageError("", 0)

    if not args:
        raise UsageError("", 0)
    if quiet:
        sniffer.default_enable = False
        for slot in sniffer.slots:
            slot.enabled = False
    if len(args[0]) >= IFNAMSIZ:
        raise UsageError(f"name of CAN device '{args[0]}' is too long!", 1)
    sniffer.interface = args[0]
    return sniffer


def _receive_stamp(sock: socket.socket) -> float:
    try:
        raw = fcntl.ioctl(sock.fileno(), SIOCGSTAMP, struct.pack("@ll", 0, 0))
        sec, usec = struct.unpack("@ll", raw)
        return sec + usec / 1_000_000
    except OSError:
        return time.time()


def main(argv=None) -> int:
    prog = os.path.basename(sys.argv[0] or "cansniffer")
    if argv is None:
        argv = sys.argv[1:]
    try:
        sniffer = parse_args(argv)
    except UsageError as exc:
        if exc.message:
            print(exc.message, file=sys.stderr)
        else:
            sys.stderr.write(usage(prog))
        return exc.exit_code

    def _stop(signo, frame):
        sniffer.running = False

    for sig in (signal.SIGTERM, signal.SIGHUP, signal.SIGINT):
        signal.signal(sig, _stop)

    try:
        sock = socket.socket(socket.PF_CAN, socket.SOCK_RAW, socket.CAN_RAW)
    except OSError as exc:
        print(f"socket: {exc}", file=sys.stderr)
        return 1

    with sock:
        ifname = "" if sniffer.interface == ANYDEV else sniffer.interface
        try:
            sock.bind((ifname,))
        except OSError as exc:
            print(f"connect: {exc}", file=sys.stderr)
            return 1

        start = time.monotonic()
        lastcms = 0
        watched = [sys.stdin, sock]
        sys.stdout.write(CSR_HIDE)
        sys.stdout.flush()
        try:
            while sniffer.running:
                try:
                    readable, _, _ = select.select(watched, [], [], sniffer.loop / 100)
                except (OSError, InterruptedError):
                    break
                currcms = int((time.monotonic() - start) * 100)

                if sys.stdin in readable:
                    raw = os.read(sys.stdin.fileno(), 24)
                    if raw:
                        sniffer.handle_command(raw.decode("latin-1"))
                    else:
                        watched.remove(sys.stdin)

                if sock in readable:
                    frame = sock.recv(72)
                    if len(frame) != _FRAME.size:
                        print(f"received strange frame data length {len(frame)}!")
                        break
                    can_id, dlc, payload = _FRAME.unpack(frame)
                    try:
                        sniffer.handle_frame(can_id, payload[: min(dlc, 8)],
                                             _receive_stamp(sock), currcms)
                    except OverflowError as exc:
                        print(exc, file=sys.stderr)
                        break

                if currcms - lastcms >= sniffer.loop:
                    sys.stdout.write(sniffer.handle_timeout(currcms))
                    sys.stdout.flush()
                    lastcms = currcms
        except KeyboardInterrupt:
            pass
        finally:
            sys.stdout.write(CSR_SHOW)
            sys.stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())