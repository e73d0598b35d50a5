"""Dump and explain ISO 15765-2 protocol CAN frames."""

from __future__ import annotations

import fcntl
import getopt
import os
import socket
import struct
import sys
import time
from dataclasses import dataclass, field

from sockcan.cansniffer import ATTRESET, ESC, FGRED
from sockcan.isotprecv import UsageError
from sockcan.isotprecv import parse_can_id as _hex_can_id

NO_CAN_ID = 0xFFFFFFFF
CAN_EFF_FLAG = 0x80000000
CAN_RTR_FLAG = 0x40000000
CAN_SFF_MASK = 0x000007FF
CAN_EFF_MASK = 0x1FFFFFFF
CAN_MTU = 16
CANFD_MTU = 72
CANFD_MAX_DLEN = 64
SIOCGSTAMP = 0x8906

FGBLUE = ESC + "[34m"

FC_INFO = ("CTS", "WT", "OVFLW", "reserved")
TIMESTAMP_MODES = ("a", "A", "d", "z")

_SERVICES = {
    0x10: "DiagnosticSessionControl",
    0x11: "ECUReset",
    0x14: "ClearDiagnosticInformation",
    0x19: "ReadDTCInformation",
    0x22: "ReadDataByIdentifier",
    0x23: "ReadMemoryByAddress",
    0x24: "ReadScalingDataByIdentifier",
    0x27: "SecurityAccess",
    0x28: "CommunicationControl",
    0x2A: "ReadDataByPeriodicIdentifier",
    0x2C: "DynamicallyDefineDataIdentifier",
    0x2E: "WriteDataByIdentifier",
    0x2F: "InputOutputControlByIdentifier",
    0x31: "RoutineControl",
    0x34: "RequestDownload",
    0x35: "RequestUpload",
    0x36: "TransferData",
    0x37: "RequestTransferExit",
    0x38: "RequestFileTransfer",
    0x3D: "WriteMemoryByAddress",
    0x3E: "TesterPresent",
    0x83: "AccessTimingParameter",
    0x84: "SecuredDataTransmision",
    0x85: "ControlDTCSetting",
    0x86: "ResponseOnEvent",
    0x87: "LinkControl",
}

_NRCS = {
    0x00: "positiveResponse",
    0x10: "generalReject",
    0x11: "serviceNotSupported",
    0x12: "sub-functionNotSupported",
    0x13: "incorrectMessageLengthOrInvalidFormat",
    0x14: "responseTooLong",
    0x21: "busyRepeatRequest",
    0x22: "conditionsNotCorrect",
    0x24: "requestSequenceError",
    0x25: "noResponseFromSubnetComponent",
    0x26: "FailurePreventsExecutionOfRequestedAction",
    0x31: "requestOutOfRange",
    0x33: "securityAccessDenied",
    0x35: "invalidKey",
    0x36: "exceedNumberOfAttempts",
    0x37: "requiredTimeDelayNotExpired",
    0x70: "uploadDownloadNotAccepted",
    0x71: "transferDataSuspended",
    0x72: "generalProgrammingFailure",
    0x73: "wrongBlockSequenceCounter",
    0x78: "requestCorrectlyReceived-ResponsePending",
    0x7E: "sub-functionNotSupportedInActiveSession",
    0x7F: "serviceNotSupportedInActiveSession",
    0x81: "rpmTooHigh",
    0x82: "rpmTooLow",
    0x83: "engineIsRunning",
    0x84: "engineIsNotRunning",
    0x85: "engineRunTimeTooLow",
    0x86: "temperatureTooHigh",
    0x87: "temperatureTooLow",
    0x88: "vehicleSpeedTooHigh",
    0x89: "vehicleSpeedTooLow",
    0x8A: "throttle/PedalTooHigh",
    0x8B: "throttle/PedalTooLow",
    0x8C: "transmissionRangeNotInNeutral",
    0x8D: "transmissionRangeNotInGear",
    0x8F: "brakeSwitch(es)NotClosed (Brake Pedal not pressed or not applied)",
    0x90: "shifterLeverNotInPark",
    0x91: "torqueConverterClutchLocked",
    0x92: "voltageTooHigh",
    0x93: "voltageTooLow",
}


def _nrc_name(nrc: int) -> str:
    if nrc in _NRCS:
        return _NRCS[nrc]
    if 0x37 < nrc < 0x50:
        return "reservedByExtendedDataLinkSecurityDocument"
    if 0x93 < nrc < 0xF0:
        return "reservedForSpecificConditionsNotCorrect"
    if 0xEF < nrc < 0xFE:
        return "vehicleManufacturerSpecificConditionsNotCorrect"
    return "ISOSAEReserved"


def uds_description(service: int, nrc: int) -> str:
    """Flag and name of a UDS service byte (and negative response code)."""
    flag = "[???]"
    if 0x50 <= service <= 0x7E or 0xC3 <= service <= 0xC8:
        flag = "[PSR]"
        service -= 0x40
    elif 0x10 <= service <= 0x3E or 0x83 <= service <= 0x88 or 0xBA <= service <= 0xBE:
        flag = "[SRQ]"

    if service == 0x7F:
        return f"[NRC] {_nrc_name(nrc)}"
    return f"{flag} {_SERVICES.get(service, 'Unknown')}"


def parse_can_id(text: str) -> int:
    """Hex CAN id; more than seven characters make it an extended id."""
    return _hex_can_id(text)


@dataclass
class DumpConfig:
    interface: str = ""
    src: int = NO_CAN_ID
    dst: int = NO_CAN_ID
    ext: bool = False
    extaddr: int = 0
    extany: bool = False
    rx_ext: bool = False
    rx_extaddr: int = 0
    rx_extany: bool = False
    asc: bool = False
    color: bool = False
    uds_output: bool = False
    timestamp: str | None = None
    warnings: list[str] = field(default_factory=list)


def parse_args(argv) -> DumpConfig:
    """Build the dump configuration from the command line."""
    try:
        opts, args = getopt.getopt(list(argv), "s:d:ax:X:ct:u?")
    except getopt.GetoptError as exc:
        raise UsageError(str(exc), 0) from None

    cfg = DumpConfig()
    for opt, val in opts:
        if opt == "-s":
            cfg.src = parse_can_id(val)
        elif opt == "-d":
            cfg.dst = parse_can_id(val)
        elif opt == "-c":
            cfg.color = True
        elif opt == "-a":
            cfg.asc = True
        elif opt == "-x":
            cfg.ext = True
            if val.startswith("any"):
                cfg.extany = True
            else:
                cfg.extaddr = parse_can_id(val) & 0xFF
        elif opt == "-X":
            cfg.rx_ext = True
            if val.startswith("any"):
                cfg.rx_extany = True
            else:
                cfg.rx_extaddr = parse_can_id(val) & 0xFF
        elif opt == "-t":
            mode = val[:1]
            if mode in TIMESTAMP_MODES and mode:
                cfg.timestamp = mode
            else:
                cfg.warnings.append(f"unknown timestamp mode '{mode}' - ignored")
                cfg.timestamp = None
        elif opt == "-u":
            cfg.uds_output = True
        else:
            raise UsageError("", 0)

    if cfg.rx_ext and not cfg.ext:
        raise UsageError("", 0)
    if len(args) != 1 or cfg.src == NO_CAN_ID or cfg.dst == NO_CAN_ID:
        raise UsageError("", 0)
    cfg.interface = args[0]
    return cfg


def _pad(text: str, width: int) -> str:
    # printf("%*s") semantics: a negative width left-justifies
    return text.ljust(-width) if width < 0 else text.rjust(width)


def format_frame(config: DumpConfig, interface: str, can_id: int, data: bytes,
                 is_fd: bool) -> str | None:
    """Explain one frame; None when its extended address is filtered out."""
    length = len(data)
    d = bytes(data).ljust(CANFD_MAX_DLEN, b"\0")
    ext = int(config.ext)

    if can_id == config.src and config.ext and not config.extany and config.extaddr != d[0]:
        return None
    if (can_id == config.dst and config.rx_ext and not config.rx_extany
            and config.rx_extaddr != d[0]):
        return None

    if can_id & CAN_EFF_FLAG:
        out = [f" {interface}  {can_id & CAN_EFF_MASK:8X}"]
    else:
        out = [f" {interface}  {can_id & CAN_SFF_MASK:3X}"]
    if config.ext:
        out.append(f"{{{d[0]:02X}}}")
    out.append(f" [{length:02d}]  " if is_fd else f"  [{length}]  ")

    datidx = 0
    is_ff = False
    n_pci = d[ext]
    kind = n_pci & 0xF0
    if kind == 0x00:
        is_ff = True
        if n_pci & 0xF:
            out.append(f"[SF] ln: {n_pci & 0xF:<4d} data:")
            datidx = ext + 1
        else:
            out.append(f"[SF] ln: {d[ext + 1]:<4d} data:")
            datidx = ext + 2
    elif kind == 0x10:
        is_ff = True
        fflen = ((n_pci & 0x0F) << 8) + d[ext + 1]
        if fflen:
            datidx = ext + 2
        else:
            fflen = int.from_bytes(d[ext + 2 : ext + 6], "big")
            datidx = ext + 6
        out.append(f"[FF] ln: {fflen:<4d} data:")
    elif kind == 0x20:
        out.append(f"[CF] sn: {n_pci & 0x0F:X}    data:")
        datidx = ext + 1
    elif kind == 0x30:
        fc = n_pci & 0x0F
        out.append(f"[FC] FC: {fc} = {FC_INFO[min(fc, 3)]} # ")
        bs = d[ext + 1]
        out.append(f"BS: {bs} {'' if bs else '= off '}# ")
        stmin = d[ext + 2]
        out.append(f"STmin: 0x{stmin:02X} = ")
        if stmin < 0x80:
            out.append(f"{stmin} ms")
        elif 0xF0 < stmin < 0xFA:
            out.append(f"{(stmin & 0x0F) * 100} us")
        else:
            out.append("reserved")
    else:
        out.append("[??]")

    if datidx and length > datidx:
        payload = d[datidx:length]
        out.append(" " + "".join(f"{b:02X} " for b in payload))
        width_base = (7 - ext) - (length - datidx)
        if config.asc:
            out.append(_pad("-  '", width_base * 3 + 5))
            out.append("".join(chr(b) if 0x1F < b < 0x7F else "." for b in payload))
            out.append("'")
        if config.uds_output and is_ff:
            offset = 1 if config.asc else 3
            out.append(_pad(" - ", width_base * offset + 3))
            out.append(uds_description(d[datidx], d[datidx + 2]))
    return "".join(out)


@dataclass
class TimestampFormatter:
    """Renders receive times as absolute, dated, delta or zero based stamps."""

    mode: str | None = None
    _last: int = 0

    def format(self, stamp: float) -> str:
        """The timestamp prefix for a frame received at ``stamp`` seconds."""
        if self.mode not in TIMESTAMP_MODES or not self.mode:
            return ""
        us = round(stamp * 1_000_000)
        sec, usec = divmod(us, 1_000_000)
        if self.mode == "a":
            return f"({sec}.{usec:06d}) "
        if self.mode == "A":
            dated = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(sec))
            return f"({dated}.{usec:06d}) "
        if self._last // 1_000_000 == 0:
            self._last = us
        diff = max(us - self._last, 0)
        if self.mode == "d":
            self._last = us
        dsec, dusec = divmod(diff, 1_000_000)
        return f"({dsec}.{dusec:06d}) "


def usage(prog: str) -> str:
    return (
        f"\nUsage: {prog} [options] <CAN interface>\n"
        "Options:\n"
        "         -s <can_id>  (source can_id. Use 8 digits for extended IDs)\n"
        "         -d <can_id>  (destination can_id. Use 8 digits for extended IDs)\n"
        "         -x <addr>    (extended addressing mode. Use 'any' for all addresses)\n"
        "         -X <addr>    (extended addressing mode (rx addr). Use 'any' for all)\n"
        "         -c           (color mode)\n"
        "         -a           (print data also in ASCII-chars)\n"
        "         -t <type>    (timestamp: (a)bsolute/(d)elta/(z)ero/(A)bsolute w date)\n"
        "         -u           (print uds messages)\n"
        "\nCAN IDs and addresses are given and expected in hexadecimal values.\n"
        "\nUDS output contains a flag which provides information about the type of the \n"
        "message.\n\n"
        "Flags:\n"
        "       [SRQ]  = Service Request\n"
        "       [PSR]  = Positive Service Response\n"
        "       [NRC]  = Negative Response Code\n"
        "       [???]  = Unknown (not specified)\n"
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
    prog = os.path.basename(sys.argv[0] or "isotpdump")
    if argv is None:
        argv = sys.argv[1:]
    try:
        cfg = parse_args(argv)
    except UsageError as exc:
        sys.stderr.write(usage(prog))
        return exc.exit_code
    for warning in cfg.warnings:
        print(f"{prog}: {warning}")

    try:
        sock = socket.socket(socket.PF_CAN, socket.SOCK_RAW, socket.CAN_RAW)
    except OSError as exc:
        print(f"socket: {exc}", file=sys.stderr)
        return 1

    stamps = TimestampFormatter(cfg.timestamp)
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
                frame = sock.recv(CANFD_MTU)
                if len(frame) not in (CAN_MTU, CANFD_MTU):
                    print(f"read: incomplete CAN frame {CANFD_MTU} {len(frame)}",
                          file=sys.stderr)
                    return 1
                can_id, length, _flags = struct.unpack_from("=IBB", frame)
                data = frame[8 : 8 + min(length, len(frame) - 8)]
                line = format_frame(cfg, cfg.interface, can_id, data,
                                    len(frame) == CANFD_MTU)
                if line is None:
                    continue
                parts = []
                if cfg.color:
                    parts.append(FGRED if can_id == cfg.src else FGBLUE)
                if cfg.timestamp:
                    parts.append(stamps.format(_receive_stamp(sock)))
                parts.append(line)
                if cfg.color:
                    parts.append(ATTRESET)
                print("".join(parts), flush=True)
        except KeyboardInterrupt:
            return 0
        except OSError as exc:
            print(f"read: {exc}", file=sys.stderr)
            return 1


if __name__ == "__main__":
    sys.exit(main())