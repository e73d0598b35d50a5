"""Rule elements of the CAN gateway: filters, frame modifications and checksums.

Each element can be parsed from its command line form, packed into the
netlink attribute payload the kernel expects, unpacked from such a payload
and formatted back into the command line form.
"""

from __future__ import annotations

import dataclasses
import re
import struct
from dataclasses import dataclass, field
from enum import IntEnum

CAN_INV_FILTER = 0x20000000
CAN_MAX_DLEN = 8
CANFD_MAX_DLEN = 64

MOD_ID = 0x01
MOD_LEN = 0x02
MOD_DLC = MOD_LEN
MOD_DATA = 0x04
MOD_FLAGS = 0x08

FDMOD_OFFSET = 14  # CGW_FDMOD_AND - CGW_MOD_AND

_MOD_STRUCT = struct.Struct("=IB3x8sB")
_FDMOD_STRUCT = struct.Struct("=IBB2x64sB")
_FILTER_STRUCT = struct.Struct("=II")
_XOR_STRUCT = struct.Struct("=bbbB")
_CRC8_STRUCT = struct.Struct("=bbbBB256sB20s")

_HEX = re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)")
_DEC = re.compile(r"\s*([+-]?)([0-9]+)")
_PAIR = re.compile(r"\s*[0-9a-fA-F]{1,2}")


class RuleParseError(ValueError):
    """A rule element could not be parsed; ``code`` tells which step failed."""

    def __init__(self, message: str, code: int = 1) -> None:
        super().__init__(message)
        self.code = code


class ModInstruction(IntEnum):
    """Modification operations; the value is the classic CAN attribute type."""

    AND = 1
    OR = 2
    XOR = 3
    SET = 4

    def attr_type(self, fd: bool) -> int:
        return self.value + FDMOD_OFFSET if fd else self.value

    @classmethod
    def from_attr_type(cls, attr_type: int) -> tuple[ModInstruction, bool]:
        if attr_type > FDMOD_OFFSET:
            return cls(attr_type - FDMOD_OFFSET), True
        return cls(attr_type), False


class Crc8Profile(IntEnum):
    UNSPEC = 0
    ONE_U8 = 1
    SIXTEEN_U8 = 2
    SFFID_XOR = 3


def _scan(pattern: re.Pattern, text: str, pos: int, bits: int, signed: bool = False):
    """Scan one integer like sscanf would, truncating to ``bits`` bits."""
    m = pattern.match(text, pos)
    if not m:
        return None
    base = 16 if pattern is _HEX else 10
    value = int(m.group(2), base)
    if m.group(1) == "-":
        value = -value
    value &= (1 << bits) - 1
    if signed and value >= 1 << (bits - 1):
        value -= 1 << bits
    return value, m.end()


def _literal(text: str, pos: int, char: str) -> int | None:
    if pos < len(text) and text[pos] == char:
        return pos + 1
    return None


def _word(text: str, pos: int, width: int) -> str:
    rest = text[pos:].lstrip()
    token = rest.split(None, 1)[0] if rest.strip() else ""
    return token[:width]


def hex_bytes(text: str, count: int) -> bytes:
    """Read ``count`` bytes given as consecutive two-digit hex values."""
    out = bytearray()
    for n in range(count):
        chunk = text[2 * n : 2 * n + 2]
        m = _PAIR.match(chunk)
        if not m:
            raise RuleParseError(f"bad hex value {chunk!r}")
        out.append(int(m.group().strip(), 16))
    return bytes(out)


@dataclass(frozen=True)
class CanFilter:
    """CAN identifier filter; ``can_id`` carries the inversion flag."""

    can_id: int
    mask: int

    @property
    def inverted(self) -> bool:
        return bool(self.can_id & CAN_INV_FILTER)

    def pack(self) -> bytes:
        return _FILTER_STRUCT.pack(self.can_id, self.mask)

    @classmethod
    def unpack(cls, data: bytes) -> CanFilter:
        return cls(*_FILTER_STRUCT.unpack_from(data))

    def format(self) -> str:
        if self.inverted:
            return f"-f {self.can_id & ~CAN_INV_FILTER:03X}~{self.mask:X} "
        return f"-f {self.can_id:03X}:{self.mask:X} "


def parse_filter(text: str) -> CanFilter:
    """Parse ``<id>:<mask>`` or the inverted form ``<id>~<mask>``."""
    for sep, inv in ((":", 0), ("~", CAN_INV_FILTER)):
        first = _scan(_HEX, text, 0, 32)
        if not first:
            break
        pos = _literal(text, first[1], sep)
        if pos is None:
            continue
        second = _scan(_HEX, text, pos, 32)
        if second:
            return CanFilter(first[0] | inv, second[0])
    raise RuleParseError(f"Bad filter definition '{text}'.")


@dataclass(frozen=True)
class Modification:
    """A classic CAN or CAN FD frame modification."""

    instruction: ModInstruction
    modtype: int
    can_id: int
    length: int
    data: bytes
    flags: int = 0
    fd: bool = False

    @property
    def attr_type(self) -> int:
        return self.instruction.attr_type(self.fd)

    def pack(self) -> bytes:
        if self.fd:
            return _FDMOD_STRUCT.pack(self.can_id, self.length, self.flags,
                                      self.data, self.modtype)
        return _MOD_STRUCT.pack(self.can_id, self.length, self.data, self.modtype)

    @classmethod
    def unpack(cls, instruction, data: bytes, fd: bool) -> Modification:
        instruction = ModInstruction(instruction)
        if fd:
            can_id, length, flags, payload, modtype = _FDMOD_STRUCT.unpack_from(data)
            return cls(instruction, modtype, can_id, length, payload, flags, True)
        can_id, length, payload, modtype = _MOD_STRUCT.unpack_from(data)
        return cls(instruction, modtype, can_id, length, payload)

    def format(self) -> str:
        letters = "".join(
            letter for bit, letter, used in (
                (MOD_ID, "I", True),
                (MOD_FLAGS, "F", self.fd),
                (MOD_LEN, "L", True),
                (MOD_DATA, "D", True),
            ) if used and self.modtype & bit
        )
        if self.fd:
            head = f"-M {self.instruction.name}:{letters}:{self.can_id:03X}.{self.flags:X}.{self.length:X}."
        else:
            head = f"-m {self.instruction.name}:{letters}:{self.can_id:03X}.{self.length:X}."
        return head + self.data.hex().upper() + " "


def _parse_modification(text: str, fd: bool) -> Modification:
    colon = text.find(":")
    if colon <= 0 or colon > 3:
        raise RuleParseError(f"bad instruction in '{text}'", 1)
    for name in ("AND", "OR", "XOR", "SET"):
        if text.startswith(name):
            instruction = ModInstruction[name]
            break
    else:
        raise RuleParseError(f"unknown instruction in '{text}'", 2)

    rest = text[colon + 1 :]
    colon = rest.find(":")
    if colon <= 0 or colon > (4 if fd else 3):
        raise RuleParseError(f"bad frame elements in '{text}'", 3)
    letters = {"I": MOD_ID, "L": MOD_LEN, "D": MOD_DATA}
    if fd:
        letters["F"] = MOD_FLAGS
    modtype = 0
    for ch in rest[:colon]:
        if ch not in letters:
            raise RuleParseError(f"unknown frame element {ch!r}", 4)
        modtype |= letters[ch]

    body = rest[colon + 1 :]
    fields = []
    pos = 0
    for bits in (32, 8, 8) if fd else (32, 8):
        scanned = _scan(_HEX, body, pos, bits)
        pos = None if not scanned else _literal(body, scanned[1], ".")
        if pos is None:
            raise RuleParseError(f"bad frame values in '{text}'", 5)
        fields.append(scanned[0])
    dlen = CANFD_MAX_DLEN if fd else CAN_MAX_DLEN
    hexdata = _word(body, pos, dlen * 2)
    if not hexdata:
        raise RuleParseError(f"bad frame values in '{text}'", 5)
    if len(hexdata) != dlen * 2:
        raise RuleParseError(f"data must be {dlen} bytes", 6)
    try:
        data = hex_bytes(hexdata, dlen)
    except RuleParseError as exc:
        raise RuleParseError(str(exc), 7) from None

    if fd:
        can_id, flags, length = fields
        return Modification(instruction, modtype, can_id, length, data, flags, True)
    can_id, length = fields
    return Modification(instruction, modtype, can_id, length, data)


def parse_mod(text: str) -> Modification:
    """Parse ``<instr>:<elements>:<id>.<dlc>.<data>`` for classic CAN."""
    return _parse_modification(text, fd=False)


def parse_fdmod(text: str) -> Modification:
    """Parse ``<instr>:<elements>:<id>.<flags>.<len>.<data>`` for CAN FD."""
    return _parse_modification(text, fd=True)


@dataclass(frozen=True)
class XorChecksum:
    from_idx: int
    to_idx: int
    result_idx: int
    init_xor_val: int

    def pack(self) -> bytes:
        return _XOR_STRUCT.pack(self.from_idx, self.to_idx, self.result_idx,
                                self.init_xor_val)

    @classmethod
    def unpack(cls, data: bytes) -> XorChecksum:
        return cls(*_XOR_STRUCT.unpack_from(data))

    def format(self) -> str:
        return (f"-x {self.from_idx}:{self.to_idx}:{self.result_idx}:"
                f"{self.init_xor_val:02X} ")


def _scan_indices(text: str, what: str):
    values = []
    pos = 0
    for n in range(3):
        scanned = _scan(_DEC, text, pos, 8, signed=True)
        pos = None if not scanned else _literal(text, scanned[1], ":")
        if pos is None:
            raise RuleParseError(f"Bad {what} checksum definition '{text}'.")
        values.append(scanned[0])
    return values, pos


def parse_cs_xor(text: str) -> XorChecksum:
    """Parse ``<from>:<to>:<result>:<init_xor_val>``."""
    values, pos = _scan_indices(text, "XOR")
    scanned = _scan(_HEX, text, pos, 8)
    if not scanned:
        raise RuleParseError(f"Bad XOR checksum definition '{text}'.")
    return XorChecksum(*values, scanned[0])


@dataclass(frozen=True)
class Crc8Checksum:
    from_idx: int
    to_idx: int
    result_idx: int
    init_crc_val: int
    final_xor_val: int
    crctab: bytes = bytes(256)
    profile: int = Crc8Profile.UNSPEC
    profile_data: bytes = field(default=bytes(20))

    def pack(self) -> bytes:
        return _CRC8_STRUCT.pack(self.from_idx, self.to_idx, self.result_idx,
                                 self.init_crc_val, self.final_xor_val,
                                 self.crctab, self.profile, self.profile_data)

    @classmethod
    def unpack(cls, data: bytes) -> Crc8Checksum:
        return cls(*_CRC8_STRUCT.unpack_from(data))

    def format(self) -> str:
        text = (f"-c {self.from_idx}:{self.to_idx}:{self.result_idx}:"
                f"{self.init_crc_val:02X}:{self.final_xor_val:02X}:"
                f"{self.crctab.hex().upper()} ")
        if self.profile == Crc8Profile.UNSPEC:
            return text
        text += f"-p {self.profile}:"
        if self.profile == Crc8Profile.ONE_U8:
            text += f"{self.profile_data[0]:02X}"
        elif self.profile == Crc8Profile.SIXTEEN_U8:
            text += self.profile_data[:16].hex().upper()
        elif self.profile != Crc8Profile.SFFID_XOR:
            text += f"<unknown profile #{self.profile}>"
        return text + " "


def parse_cs_crc8(text: str) -> Crc8Checksum:
    """Parse ``<from>:<to>:<result>:<init>:<xor>:<crctab as 512 hex digits>``."""
    bad = RuleParseError(f"Bad CRC8 checksum definition '{text}'.")
    values, pos = _scan_indices(text, "CRC8")
    hexvals = []
    for _ in range(2):
        scanned = _scan(_HEX, text, pos, 8)
        pos = None if not scanned else _literal(text, scanned[1], ":")
        if pos is None:
            raise bad
        hexvals.append(scanned[0])
    table = _word(text, pos, 512)
    if len(table) != 512:
        raise bad
    try:
        crctab = hex_bytes(table, 256)
    except RuleParseError:
        raise bad from None
    return Crc8Checksum(*values, *hexvals, crctab)


def parse_crc8_profile(text: str, checksum: Crc8Checksum | None = None) -> Crc8Checksum:
    """Parse ``<profile>:[<data>]`` and return ``checksum`` with it applied."""
    if checksum is None:
        checksum = Crc8Checksum(0, 0, 0, 0, 0)
    bad = RuleParseError(f"Bad CRC8 profile definition '{text}'.")
    scanned = _scan(_DEC, text, 0, 8)
    if not scanned:
        raise bad
    profile, pos = scanned
    data = bytearray(checksum.profile_data)
    if profile == Crc8Profile.ONE_U8:
        pos = _literal(text, pos, ":")
        value = None if pos is None else _HEX.match(text, pos)
        if not value or len(value.group(2)) == 0:
            raise bad
        m = re.compile(r"\s*[0-9a-fA-F]{1,2}").match(text, pos)
        if not m:
            raise bad
        data[0] = int(m.group().strip(), 16)
    elif profile == Crc8Profile.SIXTEEN_U8:
        colon = text.find(":")
        if colon < 0 or len(text) - colon != 33:
            raise bad
        data[:16] = hex_bytes(text[colon + 1 :], 16)
    elif profile != Crc8Profile.SFFID_XOR:
        raise bad
    return dataclasses.replace(checksum, profile=profile, profile_data=bytes(data))