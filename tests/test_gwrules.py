import pytest

from sockcan.gwrules import (
    CAN_INV_FILTER,
    MOD_DATA,
    MOD_FLAGS,
    MOD_ID,
    MOD_LEN,
    CanFilter,
    Crc8Checksum,
    Crc8Profile,
    ModInstruction,
    Modification,
    RuleParseError,
    XorChecksum,
    hex_bytes,
    parse_cs_crc8,
    parse_cs_xor,
    parse_crc8_profile,
    parse_fdmod,
    parse_filter,
    parse_mod,
)


def test_hex_bytes_reads_pairs():
    assert hex_bytes("1122334455667788", 8) == bytes.fromhex("1122334455667788")


def test_hex_bytes_rejects_non_hex():
    with pytest.raises(RuleParseError):
        hex_bytes("zz", 1)


def test_filter_parse_and_format():
    f = parse_filter("123:C00007FF")
    assert f == CanFilter(0x123, 0xC00007FF)
    assert f.format() == "-f 123:C00007FF "


def test_inverted_filter():
    f = parse_filter("123~7FF")
    assert f.inverted
    assert f.can_id == 0x123 | CAN_INV_FILTER
    assert f.format() == "-f 123~7FF "


def test_filter_pack_roundtrip():
    f = parse_filter("7E0~7F0")
    assert CanFilter.unpack(f.pack()) == f
    assert len(f.pack()) == 8


def test_filter_bad():
    with pytest.raises(RuleParseError):
        parse_filter("nothing")


def test_mod_example():
    m = parse_mod("SET:IL:333.4.1122334455667788")
    assert m.instruction is ModInstruction.SET
    assert m.modtype == MOD_ID | MOD_LEN
    assert m.can_id == 0x333
    assert m.length == 4
    assert m.data == bytes.fromhex("1122334455667788")
    assert m.format() == "-m SET:IL:333.4.1122334455667788 "
    assert m.attr_type == ModInstruction.SET.value


def test_mod_pack_roundtrip():
    m = parse_mod("XOR:D:7FF.8.FF00FF00FF00FF00")
    packed = m.pack()
    assert len(packed) == 17
    assert Modification.unpack(m.instruction, packed, False) == m


@pytest.mark.parametrize(
    "text,code",
    [
        ("ANDX:I:1.1.0000000000000000", 1),
        ("FOO:I:1.1.0000000000000000", 2),
        ("AND:IIII:1.1.0000000000000000", 3),
        ("AND:Q:1.1.0000000000000000", 4),
        ("AND:I:1", 5),
        ("AND:I:1.1.0011", 6),
        ("AND:I:1.1.00112233445566GG", 7),
    ],
)
def test_mod_errors(text, code):
    with pytest.raises(RuleParseError) as info:
        parse_mod(text)
    assert info.value.code == code


def test_fdmod_roundtrip():
    data = "AB" * 64
    m = parse_fdmod(f"OR:IFLD:123.1.40.{data}")
    assert m.fd
    assert m.modtype == MOD_ID | MOD_FLAGS | MOD_LEN | MOD_DATA
    assert m.flags == 1 and m.length == 0x40
    assert m.format() == f"-M OR:IFLD:123.1.40.{data} "
    packed = m.pack()
    assert len(packed) == 73
    assert Modification.unpack(ModInstruction.OR, packed, True) == m
    assert m.attr_type == ModInstruction.OR.attr_type(True)


def test_fdmod_rejects_short_data():
    with pytest.raises(RuleParseError) as info:
        parse_fdmod("OR:I:123.1.40.AABB")
    assert info.value.code == 6


def test_xor_checksum():
    cs = parse_cs_xor("0:6:7:FA")
    assert cs == XorChecksum(0, 6, 7, 0xFA)
    assert cs.format() == "-x 0:6:7:FA "
    assert XorChecksum.unpack(cs.pack()) == cs


def test_xor_negative_index():
    cs = parse_cs_xor("-1:-2:-3:0")
    assert (cs.from_idx, cs.to_idx, cs.result_idx) == (-1, -2, -3)
    assert XorChecksum.unpack(cs.pack()) == cs


def test_xor_bad():
    with pytest.raises(RuleParseError):
        parse_cs_xor("0:6:7")


def test_crc8_roundtrip():
    table = bytes(range(256))
    cs = parse_cs_crc8("0:6:7:00:FF:" + table.hex())
    assert cs.crctab == table
    assert cs.final_xor_val == 0xFF
    assert Crc8Checksum.unpack(cs.pack()) == cs
    assert cs.format() == "-c 0:6:7:00:FF:" + table.hex().upper() + " "


def test_crc8_short_table():
    with pytest.raises(RuleParseError):
        parse_cs_crc8("0:6:7:00:FF:0011")


def test_profile_one_u8():
    cs = parse_crc8_profile("1:5A", Crc8Checksum(0, 1, 2, 0, 0))
    assert cs.profile == Crc8Profile.ONE_U8
    assert cs.profile_data[0] == 0x5A
    assert cs.format().endswith("-p 1:5A ")


def test_profile_sixteen():
    values = "00112233445566778899AABBCCDDEEFF"
    cs = parse_crc8_profile("2:" + values, Crc8Checksum(0, 1, 2, 0, 0))
    assert cs.profile_data[:16] == bytes.fromhex(values)
    assert cs.format().endswith("-p 2:" + values + " ")


def test_profile_sffid_xor():
    cs = parse_crc8_profile("3", Crc8Checksum(0, 1, 2, 0, 0))
    assert cs.profile == Crc8Profile.SFFID_XOR
    assert cs.format().endswith("-p 3: ")


@pytest.mark.parametrize("text", ["1", "2:0011", "9:00", "x"])
def test_profile_errors(text):
    with pytest.raises(RuleParseError):
        parse_crc8_profile(text, Crc8Checksum(0, 0, 0, 0, 0))