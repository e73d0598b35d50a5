import pytest

from sockcan.cansniffer import (
    ATTCOLOR,
    CAN_EFF_FLAG,
    CLR_SCREEN,
    CSR_DOWN,
    LDL,
    MAX_SLOTS,
    SDL,
    SETTINGS_RECORD,
    Sniffer,
    parse_args,
)
from sockcan.isotprecv import UsageError


def _sniffer(tmp_path=None, **kwargs):
    if tmp_path is not None:
        kwargs["settings_dir"] = str(tmp_path)
    return Sniffer(interface="vcan0", **kwargs)


def test_new_slots_are_sorted_by_id():
    s = _sniffer()
    for cid in (0x300, 0x100, 0x200):
        s.handle_frame(cid, b"\x01", 1.0, 0)
    assert [slot.can_id for slot in s.slots] == [0x100, 0x200, 0x300]


def test_index_finds_existing_slot_only():
    s = _sniffer()
    s.handle_frame(0x123, b"\x01", 1.0, 0)
    assert s.index(0x123).can_id == 0x123
    assert s.index(0x124) is None


def test_eff_frame_switches_eff_display():
    s = _sniffer()
    s.clearscreen = False
    assert s.print_eff is False
    s.handle_frame(0x18FEDF55 | CAN_EFF_FLAG, b"\x01", 1.0, 0)
    assert s.print_eff is True
    assert s.clearscreen is True


def test_gap_time_and_hex_line():
    s = _sniffer()
    s.handle_frame(0x123, b"AB", 1.0, 0)
    s.handle_frame(0x123, b"AC", 1.25, 0)
    line = s.format_line(s.index(0x123))
    assert line.startswith("00250" + LDL + "123" + LDL)
    assert line.rstrip("\n").endswith("AC")
    assert line.endswith("\n")


def test_unchanged_data_keeps_stamp():
    s = _sniffer()
    s.handle_frame(0x123, b"AB", 1.0, 0)
    s.handle_frame(0x123, b"AB", 1.25, 0)
    before = s.index(0x123).currstamp
    s.handle_frame(0x123, b"AB", 2.0, 0)
    assert s.index(0x123).currstamp == before


def test_changed_bits_highlighted_once_in_color():
    s = _sniffer(color=True)
    s.handle_frame(0x123, b"\x00", 1.0, 0)
    s.handle_timeout(0)
    s.handle_frame(0x123, b"\x01", 1.5, 0)
    slot = s.index(0x123)
    assert ATTCOLOR in s.format_line(slot)
    assert ATTCOLOR not in s.format_line(slot)


def test_notch_suppresses_and_star_restores_highlight():
    s = _sniffer(color=True)
    s.handle_frame(0x123, b"\x00", 1.0, 0)
    s.handle_timeout(0)
    s.handle_frame(0x123, b"\x01", 1.5, 0)
    s.handle_command("#\n")
    s.handle_timeout(1)
    s.handle_frame(0x123, b"\x00", 2.0, 1)
    slot = s.index(0x123)
    assert ATTCOLOR not in s.format_line(slot)
    s.handle_command("*\n")
    assert slot.notch == bytearray(8)


def test_binary_mode_prints_bits():
    s = _sniffer(binary=True)
    s.handle_frame(0x123, b"\x0f", 1.0, 0)
    line = s.format_line(s.index(0x123))
    assert "00001111" in line
    s.binary_gap = True
    assert "00001111 " in s.format_line(s.index(0x123))


def test_single_id_enable_disable():
    s = _sniffer()
    s.handle_frame(0x123, b"\x01", 1.0, 0)
    s.handle_frame(0x456, b"\x01", 1.0, 0)
    s.handle_command("-123\n")
    assert s.index(0x123).enabled is False
    assert s.index(0x456).enabled is True
    s.handle_command("+123\n")
    assert s.index(0x123).enabled is True


def test_sff_mask_command_keeps_eff_ids():
    s = _sniffer()
    eff = 0x18FEDF55 | CAN_EFF_FLAG
    s.handle_frame(0x123, b"\x01", 1.0, 0)
    s.handle_frame(0x7FF, b"\x01", 1.0, 0)
    s.handle_frame(eff, b"\x01", 1.0, 0)
    s.handle_command("-000000\n")
    assert not s.index(0x123).enabled and not s.index(0x7FF).enabled
    assert s.index(eff).enabled
    s.handle_command("a\n")
    assert s.index(0x123).enabled and s.index(0x7FF).enabled


def test_eff_none_and_all():
    s = _sniffer()
    eff = 0x18FEDF55 | CAN_EFF_FLAG
    s.handle_frame(0x123, b"\x01", 1.0, 0)
    s.handle_frame(eff, b"\x01", 1.0, 0)
    s.handle_command("N\n")
    assert s.index(eff).enabled is False
    assert s.index(0x123).enabled is True
    s.handle_command("A\n")
    assert s.index(eff).enabled is True


def test_eff_id_with_mask_command():
    s = _sniffer()
    eff = 0x12345678 | CAN_EFF_FLAG
    other = 0x12345679 | CAN_EFF_FLAG
    s.handle_frame(eff, b"\x01", 1.0, 0)
    s.handle_frame(other, b"\x01", 1.0, 0)
    s.handle_command("-12345678000000FF\n")
    assert s.index(eff).enabled is False
    assert s.index(other).enabled is True


def test_overlong_command_is_ignored():
    s = _sniffer()
    s.clearscreen = False
    s.handle_command("+" + "1" * 20 + "\n")
    assert s.clearscreen is False


def test_quit_command_stops():
    s = _sniffer()
    s.clearscreen = False
    s.handle_command("q\n")
    assert s.running is False
    assert s.clearscreen is True


def test_binary_toggle_returns_to_hex():
    s = _sniffer()
    s.handle_command("b\n")
    assert s.binary is True
    s.handle_command("b\n")
    assert s.binary is False


def test_eight_switches_delimiter():
    s = _sniffer()
    s.handle_command("8\n")
    assert s.binary is True and s.vdl == SDL
    s.handle_command("8\n")
    assert s.binary is False and s.vdl == LDL


def test_settings_round_trip(tmp_path):
    s = _sniffer(tmp_path)
    s.handle_frame(0x123, b"\x01", 1.0, 0)
    s.handle_frame(0x18FEDF55 | CAN_EFF_FLAG, b"\x01", 1.0, 0)
    s.slots[0].enabled = False
    s.slots[1].notch[:] = bytes(range(1, 9))
    s.write_settings("demo")
    path = tmp_path / "sniffset.demo"
    assert path.stat().st_size == SETTINGS_RECORD * len(s.slots)

    other = _sniffer(tmp_path)
    assert other.read_settings("demo") == 2
    assert [x.can_id for x in other.slots] == [x.can_id for x in s.slots]
    assert [x.enabled for x in other.slots] == [x.enabled for x in s.slots]
    assert [x.notch for x in other.slots] == [x.notch for x in s.slots]


def test_read_missing_settings_raises(tmp_path):
    s = _sniffer(tmp_path)
    with pytest.raises(FileNotFoundError):
        s.read_settings("absent")


def test_read_command_ignores_missing_file(tmp_path):
    s = _sniffer(tmp_path)
    s.handle_frame(0x123, b"\x01", 1.0, 0)
    s.handle_command("rabsent\n")
    assert [x.can_id for x in s.slots] == [0x123]


def test_write_command_creates_file(tmp_path):
    s = _sniffer(tmp_path)
    s.handle_frame(0x123, b"\x01", 1.0, 0)
    s.handle_command("wcmd\n")
    assert (tmp_path / "sniffset.cmd").stat().st_size == SETTINGS_RECORD


def test_timeout_output_header_then_skips():
    s = _sniffer()
    s.handle_frame(0x123, b"\x01", 1.0, 0)
    s.handle_frame(0x456, b"\x01", 1.0, 0)
    first = s.handle_timeout(0)
    assert first.startswith(CLR_SCREEN)
    assert "slots=2" in first
    assert s.clearscreen is False
    second = s.handle_timeout(1)
    assert CLR_SCREEN not in second
    assert second.count(CSR_DOWN) == 2


def test_disabled_slot_not_drawn():
    s = _sniffer()
    s.handle_frame(0x123, b"\x01", 1.0, 0)
    s.handle_timeout(0)
    s.handle_command("-123\n")
    out = s.handle_timeout(1)
    assert CSR_DOWN not in out
    assert LDL + "123" + LDL not in out


def test_display_timeout_removes_entry():
    s = _sniffer(timeout=10)
    s.handle_frame(0x123, b"\x01", 1.0, 0)
    s.handle_timeout(5)
    assert s.index(0x123).displayed is True
    s.handle_timeout(20)
    assert s.index(0x123).displayed is False
    assert s.clearscreen is True


def test_too_many_ids_raise():
    s = _sniffer()
    for cid in range(MAX_SLOTS):
        s.handle_frame(cid, b"\x01", 1.0, 0)
    with pytest.raises(OverflowError):
        s.handle_frame(MAX_SLOTS, b"\x01", 1.0, 0)


def test_parse_args_options():
    s = parse_args(["-t", "100", "-q", "-b", "-c", "can0"])
    assert s.timeout == 100
    assert s.binary is True and s.color is True
    assert s.default_enable is False
    assert s.interface == "can0"


def test_parse_args_without_interface():
    with pytest.raises(UsageError) as info:
        parse_args(["-b"])
    assert info.value.exit_code == 0


def test_parse_args_long_interface_name():
    with pytest.raises(UsageError) as info:
        parse_args(["x" * 16])
    assert info.value.exit_code == 1


def test_parse_args_missing_settings(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(UsageError) as info:
        parse_args(["-r", "absent", "vcan0"])
    assert info.value.exit_code == 1


def test_parse_args_reads_settings_then_quiet(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    s = Sniffer(interface="vcan0")
    s.handle_frame(0x123, b"\x01", 1.0, 0)
    s.write_settings("demo")
    loaded = parse_args(["-r", "demo", "vcan0"])
    assert [x.can_id for x in loaded.slots] == [0x123]
    assert loaded.slots[0].enabled is True
    quiet = parse_args(["-r", "demo", "-q", "vcan0"])
    assert quiet.slots[0].enabled is False