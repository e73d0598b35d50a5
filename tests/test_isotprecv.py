import struct

import pytest

from sockcan.isotprecv import (
    CAN_EFF_FLAG,
    CAN_ISOTP_CHK_PAD_DATA,
    CAN_ISOTP_CHK_PAD_LEN,
    CAN_ISOTP_EXTEND_ADDR,
    CAN_ISOTP_FORCE_RXSTMIN,
    CAN_ISOTP_LL_OPTS,
    CAN_ISOTP_OPTS,
    CAN_ISOTP_RECV_FC,
    CAN_ISOTP_RX_EXT_ADDR,
    CAN_ISOTP_RX_PADDING,
    CAN_ISOTP_RX_STMIN,
    CAN_ISOTP_TX_PADDING,
    UsageError,
    format_pdu,
    main,
    parse_args,
    parse_can_id,
)


def test_parse_can_id_standard_and_extended():
    assert parse_can_id("123") == 0x123
    assert parse_can_id("00000123") == 0x123 | CAN_EFF_FLAG


def test_basic_args():
    cfg = parse_args(["-s", "123", "-d", "321", "can0"])
    assert (cfg.tx_id, cfg.rx_id, cfg.interface) == (0x123, 0x321, "can0")
    assert cfg.flags == 0
    assert not cfg.loop


def test_extended_addresses():
    cfg = parse_args(["-s", "1", "-d", "2", "-x", "AA:BB", "vcan0"])
    assert cfg.flags == CAN_ISOTP_EXTEND_ADDR | CAN_ISOTP_RX_EXT_ADDR
    assert (cfg.ext_address, cfg.rx_ext_address) == (0xAA, 0xBB)


def test_padding_forms():
    assert parse_args(["-s", "1", "-d", "2", "-p", "CC", "c"]).flags == CAN_ISOTP_TX_PADDING
    cfg = parse_args(["-s", "1", "-d", "2", "-p", ":55", "c"])
    assert cfg.flags == CAN_ISOTP_RX_PADDING and cfg.rxpad_content == 0x55
    cfg = parse_args(["-s", "1", "-d", "2", "-p", "11:22", "c"])
    assert cfg.flags == CAN_ISOTP_TX_PADDING | CAN_ISOTP_RX_PADDING


def test_padding_check_all():
    cfg = parse_args(["-s", "1", "-d", "2", "-P", "a", "c"])
    assert cfg.flags == CAN_ISOTP_CHK_PAD_LEN | CAN_ISOTP_CHK_PAD_DATA


@pytest.mark.parametrize(
    "argv,code",
    [
        (["-d", "2", "can0"], 1),
        (["-s", "1", "-d", "2"], 1),
        (["-s", "1", "-d", "2", "-P", "z", "c"], 0),
        (["-s", "1", "-d", "2", "-x", "zz", "c"], 0),
        (["-s", "1", "-d", "2", "-L", "72:64", "c"], 0),
        (["-q"], 0),
    ],
)
def test_usage_errors(argv, code):
    with pytest.raises(UsageError) as info:
        parse_args(argv)
    assert info.value.exit_code == code


def test_socket_options_minimal():
    options = dict(parse_args(["-s", "1", "-d", "2", "c"]).socket_options())
    assert set(options) == {CAN_ISOTP_OPTS, CAN_ISOTP_RECV_FC}
    assert len(options[CAN_ISOTP_OPTS]) == 12
    assert options[CAN_ISOTP_RECV_FC] == bytes(3)


def test_socket_options_full():
    cfg = parse_args(["-s", "1", "-d", "2", "-b", "8", "-m", "14", "-f", "500",
                      "-L", "72:64:1", "c"])
    options = dict(cfg.socket_options())
    assert options[CAN_ISOTP_RECV_FC] == bytes([8, 0x14, 0])
    assert options[CAN_ISOTP_LL_OPTS] == bytes([72, 64, 1])
    assert options[CAN_ISOTP_RX_STMIN] == struct.pack("=I", 500)
    flags = struct.unpack_from("=I", options[CAN_ISOTP_OPTS])[0]
    assert flags & CAN_ISOTP_FORCE_RXSTMIN


def test_format_pdu():
    assert format_pdu(bytes([0x01, 0xAB])) == "01 AB "
    assert format_pdu(b"") == ""


def test_main_usage_exit_code(capsys):
    assert main(["-d", "2", "can0"]) == 1
    assert "Usage" in capsys.readouterr().err