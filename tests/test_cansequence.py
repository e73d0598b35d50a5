import pytest

from sockcan.cansequence import (
    CAN_EFF_FLAG,
    SequenceChecker,
    SequenceConfig,
    TooManyDrops,
    parse_args,
    sequence_values,
)
from sockcan.isotprecv import UsageError


def test_default_filter():
    assert SequenceConfig().filter() == (2, 0x7FF | CAN_EFF_FLAG)


def test_extended_filter():
    can_id, mask = SequenceConfig(extended=True, can_id=0x123).filter()
    assert can_id == 0x123 | CAN_EFF_FLAG
    assert mask == 0x1FFFFFFF | CAN_EFF_FLAG


def test_sff_id_truncated():
    assert SequenceConfig(can_id=0x1234).filter()[0] == 0x234


def test_parse_args_options():
    cfg = parse_args(["-r", "-v", "-v", "-i", "0x10", "--loop=5", "vcan0"])
    assert (cfg.receive, cfg.verbose, cfg.can_id, cfg.loopcount, cfg.interface) == (
        True, 2, 16, 5, "vcan0")


@pytest.mark.parametrize("argv,expected", [(["-q"], 1), (["-q3"], 3), (["--quit=7"], 7)])
def test_quit_optional_value(argv, expected):
    assert parse_args(argv).drop_until_quit == expected


def test_quit_does_not_take_interface():
    cfg = parse_args(["-q", "can1"])
    assert cfg.interface == "can1"
    assert cfg.drop_until_quit == 1


def test_help_and_bad_option():
    with pytest.raises(UsageError) as exc:
        parse_args(["-h"])
    assert exc.value.exit_code == 0
    with pytest.raises(UsageError) as exc:
        parse_args(["-z"])
    assert exc.value.exit_code == 1


def test_checker_in_order_is_silent():
    checker = SequenceChecker()
    assert all(checker.feed(2, bytes([n])) == [] for n in range(10, 20))
    assert checker.drop_count == 0


def test_checker_reports_gap():
    checker = SequenceChecker()
    checker.feed(2, bytes([0]))
    lines = checker.feed(2, bytes([5]))
    assert checker.drop_count == 1
    assert lines[0][0] is True
    assert "missing:    4" in lines[0][1]
    assert lines[0][1].endswith("incident: 1")
    assert checker.feed(2, bytes([6])) == []


def test_checker_quits():
    checker = SequenceChecker(drop_until_quit=1)
    checker.feed(2, bytes([0]))
    with pytest.raises(TooManyDrops) as exc:
        checker.feed(2, bytes([9]))
    assert len(exc.value.lines) == 1


def test_error_frame():
    checker = SequenceChecker()
    lines = checker.feed(0x20000004, bytes([1, 2]))
    assert lines[0][1].startswith("sequence CNT:      0, ERRORFRAME 20000004")
    assert checker.drop_count == 0


def test_wrap_reported_when_verbose():
    checker = SequenceChecker(verbose=1)
    checker.feed(2, bytes([254]))
    lines = checker.feed(2, bytes([255]))
    assert lines == [(False, "sequence wrap around (0)")]


def test_sequence_values_wrap():
    values = list(sequence_values(258))
    assert values[:3] == [0, 1, 2]
    assert values[255:] == [255, 0, 1]
    assert len(values) == 258