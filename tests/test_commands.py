import pytest

from travelpet.commands import (
    Back,
    Cancel,
    ChangePage,
    EditFrom,
    EditTo,
    MalformedCommand,
    ManualEntry,
    Noop,
    Retry,
    SelectStation,
    SelectTrain,
    decode,
    encode,
)


@pytest.mark.parametrize("data, expected", [
    ("b", Back()),
    ("x", Cancel()),
    ("ef", EditFrom()),
    ("et", EditTo()),
    ("ti", ManualEntry()),
    ("rt", Retry()),
    ("noop", Noop()),
    ("ss:r2", SelectStation(recent=True, index=2)),
    ("ss:p6", SelectStation(recent=False, index=6)),
    ("tr:11", SelectTrain(11)),
    ("sp:3", ChangePage(3)),
])
def test_decode(data, expected):
    assert decode(data) == expected
    assert encode(expected) == data


def test_legacy_tokens():
    assert decode("train:4") == SelectTrain(4)
    assert decode("cancel") == Cancel()


@pytest.mark.parametrize("data", [
    "", "zz", "tr", "tr:", "tr:-1", "tr:abc", "sp:1.5", "ss:q1", "ss:r", "ss:", "b:1",
])
def test_malformed(data):
    with pytest.raises(MalformedCommand):
        decode(data)


def test_tokens_fit_telegram_limit():
    assert len(encode(SelectTrain(10 ** 9))) <= 64
