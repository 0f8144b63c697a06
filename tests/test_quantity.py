import pytest

from pvcautoresizer.quantity import QuantityError, format_quantity, parse_quantity


def test_parse_binary_suffix():
    assert parse_quantity("30Gi") == 30 << 30


def test_parse_negative_binary_suffix():
    assert parse_quantity("-10Gi") == -(10 << 30)


def test_parse_plain_integer():
    assert parse_quantity("100") == 100
    assert parse_quantity("107374182400") == 100 << 30


def test_parse_zero_with_suffix():
    assert parse_quantity("0Gi") == 0


def test_parse_decimal_suffix():
    assert parse_quantity("1k") == 1000


def test_parse_fraction_rounds_up():
    assert parse_quantity("500m") == 1
    assert parse_quantity("1.5Gi") == 3 << 29


def test_parse_exponent():
    assert parse_quantity("2e3") == parse_quantity("2k")


@pytest.mark.parametrize("text", ["hoge", "", "Gi", "10 Gi", "10Gb", "1.2.3", "10%"])
def test_parse_invalid(text):
    with pytest.raises(QuantityError):
        parse_quantity(text)


def test_quantity_error_is_value_error():
    with pytest.raises(ValueError):
        parse_quantity("hoge")


@pytest.mark.parametrize(
    "value, expected",
    [(2 << 30, "2Gi"), (3 << 30, "3Gi"), (11 << 30, "11Gi"), (1 << 30, "1Gi"), (0, "0")],
)
def test_format_gibibytes(value, expected):
    assert format_quantity(value) == expected


def test_format_small_values_are_plain():
    assert format_quantity(100) == "100"


def test_format_not_divisible_is_plain():
    value = (5 << 30) - 1
    assert format_quantity(value) == str(value)


@pytest.mark.parametrize(
    "value", [0, 1, 100, 1023, 1024, 2050246, (5 << 30) - 1, 30 << 30, 100 << 30, -(10 << 30)]
)
def test_round_trip(value):
    assert parse_quantity(format_quantity(value)) == value


@pytest.mark.parametrize("text", ["2Gi", "11Gi", "1Gi", "10Gi"])
def test_canonical_strings_round_trip(text):
    assert format_quantity(parse_quantity(text)) == text