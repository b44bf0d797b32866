import pytest

from pipeline.utils.text import clean_text, detect_currency, first_number, first_str, parse_moq, parse_price


@pytest.mark.parametrize(
    "text, expected",
    [
        ("US$ 1.20-3.50 / Piece", (1.2, "USD")),
        ("₹ 450 / Piece", (450.0, "INR")),
        ("Rs 1,250/Unit", (1250.0, "INR")),
        ("¥ 12.5", (12.5, "CNY")),
        ("Ask for price", (None, None)),
        (None, (None, None)),
    ],
)
def test_parse_price(text, expected):
    assert parse_price(text) == expected


@pytest.mark.parametrize(
    "text, expected",
    [
        ("MOQ: 500 pieces", 500),
        ("Min. Order: 2,000 Pieces", 2000),
        ("100 Piece(s)", 100),
        ("50", 50),
        ("0", None),
        ("500000 pieces", None),
        ("Negotiable", None),
    ],
)
def test_parse_moq(text, expected):
    assert parse_moq(text) == expected


def test_small_helpers():
    assert clean_text("  a \n b ") == "a b"
    assert clean_text("   ") is None
    assert first_str(None, " ", " x ") == "x"
    assert detect_currency("EUR 10") == "EUR"
    assert first_number("1 Piece") == 1
    assert first_number("no digits") is None
