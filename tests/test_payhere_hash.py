import hashlib
from decimal import Decimal

import pytest
from werkzeug.datastructures import MultiDict

from security.payhere import (
    compute_hash,
    compute_notification_hash,
    format_amount,
    order_id_for,
    parse_notification,
    payment_id_from_order,
    verify_notification_hash,
)
from utils.errors import ValidationError

MERCHANT = "1221149"
ORDER = "PAY-17"
SECRET = "MjYzNTc0MDIxMzE1NDI4NjkxMjQxNTM0"


def _reference_digest(*parts):
    inner = hashlib.md5(SECRET.encode()).hexdigest().upper()
    return hashlib.md5(("".join(parts) + inner).encode()).hexdigest().upper()


@pytest.mark.parametrize("raw, expected", [
    (1800, "1800.00"),
    ("1800.00", "1800.00"),
    (1800.0, "1800.00"),
    (Decimal("1800"), "1800.00"),
    ("2500.5", "2500.50"),
    ("10.005", "10.01"),
    (" 99 ", "99.00"),
])
def test_format_amount_normalises_to_two_decimals(raw, expected):
    assert format_amount(raw) == expected


@pytest.mark.parametrize("raw", ["abc", "", None, "NaN", "Infinity"])
def test_format_amount_rejects_non_numeric(raw):
    with pytest.raises(ValidationError):
        format_amount(raw)


def test_checkout_hash_matches_gateway_formula():
    digest = compute_hash(MERCHANT, ORDER, 1800, "LKR", SECRET)
    assert digest == _reference_digest(MERCHANT, ORDER, "1800.00", "LKR")
    assert len(digest) == 32
    assert digest == digest.upper()


def test_notification_hash_appends_status_code():
    digest = compute_notification_hash(MERCHANT, ORDER, "1800.00", "LKR", "2", SECRET)
    assert digest == _reference_digest(MERCHANT, ORDER, "1800.00", "LKR", "2")


def test_hash_is_deterministic():
    first = compute_notification_hash(MERCHANT, ORDER, "2500.00", "LKR", "2", SECRET)
    for _ in range(5):
        assert compute_notification_hash(MERCHANT, ORDER, "2500.00", "LKR", "2", SECRET) == first


def test_integer_and_string_amounts_hash_identically():
    assert compute_hash(MERCHANT, ORDER, 1800, "LKR", SECRET) == compute_hash(MERCHANT, ORDER, "1800.00", "LKR", SECRET)


def test_single_field_changes_alter_digest():
    base = compute_notification_hash(MERCHANT, ORDER, "1800.00", "LKR", "2", SECRET)
    variants = [
        compute_notification_hash(MERCHANT, ORDER, "1800.01", "LKR", "2", SECRET),
        compute_notification_hash(MERCHANT, ORDER, "1800.00", "USD", "2", SECRET),
        compute_notification_hash(MERCHANT, ORDER, "1800.00", "LKR", "0", SECRET),
        compute_notification_hash(MERCHANT, "PAY-18", "1800.00", "LKR", "2", SECRET),
        compute_notification_hash(MERCHANT, ORDER, "1800.00", "LKR", "2", SECRET + "x"),
    ]
    assert base not in variants
    assert len(set(variants)) == len(variants)


def test_verify_requires_exact_case():
    digest = compute_notification_hash(MERCHANT, ORDER, "1800.00", "LKR", "2", SECRET)
    assert verify_notification_hash(MERCHANT, ORDER, "1800", "LKR", "2", SECRET, digest)
    assert not verify_notification_hash(MERCHANT, ORDER, "1800", "LKR", "2", SECRET, digest.lower())
    assert not verify_notification_hash(MERCHANT, ORDER, "1800", "LKR", "2", SECRET, "")
    assert not verify_notification_hash(MERCHANT, ORDER, "1800", "LKR", "-2", SECRET, digest)


def test_order_id_round_trip_and_malformed_ids():
    assert order_id_for(42) == "PAY-42"
    assert payment_id_from_order("PAY-42") == 42
    assert payment_id_from_order("PAY-") is None
    assert payment_id_from_order("PAY-abc") is None
    assert payment_id_from_order("ORD-42") is None
    assert payment_id_from_order(None) is None


def test_parse_notification_reports_missing_fields():
    form = MultiDict({"merchant_id": MERCHANT, "order_id": ORDER, "payhere_amount": "10.00"})
    with pytest.raises(ValidationError) as excinfo:
        parse_notification(form)
    assert "payhere_currency" in excinfo.value.message
    assert "md5sig" in excinfo.value.message


def test_parse_notification_rejects_non_integer_status():
    form = MultiDict({
        "merchant_id": MERCHANT, "order_id": ORDER, "payhere_amount": "10.00",
        "payhere_currency": "LKR", "status_code": "ok", "md5sig": "X" * 32,
    })
    with pytest.raises(ValidationError):
        parse_notification(form)


def test_parse_notification_keeps_raw_payload():
    form = MultiDict({
        "merchant_id": MERCHANT, "order_id": ORDER, "payment_id": "320025071278",
        "payhere_amount": "10.00", "payhere_currency": "LKR", "status_code": "-3",
        "md5sig": "X" * 32, "status_message": "Chargeback",
    })
    parsed = parse_notification(form)
    assert parsed["status_code"] == "-3"
    assert parsed["payment_id"] == "320025071278"
    assert parsed["raw"]["status_message"] == "Chargeback"
