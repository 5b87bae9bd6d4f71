import hashlib
import hmac
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from utils.errors import ValidationError

ORDER_PREFIX = "PAY-"

REQUIRED_NOTIFICATION_FIELDS = (
    "merchant_id",
    "order_id",
    "payhere_amount",
    "payhere_currency",
    "status_code",
    "md5sig",
)


def format_amount(amount) -> str:
    """
    Normalise an amount to the two-decimal string PayHere hashes,
    e.g. 1800 -> "1800.00".
    """
    try:
        value = Decimal(str(amount).strip())
        if not value.is_finite():
            raise InvalidOperation
        return str(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}")


def _md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def compute_hash(merchant_id, order_id, amount, currency, secret) -> str:
    """Checkout hash: UPPER(MD5(merchant_id + order_id + amount + currency + UPPER(MD5(secret))))."""
    hashed_secret = _md5_upper(secret)
    return _md5_upper(f"{merchant_id}{order_id}{format_amount(amount)}{currency}{hashed_secret}")


def compute_notification_hash(merchant_id, order_id, amount, currency, status_code, secret) -> str:
    """Same as compute_hash with the status code appended before the hashed secret."""
    hashed_secret = _md5_upper(secret)
    return _md5_upper(
        f"{merchant_id}{order_id}{format_amount(amount)}{currency}{status_code}{hashed_secret}"
    )


def verify_notification_hash(merchant_id, order_id, amount, currency, status_code, secret, received) -> bool:
    if not received:
        return False
    expected = compute_notification_hash(merchant_id, order_id, amount, currency, status_code, secret)
    # exact match; PayHere sends upper-case hex
    return hmac.compare_digest(expected.encode("utf-8"), str(received).encode("utf-8"))


def order_id_for(payment_id) -> str:
    return f"{ORDER_PREFIX}{payment_id}"


def payment_id_from_order(order_id):
    """Returns the integer payment id behind a PAY-<id> order id, or None."""
    if not isinstance(order_id, str) or not order_id.startswith(ORDER_PREFIX):
        return None
    raw = order_id[len(ORDER_PREFIX):]
    if not raw.isdigit():
        return None
    return int(raw)


def parse_notification(form) -> dict:
    """
    Validates an inbound notification body before any business logic runs.
    Raises ValidationError on missing fields, a non-integer status code or
    a non-numeric amount.
    """
    missing = [f for f in REQUIRED_NOTIFICATION_FIELDS if not (form.get(f) or "").strip()]
    if missing:
        raise ValidationError("Missing required fields: " + ", ".join(missing))

    status_code = form.get("status_code").strip()
    try:
        int(status_code)
    except ValueError:
        raise ValidationError(f"Invalid status_code: {status_code!r}")

    format_amount(form.get("payhere_amount"))

    return {
        "merchant_id": form.get("merchant_id").strip(),
        "order_id": form.get("order_id").strip(),
        "payment_id": (form.get("payment_id") or "").strip() or None,
        "amount": form.get("payhere_amount").strip(),
        "currency": form.get("payhere_currency").strip(),
        "status_code": status_code,
        "md5sig": form.get("md5sig").strip(),
        "status_message": form.get("status_message"),
        # verbatim copy for the audit trail
        "raw": dict(form.items()) if hasattr(form, "items") else dict(form),
    }
