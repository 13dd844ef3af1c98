import qrcode
from io import BytesIO
import hashlib
import hmac
import uuid
from typing import Optional
from datetime import datetime, timedelta, timezone
from app.config import settings

CREDENTIAL_PREFIX = "CT1:"


def new_ticket_identity() -> str:
    """Globally unique ticket id."""
    return str(uuid.uuid4())


def _sign(payload: str) -> str:
    return hmac.new(
        settings.qr_secret.encode(),
        payload.encode(),
        hashlib.sha256
    ).hexdigest()[:16]


def encode_credential(ticket_id: str, issued_at: datetime) -> str:
    """
    Build the data string to encode in the ticket QR.

    Only immutable fields go in: the ticket id and its issue time. The same
    ticket always yields the same payload, so the credential never needs to
    be regenerated. A truncated HMAC prevents tampering.
    """
    if issued_at.tzinfo is None:
        issued_at = issued_at.replace(tzinfo=timezone.utc)
    payload = f"{ticket_id}|{int(issued_at.timestamp())}"
    return f"{CREDENTIAL_PREFIX}{payload}|{_sign(payload)}"


def decode_and_validate(
    qr_data: str,
    max_age: Optional[timedelta] = None,
    now: Optional[datetime] = None
) -> Optional[str]:
    """
    Verify a scanned credential and return its ticket id.
    Returns None if malformed, tampered with, or older than max_age.
    """
    if not qr_data or not qr_data.startswith(CREDENTIAL_PREFIX):
        return None

    parts = qr_data[len(CREDENTIAL_PREFIX):].split("|")
    if len(parts) != 3:
        return None

    ticket_id, issued_epoch, provided_signature = parts

    try:
        uuid.UUID(ticket_id)
        issued_ts = int(issued_epoch)
    except ValueError:
        return None

    expected_signature = _sign(f"{ticket_id}|{issued_epoch}")
    if not hmac.compare_digest(expected_signature.encode(), provided_signature.encode()):
        return None

    if max_age is not None:
        now = now or datetime.now(timezone.utc)
        issued_at = datetime.fromtimestamp(issued_ts, tz=timezone.utc)
        if now - issued_at > max_age:
            return None

    return ticket_id


def default_max_age() -> Optional[timedelta]:
    if settings.qr_max_age_days is None:
        return None
    return timedelta(days=settings.qr_max_age_days)


def generate_qr_image(data: str, size: int = 10, border: int = 2) -> bytes:
    """
    Generate QR code image as PNG bytes.
    """
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format="PNG")
    buffer.seek(0)

    return buffer.getvalue()
