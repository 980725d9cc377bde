"""TOTP Primitives

Secret generation, provisioning (otpauth URL and QR code) and code
verification for authenticator apps, built on pyotp.

- Secrets are base32 strings (160 bits)
- Codes are 6 digits over 30 second windows
- Verification accepts `window` adjacent windows on each side for clock skew
"""

import base64
import io
import re
from typing import Optional

# TOTP library
import pyotp

# QR code generation
import qrcode

from app.utils.logger import get_logger

logger = get_logger(__name__)

TOTP_DIGITS = 6

_NON_DIGITS = re.compile(r"\D")


def generate_totp_secret() -> str:
    """Generate a random TOTP secret (base32 encoded).

    Returns:
        Base32-encoded secret string (160-bit, 32 chars in base32)
    """
    return pyotp.random_base32()


def generate_otpauth_url(secret: str, username: str, issuer_name: str) -> str:
    """Build the otpauth:// provisioning URI for a secret.

    Format:
        otpauth://totp/{issuer}:{username}?secret={secret}&issuer={issuer}
    """
    return pyotp.TOTP(secret).provisioning_uri(
        name=username,
        issuer_name=issuer_name
    )


def generate_qr_code_data_uri(provisioning_uri: str) -> str:
    """Render a provisioning URI as a PNG QR code data URI.

    Args:
        provisioning_uri: otpauth:// URI to encode

    Returns:
        "data:image/png;base64,..." string (at least 200x200px)
    """
    qr = qrcode.QRCode(
        version=1,  # Auto-size
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(provisioning_uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    png_bytes = buffer.getvalue()

    logger.debug("Generated TOTP QR code", size_bytes=len(png_bytes))

    return "data:image/png;base64," + base64.b64encode(png_bytes).decode("ascii")


def normalize_totp_code(code: Optional[str]) -> str:
    """Strip every non-digit character ("123 456", "123-456" -> "123456")."""
    if not code:
        return ""
    return _NON_DIGITS.sub("", code)


def verify_totp_code(secret: str, code: str, window: int = 1) -> bool:
    """Verify a TOTP code against a secret.

    Malformed codes are a failed verification, not an error.

    Args:
        secret: TOTP secret (base32 encoded)
        code: Submitted code, normalized or not
        window: Adjacent time windows to accept on each side

    Returns:
        True if code matches the current or an adjacent window
    """
    normalized = normalize_totp_code(code)
    if len(normalized) != TOTP_DIGITS:
        return False

    # pyotp compares in constant time
    return bool(pyotp.TOTP(secret).verify(normalized, valid_window=window))
