"""
core/qrimage.py -- Render a redemption URL as a scannable QR code PNG.

Used by the issuance endpoint (include_image=true) and the CLI (--png).
Error correction level M survives a smudged or partly covered printout,
which matters for codes that are meant to live on a badge for months.
"""

import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M


def render_png(data: str, box_size: int = 10, border: int = 4) -> bytes:
    """Return PNG bytes for a QR code encoding data."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffered = io.BytesIO()
    img.save(buffered, format="PNG")
    return buffered.getvalue()


def render_png_base64(data: str) -> str:
    return base64.b64encode(render_png(data)).decode()
