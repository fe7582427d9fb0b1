"""
hdpay.services.qr_service — Payment QR Codes
=============================================

Renders a payload (a receiving address, or a wallet's account xpub) as a
high-error-correction PNG and returns it as a ``data:image/png;base64,…``
URL ready to drop into an ``<img>`` tag.
"""

from __future__ import annotations

import base64
import logging
from io import BytesIO

import qrcode
import qrcode.constants
from qrcode.main import QRCode

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:image/png;base64,"


def render_qr_data_url(data: str, *, box_size: int = 8, border: int = 2) -> str:
    """Encode *data* at error-correction level H as a PNG data URL."""
    if not data:
        raise ValueError("QR payload must not be empty")

    qr = QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffered = BytesIO()
    img.save(buffered, format="PNG")
    encoded = base64.b64encode(buffered.getvalue()).decode("ascii")
    logger.debug("Rendered QR (%d chars payload, %d bytes PNG)", len(data), len(buffered.getvalue()))
    return DATA_URL_PREFIX + encoded
