# File: src/relay/qr.py
# Renders the raw login string handed out by the protocol into a PNG data URL.

import asyncio
import base64
import io

import qrcode

from relay.errors import QrEncodingError


def render_qr_png(qr_text: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_Q,
        box_size=10,
        border=2,
    )
    qr.add_data(qr_text)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def qr_data_url(qr_text: str) -> str:
    if not qr_text:
        raise QrEncodingError("Empty QR payload")
    try:
        png = render_qr_png(qr_text)
    except Exception as e:
        raise QrEncodingError(f"Failed to render QR: {e}") from e
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


async def encode_qr(qr_text: str) -> str:
    return await asyncio.to_thread(qr_data_url, qr_text)
