"""QR code rendering for pairing payloads."""

from __future__ import annotations

import asyncio
import base64
import io

import qrcode
import qrcode.constants


def render_png(payload: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def to_data_url(payload: str) -> str:
    """Encode *payload* as a ``data:image/png;base64,...`` URL."""
    encoded = base64.b64encode(render_png(payload)).decode("ascii")
    return f"data:image/png;base64,{encoded}"


async def encode_data_url(payload: str) -> str:
    """Async wrapper: PNG encoding is CPU-bound, keep it off the event loop."""
    return await asyncio.to_thread(to_data_url, payload)


def render_ascii(payload: str) -> str:
    """Terminal rendering used by ``wabot pair``."""
    qr = qrcode.QRCode(border=1)
    qr.add_data(payload)
    qr.make()
    buf = io.StringIO()
    qr.print_ascii(out=buf, invert=True)
    return buf.getvalue()
