"""Render credential payloads as scannable QR images."""
from __future__ import annotations

import io

import segno

# Medium error correction keeps the symbol small while surviving scuffed phone screens.
ERROR_CORRECTION = "M"


def _make_symbol(payload: str) -> segno.QRCode:
    if not payload:
        raise ValueError("Cannot render an empty payload")
    return segno.make_qr(payload, error=ERROR_CORRECTION, boost_error=False)


def render_png(payload: str, *, scale: int = 10, border: int = 2) -> bytes:
    """Return the PNG image of ``payload``."""

    buffer = io.BytesIO()
    _make_symbol(payload).save(buffer, kind="png", scale=scale, border=border)
    return buffer.getvalue()


def render_svg(payload: str, *, scale: int = 10, border: int = 2) -> bytes:
    """Return the SVG document of ``payload``."""

    buffer = io.BytesIO()
    _make_symbol(payload).save(buffer, kind="svg", scale=scale, border=border, xmldecl=False)
    return buffer.getvalue()
