"""Base64 helpers for moving binary media fields through text channels."""

from __future__ import annotations

import base64
import binascii


def bytes_to_base64(data: bytes | bytearray | memoryview) -> str:
    """Return standard (padded) base64 text for the given bytes."""
    return base64.b64encode(bytes(data)).decode("ascii")


def base64_to_bytes(text: str) -> bytes:
    """Decode standard base64 text.

    Raises:
        ValueError: If the text is not valid base64.
    """
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as err:
        raise ValueError(f"Invalid base64 encoding: {err}") from err
