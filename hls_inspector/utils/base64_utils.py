import base64
import binascii
import logging
import re

from hls_inspector.errors import DecodeError

logger = logging.getLogger(__name__)

_HEX_RE = re.compile(r"(?:[0-9A-Fa-f]{2})+")
_BASE64_CHARS = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/=-_")


def is_hex_payload(text: str) -> bool:
    """
    Check if a payload is hexadecimal text.

    Args:
        text (str): The payload, with or without a ``0x`` prefix.

    Returns:
        bool: True if the text is an even number of hex digits.
    """
    if text[:2] in ("0x", "0X"):
        text = text[2:]
    return bool(_HEX_RE.fullmatch(text))


def is_base64_payload(text: str) -> bool:
    """Check if a payload only uses base64 (standard or URL-safe) characters."""
    return bool(text) and set(text).issubset(_BASE64_CHARS)


def decode_base64_payload(encoded: str) -> bytes:
    """
    Decode base64 text, accepting the URL-safe alphabet and missing padding.

    Raises:
        DecodeError: If the text is not valid base64.
    """
    # Handle URL-safe base64 encoding (replace - with + and _ with /)
    standard = encoded.replace("-", "+").replace("_", "/")

    # Add padding if necessary
    missing_padding = len(standard) % 4
    if missing_padding:
        standard += "=" * (4 - missing_padding)

    try:
        return base64.b64decode(standard, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.debug(f"Failed to decode base64 payload '{encoded[:50]}...': {e}")
        raise DecodeError(f"malformed base64 payload: {e}")


def decode_binary_payload(text: str) -> bytes:
    """
    Decode a binary payload embedded in a playlist attribute.

    Hexadecimal (``0x`` prefix optional) is tried first, then base64.

    Args:
        text (str): The encoded payload.

    Returns:
        bytes: The decoded payload.

    Raises:
        DecodeError: If the text is neither valid hexadecimal nor valid base64.
    """
    text = text.strip()
    if not text:
        raise DecodeError("payload is empty")
    if is_hex_payload(text):
        return bytes.fromhex(text[2:] if text[:2] in ("0x", "0X") else text)
    if text[:2] in ("0x", "0X"):
        raise DecodeError(f"malformed hexadecimal payload {text[:50]!r}")
    if not is_base64_payload(text):
        raise DecodeError(f"payload {text[:50]!r} is neither hexadecimal nor base64")
    return decode_base64_payload(text)
