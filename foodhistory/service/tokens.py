"""Remember-me token material and the cookie payload codec.

The cookie value is ``base64("<series>:<token>")`` where both parts are
themselves standard base64 of 16 random bytes, so ``:`` never occurs inside
either part.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import secrets
from dataclasses import dataclass
from typing import Tuple, Union

TOKEN_BYTES = 16
_DELIMITER = ":"


@dataclass(frozen=True)
class DecodeError:
    """Typed failure returned by :func:`decode_cookie`; callers treat it as no cookie."""

    reason: str

    def __bool__(self) -> bool:
        return False


DecodeResult = Union[Tuple[str, str], DecodeError]


def ensure_entropy_available() -> None:
    """Fail fast at startup when the OS cannot provide secure randomness."""
    try:
        secrets.token_bytes(TOKEN_BYTES)
    except (NotImplementedError, OSError) as exc:
        raise RuntimeError("secure random source unavailable") from exc


def generate_random_token() -> str:
    return base64.b64encode(secrets.token_bytes(TOKEN_BYTES)).decode("ascii")


def encode_cookie(series: str, token: str) -> str:
    if not series or not token:
        raise ValueError("series and token are required")
    if _DELIMITER in series or _DELIMITER in token:
        raise ValueError("series and token must not contain ':'")
    joined = f"{series}{_DELIMITER}{token}"
    return base64.b64encode(joined.encode("utf-8")).decode("ascii")


def decode_cookie(raw: str | None) -> DecodeResult:
    """Return ``(series, token)`` or a :class:`DecodeError`. Never raises."""
    if not raw or not isinstance(raw, str):
        return DecodeError("empty")
    # quoted by cookie serializers when the value contains "=" or "/"
    value = raw.strip().strip('"')
    try:
        # servlet containers historically dropped padding from cookie values
        padded = value + "=" * (-len(value) % 4)
        decoded = base64.b64decode(padded.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError):
        return DecodeError("invalid_base64")
    try:
        text = decoded.decode("utf-8")
    except UnicodeDecodeError:
        return DecodeError("invalid_encoding")
    parts = text.split(_DELIMITER)
    if len(parts) != 2:
        return DecodeError("wrong_part_count")
    series, token = parts
    if not series or not token:
        return DecodeError("empty_part")
    return series, token


def tokens_match(presented: str, stored: str) -> bool:
    return hmac.compare_digest(presented.encode("utf-8"), stored.encode("utf-8"))


__all__ = [
    "DecodeError",
    "DecodeResult",
    "TOKEN_BYTES",
    "decode_cookie",
    "encode_cookie",
    "ensure_entropy_available",
    "generate_random_token",
    "tokens_match",
]
