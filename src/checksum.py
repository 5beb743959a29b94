"""
Checksum - Order-independent fingerprints for key/value payloads.

Used as a cheap change detector for Secrets and ConfigMaps: the checksum is
stored as an annotation on the managed object and recomputed on every pass.
This is a CRC-32, not a cryptographic digest.
"""

import zlib
from typing import Iterable, Mapping, Union

PayloadValue = Union[bytes, str]


def _render(value: PayloadValue) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="surrogateescape")
    return str(value)


def checksum_for_strings(items: Iterable[str]) -> str:
    """
    Compute the checksum of an unordered collection of strings.

    The items are sorted before hashing, so the result does not depend on
    iteration order.

    Args:
        items: Strings to fingerprint

    Returns:
        The CRC-32 (IEEE) of the sorted, concatenated items as a decimal string.
    """
    buffer = "".join(sorted(items)).encode("utf-8", errors="surrogateescape")
    return str(zlib.crc32(buffer) & 0xFFFFFFFF)


def checksum_for_mapping(data: Mapping[str, PayloadValue]) -> str:
    """
    Compute the checksum of a key/value payload.

    Every entry is rendered as ``key:value``; byte values are decoded as
    UTF-8 so that ``{"a": b"x"}`` and ``{"a": "x"}`` fingerprint the same.

    Args:
        data: Secret or ConfigMap style payload (may be empty or None)

    Returns:
        Decimal CRC-32 string.
    """
    return checksum_for_strings(f"{k}:{_render(v)}" for k, v in (data or {}).items())
