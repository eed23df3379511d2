"""
Hash-type registry and hexadecimal fingerprint codec.

Fingerprints travel as fixed-length hex strings and are searched as plain
Python ints. Every hash type has a declared bit width (64 or 128) and its
hex form must carry exactly bit_width / 4 digits. Length mismatches are
rejected here so that a malformed hash never reaches the index.
"""

import re
import logging
from typing import Any, Dict, Mapping

from .errors import FormatError

logger = logging.getLogger(__name__)

# Registry order is the order hash types are searched and reported in.
HASH_TYPES = (
    "perceptual_hash",
    "average_hash",
    "difference_hash",
    "wavelet_hash",
    "color_hash",
    "blockhash8",
    "blockhash16",
)

HASH_BIT_LENGTHS = {
    "perceptual_hash": 64,
    "average_hash": 64,
    "difference_hash": 64,
    "wavelet_hash": 64,
    "color_hash": 64,
    "blockhash8": 64,
    "blockhash16": 128,
}

_HEX_PATTERNS = {
    hash_type: re.compile(r"[0-9a-fA-F]{%d}" % (bits // 4))
    for hash_type, bits in HASH_BIT_LENGTHS.items()
}


def bit_length(hash_type: str) -> int:
    """Return the bit width of a hash type."""
    try:
        return HASH_BIT_LENGTHS[hash_type]
    except KeyError:
        raise FormatError(f"Unknown hash type: {hash_type!r}",
                          hash_type=hash_type) from None


def _strip_prefix(value: str) -> str:
    if value[:2] in ("0x", "0X"):
        return value[2:]
    return value


def decode_hash(value: str, hash_type: str) -> int:
    """
    Decode a hex fingerprint into its integer form.

    An optional 0x prefix is stripped before the length check, so both
    "0x00ff00ff00ff00ff" and "00ff00ff00ff00ff" are accepted for a 64-bit
    hash type.

    Args:
        value: Hex string.
        hash_type: Registered hash type that fixes the expected length.

    Returns:
        Unsigned integer fingerprint.

    Raises:
        FormatError: If the type is unknown, the value is not a string, or
            the digits do not match the expected length.
    """
    bits = bit_length(hash_type)
    if not isinstance(value, str):
        raise FormatError(
            f"Invalid format for {hash_type}: expected a hex string, "
            f"got {type(value).__name__}",
            hash_type=hash_type,
        )

    digits = _strip_prefix(value)
    if not _HEX_PATTERNS[hash_type].fullmatch(digits):
        raise FormatError(
            f"Invalid format for {hash_type}: expected {bits // 4} hex "
            f"characters, got {value!r}",
            hash_type=hash_type,
            details={"expected_length": bits // 4, "actual_length": len(digits)},
        )
    return int(digits, 16)


def encode_hash(value: int, hash_type: str, prefix: bool = False) -> str:
    """Encode an integer fingerprint as zero-padded lower-case hex."""
    bits = bit_length(hash_type)
    if isinstance(value, bool) or not isinstance(value, int):
        raise FormatError(
            f"Cannot encode {type(value).__name__} as {hash_type}",
            hash_type=hash_type,
        )
    if value < 0 or value.bit_length() > bits:
        raise FormatError(
            f"Value does not fit in {bits} bits for {hash_type}",
            hash_type=hash_type,
        )
    digits = format(value, f"0{bits // 4}x")
    return f"0x{digits}" if prefix else digits


def is_valid_hash_format(value: Any, hash_type: str) -> bool:
    """Non-raising variant of decode_hash()."""
    try:
        decode_hash(value, hash_type)
    except FormatError:
        return False
    return True


def parse_hashes(raw_hashes: Mapping[str, Any]) -> Dict[str, int]:
    """
    Validate and decode every recognized hash type in a raw mapping.

    Used at ingestion: the first malformed fingerprint aborts the whole
    mapping. Unknown keys and empty values are skipped.

    Returns:
        Dict of hash type -> integer fingerprint, in registry order.
    """
    if raw_hashes is None:
        return {}

    parsed = {}
    for hash_type in HASH_TYPES:
        value = raw_hashes.get(hash_type)
        if value is None or value == "":
            continue
        parsed[hash_type] = decode_hash(value, hash_type)

    unknown = [key for key in raw_hashes if key not in HASH_BIT_LENGTHS]
    if unknown:
        logger.debug(f"Ignoring unknown hash types: {unknown}")

    return parsed
