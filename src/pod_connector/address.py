"""Conversion between 48-bit link-layer addresses and colon-hex strings."""

from __future__ import annotations

ADDRESS_OCTETS = 6
MAX_ADDRESS = (1 << 48) - 1


class InvalidAddressFormat(ValueError):
    """Raised when an address string is not six colon-separated hex octets."""


def format_address(address: int) -> str:
    """Render ``address`` as ``aa:bb:cc:dd:ee:ff`` (most significant first)."""
    return ":".join(
        f"{(address >> (8 * shift)) & 0xFF:02x}"
        for shift in range(ADDRESS_OCTETS - 1, -1, -1)
    )


def parse_address(text: str) -> int:
    """Parse a colon-hex address string back into its integer form.

    Args:
        text: Address such as ``"c4:7f:51:0a:00:1e"``. Case is ignored and
            single-digit octets are accepted.

    Returns:
        The 48-bit address.

    Raises:
        InvalidAddressFormat: On a wrong octet count or a token that is
            not a hexadecimal byte.
    """
    tokens = text.strip().split(":")
    if len(tokens) != ADDRESS_OCTETS:
        raise InvalidAddressFormat(
            f"Expected {ADDRESS_OCTETS} octets, got {len(tokens)} in '{text}'"
        )

    value = 0
    for token in tokens:
        # int(..., 16) would also accept "0x", "_" and surrounding spaces
        if not 1 <= len(token) <= 2 or any(
            c not in "0123456789abcdefABCDEF" for c in token
        ):
            raise InvalidAddressFormat(f"Invalid octet '{token}' in '{text}'")
        value = (value << 8) | int(token, 16)
    return value
