"""Number formatting helpers shared by notes, proofs and fee math."""

from decimal import Decimal

from web3 import Web3
from web3.types import HexBytes


def to_hex(number: int | bytes, length: int = 32) -> str:
    """Render an integer or byte string as a zero-padded 0x-prefixed hex string.

    Args:
        number: Value to encode
        length: Width in bytes of the output

    Returns:
        Hex string with exactly ``length * 2`` digits after the prefix
    """
    if isinstance(number, (bytes, bytearray)):
        digits = bytes(number).hex()
    else:
        digits = format(int(number), "x")
    return "0x" + digits.rjust(length * 2, "0")


def hex_to_int(value: str | bytes | int) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    return int(value, 16)


def normalize_hex(value: str | bytes) -> str:
    """Return a lowercase 0x-prefixed hex string for bytes, HexBytes or str."""
    if isinstance(value, (bytes, bytearray, HexBytes)):
        return Web3.to_hex(value).lower()
    value = value.lower()
    return value if value.startswith("0x") else "0x" + value


def normalize_amount(amount: str | int | float | Decimal) -> str:
    """Canonical pool amount key, e.g. ``"0.10"`` -> ``"0.1"`` and ``"1e2"`` -> ``"100"``."""
    return format(Decimal(str(amount)).normalize(), "f")


def to_base_units(amount: str | int | float | Decimal, decimals: int) -> int:
    return int(Decimal(str(amount)) * (Decimal(10) ** decimals))


def from_base_units(value: int, decimals: int) -> Decimal:
    return Decimal(value) / (Decimal(10) ** decimals)
