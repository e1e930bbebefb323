"""
Deposit secrets and their note/invoice text encodings.

A note carries the nullifier and secret of a deposit and is everything needed
to withdraw it. An invoice carries only the commitment, so a third party can
fund the deposit without learning the secret.
"""

import re
import secrets
from dataclasses import dataclass

from .exceptions import InvalidNoteError
from .hashing import CommitmentHasher, KeccakCommitmentHasher
from .utils.encoding import normalize_amount, to_hex

SCALAR_BYTES = 31

NOTE_PREFIX = "mixer"
INVOICE_PREFIX = "mixerInvoice"

NOTE_PATTERN = re.compile(
    r"mixer-(?P<currency>\w+)-(?P<amount>[\d.]+)-(?P<net_id>\d+)-0x(?P<note>[0-9a-fA-F]{124})"
)
INVOICE_PATTERN = re.compile(
    r"mixerInvoice-(?P<currency>\w+)-(?P<amount>[\d.]+)-(?P<net_id>\d+)-0x(?P<commitment>[0-9a-fA-F]{64})"
)

_default_hasher = KeccakCommitmentHasher()


def random_scalar() -> int:
    """Random 31-byte scalar, read little-endian."""
    return int.from_bytes(secrets.token_bytes(SCALAR_BYTES), "little")


@dataclass(frozen=True, slots=True)
class Deposit:
    """Secret deposit data and everything derived from it.

    ``commitment`` and ``nullifier_hash`` are pure functions of
    ``(nullifier, secret)`` for a given hasher.
    """
    nullifier: int
    secret: int
    preimage: bytes
    commitment: int
    nullifier_hash: int

    @classmethod
    def create(cls, nullifier: int, secret: int, hasher: CommitmentHasher | None = None) -> "Deposit":
        hasher = hasher or _default_hasher
        nullifier_bytes = nullifier.to_bytes(SCALAR_BYTES, "little")
        preimage = nullifier_bytes + secret.to_bytes(SCALAR_BYTES, "little")
        return cls(
            nullifier=nullifier,
            secret=secret,
            preimage=preimage,
            commitment=hasher.hash_bytes(preimage),
            nullifier_hash=hasher.hash_bytes(nullifier_bytes),
        )

    @classmethod
    def random(cls, hasher: CommitmentHasher | None = None) -> "Deposit":
        return cls.create(random_scalar(), random_scalar(), hasher)

    @property
    def commitment_hex(self) -> str:
        return to_hex(self.commitment)

    @property
    def nullifier_hex(self) -> str:
        return to_hex(self.nullifier_hash)


@dataclass(frozen=True, slots=True)
class ParsedNote:
    currency: str
    amount: str
    net_id: int
    deposit: Deposit


@dataclass(frozen=True, slots=True)
class ParsedInvoice:
    currency: str
    amount: str
    net_id: int
    commitment_hex: str


def format_note(currency: str, amount: str, net_id: int, deposit: Deposit) -> str:
    return f"{NOTE_PREFIX}-{currency.lower()}-{normalize_amount(amount)}-{net_id}-0x{deposit.preimage.hex()}"


def format_invoice(currency: str, amount: str, net_id: int, deposit: Deposit) -> str:
    return f"{INVOICE_PREFIX}-{currency.lower()}-{normalize_amount(amount)}-{net_id}-{deposit.commitment_hex}"


def create_note(
    currency: str,
    amount: str,
    net_id: int,
    hasher: CommitmentHasher | None = None,
) -> tuple[str, str, Deposit]:
    """Draw fresh deposit secrets and render them.

    Returns:
        Tuple of (note string, invoice string, deposit)
    """
    deposit = Deposit.random(hasher)
    return (
        format_note(currency, amount, net_id, deposit),
        format_invoice(currency, amount, net_id, deposit),
        deposit,
    )


def parse_note(note: str, hasher: CommitmentHasher | None = None) -> ParsedNote:
    """Parse a note string into its pool coordinates and deposit.

    Raises:
        InvalidNoteError: If the string does not match the note format
    """
    match = NOTE_PATTERN.fullmatch(note.strip())
    if not match:
        raise InvalidNoteError("The note has invalid format")

    raw = bytes.fromhex(match["note"])
    nullifier = int.from_bytes(raw[:SCALAR_BYTES], "little")
    secret = int.from_bytes(raw[SCALAR_BYTES:], "little")
    return ParsedNote(
        currency=match["currency"].lower(),
        amount=match["amount"],
        net_id=int(match["net_id"]),
        deposit=Deposit.create(nullifier, secret, hasher),
    )


def parse_invoice(invoice: str) -> ParsedInvoice:
    """Parse an invoice string.

    Raises:
        InvalidNoteError: If the string does not match the invoice format
    """
    match = INVOICE_PATTERN.fullmatch(invoice.strip())
    if not match:
        raise InvalidNoteError("The invoice has invalid format")

    return ParsedInvoice(
        currency=match["currency"].lower(),
        amount=match["amount"],
        net_id=int(match["net_id"]),
        commitment_hex="0x" + match["commitment"].lower(),
    )
