"""Exception hierarchy for the mixer client.

Every error raised on purpose by this package derives from
:class:`MixerClientError`, so the entry point can tell our failures apart from
programming errors.
"""


class MixerClientError(Exception):
    """Base exception for all mixer client errors."""


class ConfigurationError(MixerClientError, ValueError):
    """No pool or network is configured for the requested chain/currency/amount."""


class ValidationError(MixerClientError, ValueError):
    """User input or on-chain state rules out the requested operation."""


class InvalidNoteError(ValidationError):
    """A note or invoice string does not match the expected format."""


class AlreadyWithdrawnError(ValidationError):
    """The deposit's nullifier has already been published in a withdrawal."""


class NetworkMismatchError(ValidationError):
    """A relayer or note belongs to a different network than the session."""


class LeafNotFoundError(ValidationError):
    """The deposit commitment is not part of the synchronized tree."""


class NetworkError(MixerClientError):
    """An indexing service, RPC node or relayer was unreachable or timed out."""


class IndexingError(NetworkError):
    """The indexing service failed or returned a malformed answer."""


class ConsistencyError(MixerClientError):
    """Local state disagrees with the chain or no usable relayer exists."""


class DataIntegrityError(ConsistencyError):
    """Cached leaves have gaps or duplicate leaf indices."""


class CorruptedStateError(ConsistencyError):
    """The recomputed Merkle root is not one the chain recognizes."""


class NoRelayerAvailableError(ConsistencyError):
    """Relayer discovery produced no eligible, responsive relayer."""


class RelayerJobError(MixerClientError):
    """A relayer reported that the withdrawal job failed."""

    def __init__(self, job_id: str, reason: str | None) -> None:
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Relayer job {job_id} failed: {reason or 'no reason given'}")


class ProverError(MixerClientError):
    """The external prover could not produce a proof."""


class TransactionRevertedError(MixerClientError):
    """A submitted transaction was mined with a failing status."""


class UserAbortedError(MixerClientError):
    """The operator declined a confirmation prompt."""
