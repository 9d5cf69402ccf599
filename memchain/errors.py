"""Error taxonomy for the memory chain."""


class MemoryChainError(Exception):
    """Base for every error raised by memchain."""
    pass


# --- append() failures ---

class ChainError(MemoryChainError):
    """An append() call did not complete."""
    pass


class StorageFailure(ChainError):
    """Content store unreachable or rejected the write. Nothing was anchored."""
    pass


class AnchorFailure(ChainError):
    """
    Record was stored but the anchoring transaction did not land.

    The stored record is an orphan: it exists under `cid` but no pointer
    references it. It is not rolled back.
    """

    def __init__(self, message: str, cid: str = "", digest: bytes = b"", cause: Exception = None):
        super().__init__(message)
        self.cid = cid
        self.digest = digest
        self.cause = cause


# --- anchor contract failures ---

class AnchorError(MemoryChainError):
    pass


class NotFound(AnchorError):
    """The address has never anchored (pointer is the zero digest)."""
    pass


class Unauthorized(AnchorError):
    """The signing identity may not update the pointer."""
    pass


class TransactionFailure(AnchorError):
    """Submission, execution or confirmation of a ledger call failed."""

    def __init__(self, message: str, tx_hash: str = ""):
        super().__init__(message)
        self.tx_hash = tx_hash


# --- watcher-internal ---

class TransportError(MemoryChainError):
    """Underlying event connection failed. Recovered inside the watcher."""
    pass


class DecodeError(MemoryChainError):
    """Malformed CID, digest or event payload."""
    pass


class VerificationError(MemoryChainError):
    pass
