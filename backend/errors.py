"""Error taxonomy for the vote pipeline.

Exceptions are raised across component seams (ledger, signer, store). The
orchestrator converts them into a ``VoteError`` attached to the attempt so a
caller decides how to present it from ``code`` alone.
"""

from dataclasses import dataclass
from enum import Enum


class VoteErrorCode(str, Enum):
    SIGNER_UNAVAILABLE = "SignerUnavailable"
    USER_REJECTED_SIGNATURE = "UserRejectedSignature"
    ELECTION_CLOSED = "ElectionClosed"
    ALREADY_VOTED = "AlreadyVoted"
    CHAIN_SUBMISSION_FAILED = "ChainSubmissionFailed"
    CHAIN_REVERTED = "ChainReverted"
    CONFIRMATION_TIMED_OUT = "ConfirmationTimedOut"
    VERIFICATION_FAILED = "VerificationFailed"
    DUPLICATE_IGNORED = "DuplicateIgnored"


USER_MESSAGES: dict[VoteErrorCode, str] = {
    VoteErrorCode.SIGNER_UNAVAILABLE: "Your wallet is not available. Link or unlock your wallet and try again.",
    VoteErrorCode.USER_REJECTED_SIGNATURE: "You declined the signature request. No vote was cast.",
    VoteErrorCode.ELECTION_CLOSED: "This election is not open for voting.",
    VoteErrorCode.ALREADY_VOTED: "You have already voted in this election.",
    VoteErrorCode.CHAIN_SUBMISSION_FAILED: "Your vote could not be sent to the blockchain. No vote was cast; please try again.",
    VoteErrorCode.CHAIN_REVERTED: "The blockchain rejected your vote. No vote was cast.",
    VoteErrorCode.CONFIRMATION_TIMED_OUT: "Your vote was sent and is waiting for confirmation. We'll keep checking.",
    VoteErrorCode.VERIFICATION_FAILED: "Your vote is on the blockchain but not yet recorded by the server. We'll keep checking.",
    VoteErrorCode.DUPLICATE_IGNORED: "Your vote was already recorded.",
}

PENDING_CODES = frozenset({VoteErrorCode.CONFIRMATION_TIMED_OUT, VoteErrorCode.VERIFICATION_FAILED})


@dataclass(frozen=True)
class VoteError:
    code: VoteErrorCode
    detail: str = ""

    @property
    def message(self) -> str:
        return USER_MESSAGES[self.code]

    @property
    def is_pending(self) -> bool:
        return self.code in PENDING_CODES

    def to_dict(self) -> dict[str, str | bool]:
        return {"code": self.code.value, "message": self.message, "detail": self.detail, "pending": self.is_pending}


class LedgerError(RuntimeError):
    """Base class for ledger client failures."""


class LedgerUnavailable(LedgerError):
    """Raised when the RPC endpoint cannot be reached or answers with a server error."""


class ChainRejected(LedgerError):
    """Raised when the node refuses a transaction at submission time."""

    def __init__(self, reason: str, already_voted: bool = False, election_closed: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.already_voted = already_voted
        self.election_closed = election_closed


class TransactionDropped(LedgerError):
    """Raised when a submitted transaction left the pool without being confirmed."""


class SignerError(RuntimeError):
    pass


class SignerUnavailableError(SignerError):
    pass


class SignatureRejectedError(SignerError):
    pass


# Store refusals that can clear once the ledger catches up
TRANSIENT_STORE_CODES = frozenset({"TransactionNotFound", "NotFinalized"})


class VerificationError(RuntimeError):
    """Raised by the verification client when the Store did not record the vote."""

    def __init__(self, message: str, code: str = "VerificationFailed", status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status = status

    @property
    def retryable(self) -> bool:
        if self.status is None or self.status >= 500 or self.status == 429:
            return True
        return self.code in TRANSIENT_STORE_CODES


__all__ = [
    "VoteErrorCode",
    "VoteError",
    "USER_MESSAGES",
    "LedgerError",
    "LedgerUnavailable",
    "ChainRejected",
    "TransactionDropped",
    "SignerError",
    "SignerUnavailableError",
    "SignatureRejectedError",
    "VerificationError",
]
