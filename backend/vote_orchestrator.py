"""Single-flight vote pipeline for one voter session.

A vote attempt moves through

    Idle -> AwaitingSignature -> Submitted -> AwaitingConfirmation
         -> Confirmed -> AwaitingServerVerification -> Recorded

and can leave early as Rejected, ChainFailed, VerificationFailed or
AlreadyVoted. Once a transaction hash exists the attempt is written to the
``AttemptStore`` and is only ever re-polled or re-verified, never signed a
second time. Only one thread drives a given (user, election) attempt; other
callers get a snapshot of it.
"""

import dataclasses
import logging
import threading
import time
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from attempt_store import AttemptStore
from config import Settings
from errors import (
    ChainRejected,
    LedgerError,
    LedgerUnavailable,
    SignatureRejectedError,
    SignerError,
    TransactionDropped,
    VerificationError,
    VoteError,
    VoteErrorCode,
)
from ledger_client import AlgorandLedgerClient
from models import Election, TransactionReceipt, VoteIntent, utcnow
from signer import WalletSigner
from verification_client import DUPLICATE, VerificationClient

logger = logging.getLogger(__name__)


class VoteState(str, Enum):
    IDLE = "Idle"
    AWAITING_SIGNATURE = "AwaitingSignature"
    SUBMITTED = "Submitted"
    AWAITING_CONFIRMATION = "AwaitingConfirmation"
    CONFIRMED = "Confirmed"
    AWAITING_SERVER_VERIFICATION = "AwaitingServerVerification"
    RECORDED = "Recorded"
    REJECTED = "Rejected"
    CHAIN_FAILED = "ChainFailed"
    VERIFICATION_FAILED = "VerificationFailed"
    ALREADY_VOTED = "AlreadyVoted"


TERMINAL_STATES = frozenset({VoteState.RECORDED, VoteState.REJECTED, VoteState.CHAIN_FAILED, VoteState.ALREADY_VOTED})
VOTED_STATES = frozenset({VoteState.RECORDED, VoteState.ALREADY_VOTED})


@dataclass
class VoteSession:
    """Who is voting: the Store identity, its bearer token and linked wallet."""

    user_id: int
    token: str
    wallet_address: str | None = None
    voted_elections: set[int] = field(default_factory=set)

    def has_voted(self, election_id: int) -> bool:
        return election_id in self.voted_elections

    def mark_voted(self, election_id: int) -> None:
        self.voted_elections.add(election_id)


@dataclass
class VoteAttempt:
    user_id: int
    election_id: int
    candidate_id: int
    state: VoteState = VoteState.IDLE
    transaction_hash: str | None = None
    sender: str | None = None
    last_valid_round: int | None = None
    block_number: int | None = None
    error: VoteError | None = None
    duplicate: bool = False
    refused: bool = False
    verification_attempts: int = 0
    history: list[VoteState] = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def intent(self) -> VoteIntent:
        return VoteIntent(self.user_id, self.election_id, self.candidate_id)

    def to_entry(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "election_id": self.election_id,
            "candidate_id": self.candidate_id,
            "state": self.state.value,
            "transaction_hash": self.transaction_hash,
            "sender": self.sender,
            "last_valid_round": self.last_valid_round,
            "block_number": self.block_number,
            "error_code": self.error.code.value if self.error else None,
            "error_detail": self.error.detail if self.error else "",
            "verification_attempts": self.verification_attempts,
            "refused": self.refused,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_entry(cls, entry: dict[str, Any]) -> "VoteAttempt":
        error = None
        if entry.get("error_code"):
            error = VoteError(VoteErrorCode(entry["error_code"]), entry.get("error_detail", ""))
        return cls(
            user_id=int(entry["user_id"]),
            election_id=int(entry["election_id"]),
            candidate_id=int(entry["candidate_id"]),
            state=VoteState(entry["state"]),
            transaction_hash=entry.get("transaction_hash"),
            sender=entry.get("sender"),
            last_valid_round=entry.get("last_valid_round"),
            block_number=entry.get("block_number"),
            error=error,
            verification_attempts=int(entry.get("verification_attempts", 0)),
            refused=bool(entry.get("refused", False)),
            updated_at=datetime.fromisoformat(entry["updated_at"]) if entry.get("updated_at") else utcnow(),
        )


class VoteOrchestrator:
    def __init__(
        self,
        session: VoteSession,
        ledger: AlgorandLedgerClient,
        verifier: VerificationClient,
        signer: WalletSigner,
        attempts: AttemptStore,
        elections: Iterable[Election] = (),
        signature_timeout: float = 120.0,
        confirmation_timeout_rounds: int | None = None,
        verify_max_attempts: int = 5,
        verify_backoff: float = 1.0,
        poll_interval: float = 0.05,
    ) -> None:
        self.session = session
        self.ledger = ledger
        self.verifier = verifier
        self.signer = signer
        self.attempts = attempts
        self.signature_timeout = signature_timeout
        self.confirmation_timeout_rounds = confirmation_timeout_rounds
        self.verify_max_attempts = max(1, verify_max_attempts)
        self.verify_backoff = verify_backoff
        self.poll_interval = poll_interval
        self._elections: dict[int, Election] = {e.id: e for e in elections}
        self._guard = threading.Lock()
        self._inflight: dict[tuple[int, int], VoteAttempt] = {}
        self._driving: set[tuple[int, int]] = set()
        self._cancel_events: dict[tuple[int, int], threading.Event] = {}
        self._reconcile_stop: threading.Event | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session: VoteSession,
        signer: WalletSigner,
        elections: Iterable[Election] = (),
    ) -> "VoteOrchestrator":
        """Build a client from configuration and start its background reconcile pass."""
        orchestrator = cls(
            session,
            AlgorandLedgerClient.from_settings(settings),
            VerificationClient(settings.store_url, session.token, timeout=settings.store_timeout_seconds),
            signer,
            AttemptStore(settings.attempt_store_path),
            elections=elections,
            signature_timeout=settings.signature_timeout_seconds,
            confirmation_timeout_rounds=settings.tx_timeout_rounds,
            verify_max_attempts=settings.verify_max_attempts,
            verify_backoff=settings.verify_backoff_seconds,
        )
        orchestrator.start_reconciler(settings.client_reconcile_interval_seconds)
        return orchestrator

    def start_reconciler(self, interval: float) -> bool:
        """Run ``reconcile_pending`` every ``interval`` seconds on a daemon thread."""
        with self._guard:
            if interval <= 0 or self._reconcile_stop is not None:
                return False
            self._reconcile_stop = stop_event = threading.Event()

        def run() -> None:
            while not stop_event.is_set():
                try:
                    for attempt in self.reconcile_pending():
                        logger.info("Reconciled election %s: %s", attempt.election_id, attempt.state.value)
                except Exception:  # noqa: BLE001
                    logger.exception("Background reconcile pass failed")
                stop_event.wait(interval)

        threading.Thread(target=run, name="vote-reconcile", daemon=True).start()
        return True

    def stop_reconciler(self) -> None:
        with self._guard:
            stop_event, self._reconcile_stop = self._reconcile_stop, None
        if stop_event is not None:
            stop_event.set()

    def _key(self, election_id: int) -> tuple[int, int]:
        return (self.session.user_id, election_id)

    def load_elections(self, elections: Iterable[Election]) -> None:
        with self._guard:
            for election in elections:
                self._elections[election.id] = election

    def refresh(self) -> list[Election]:
        """Reload open elections and this voter's status from the Store."""
        elections = self.verifier.active_elections()
        self.load_elections(elections)
        for election in elections:
            if self.verifier.has_voted(election.id):
                self.session.mark_voted(election.id)
        return elections

    def _snapshot(self, attempt: VoteAttempt) -> VoteAttempt:
        return dataclasses.replace(attempt, history=list(attempt.history))

    def _fast_fail(self, election_id: int, candidate_id: int, state: VoteState, code: VoteErrorCode, detail: str = "") -> VoteAttempt:
        logger.info("Vote in election %s refused before signing: %s", election_id, code.value)
        return VoteAttempt(
            user_id=self.session.user_id,
            election_id=election_id,
            candidate_id=candidate_id,
            state=state,
            error=VoteError(code, detail),
            history=[state],
        )

    def _persist(self, attempt: VoteAttempt) -> None:
        if attempt.transaction_hash:
            self.attempts.save(attempt.user_id, attempt.election_id, attempt.to_entry())

    def _transition(self, attempt: VoteAttempt, state: VoteState) -> None:
        with self._guard:
            logger.debug("Attempt %s/%s: %s -> %s", attempt.user_id, attempt.election_id, attempt.state.value, state.value)
            attempt.state = state
            attempt.history.append(state)
            attempt.updated_at = utcnow()
        self._persist(attempt)

    def _finish(self, attempt: VoteAttempt, state: VoteState, code: VoteErrorCode | None = None, detail: str = "") -> VoteAttempt:
        key = self._key(attempt.election_id)
        with self._guard:
            attempt.state = state
            attempt.history.append(state)
            attempt.error = VoteError(code, detail) if code else None
            attempt.updated_at = utcnow()
            self._inflight.pop(key, None)
            self._cancel_events.pop(key, None)
        if state in VOTED_STATES:
            self.session.mark_voted(attempt.election_id)
            self.attempts.save(attempt.user_id, attempt.election_id, attempt.to_entry())
        else:
            self.attempts.delete(attempt.user_id, attempt.election_id)
        logger.info(
            "Vote attempt for election %s finished as %s%s",
            attempt.election_id,
            state.value,
            f" ({code.value})" if code else "",
        )
        return self._snapshot(attempt)

    def _park(self, attempt: VoteAttempt, code: VoteErrorCode, detail: str = "", state: VoteState | None = None) -> VoteAttempt:
        with self._guard:
            if state is not None:
                attempt.state = state
                attempt.history.append(state)
            attempt.error = VoteError(code, detail)
            attempt.updated_at = utcnow()
        self._persist(attempt)
        logger.warning(
            "Vote attempt for election %s parked in %s (%s); transaction %s will be checked again",
            attempt.election_id,
            attempt.state.value,
            code.value,
            attempt.transaction_hash,
        )
        return self._snapshot(attempt)

    def begin_vote(self, election_id: int, candidate_id: int) -> VoteAttempt:
        key = self._key(election_id)
        resume = False
        with self._guard:
            current = self._inflight.get(key)
            if current is not None:
                if key in self._driving or current.transaction_hash is None:
                    return self._snapshot(current)
                self._driving.add(key)
                attempt = current
                resume = True

        if not resume:
            stored = self.attempts.load(*key)
            if self.session.has_voted(election_id) or (stored and VoteState(stored["state"]) in VOTED_STATES):
                self.session.mark_voted(election_id)
                return self._fast_fail(election_id, candidate_id, VoteState.ALREADY_VOTED, VoteErrorCode.ALREADY_VOTED)
            if stored and stored.get("transaction_hash"):
                attempt = VoteAttempt.from_entry(stored)
                resume = True
            else:
                election = self._elections.get(election_id)
                if election is None:
                    return self._fast_fail(election_id, candidate_id, VoteState.IDLE, VoteErrorCode.ELECTION_CLOSED, "unknown election")
                if not election.is_open():
                    return self._fast_fail(election_id, candidate_id, VoteState.IDLE, VoteErrorCode.ELECTION_CLOSED)
                if not election.has_candidate(candidate_id):
                    raise ValueError(f"Candidate {candidate_id} is not part of election {election_id}")
                if not self.session.wallet_address or self.signer.address != self.session.wallet_address:
                    return self._fast_fail(
                        election_id,
                        candidate_id,
                        VoteState.REJECTED,
                        VoteErrorCode.SIGNER_UNAVAILABLE,
                        "no linked wallet",
                    )
                attempt = VoteAttempt(
                    user_id=self.session.user_id,
                    election_id=election_id,
                    candidate_id=candidate_id,
                    state=VoteState.AWAITING_SIGNATURE,
                    history=[VoteState.AWAITING_SIGNATURE],
                )

            with self._guard:
                current = self._inflight.get(key)
                if current is not None:
                    return self._snapshot(current)
                self._inflight[key] = attempt
                self._driving.add(key)
                if not resume:
                    self._cancel_events[key] = threading.Event()

        try:
            if resume:
                return self._continue(attempt)
            return self._run(attempt)
        except Exception as exc:
            if attempt.transaction_hash is not None:
                raise
            # no transaction hash yet: nothing reached the ledger
            logger.exception("Vote attempt for election %s failed before signing", election_id)
            return self._finish(attempt, VoteState.REJECTED, VoteErrorCode.SIGNER_UNAVAILABLE, str(exc))
        finally:
            with self._guard:
                self._driving.discard(key)

    def resume(self, election_id: int) -> VoteAttempt | None:
        """Continue a submitted attempt: re-poll confirmation or re-verify."""
        key = self._key(election_id)
        with self._guard:
            attempt = self._inflight.get(key)
            if attempt is not None and (key in self._driving or attempt.transaction_hash is None):
                return self._snapshot(attempt)
        if attempt is None:
            stored = self.attempts.load(*key)
            if not stored:
                return None
            attempt = VoteAttempt.from_entry(stored)
            if attempt.terminal or not attempt.transaction_hash:
                return attempt
        with self._guard:
            current = self._inflight.get(key)
            if current is not None and (current is not attempt or key in self._driving):
                return self._snapshot(current)
            self._inflight[key] = attempt
            self._driving.add(key)
        try:
            return self._continue(attempt)
        finally:
            with self._guard:
                self._driving.discard(key)

    def reconcile_pending(self) -> list[VoteAttempt]:
        """Background pass over every stored attempt that still has work left.

        Attempts the Store refused outright are left for an explicit ``resume``.
        """
        results = []
        for entry in self.attempts.for_user(self.session.user_id):
            if VoteState(entry["state"]) in TERMINAL_STATES or not entry.get("transaction_hash"):
                continue
            if entry.get("refused"):
                continue
            attempt = self.resume(int(entry["election_id"]))
            if attempt is not None:
                results.append(attempt)
        return results

    def cancel(self, election_id: int) -> bool:
        """Cancel an attempt that is still waiting for the wallet."""
        key = self._key(election_id)
        with self._guard:
            attempt = self._inflight.get(key)
            event = self._cancel_events.get(key)
            if attempt is None or event is None or attempt.state != VoteState.AWAITING_SIGNATURE:
                return False
            event.set()
            return True

    def status(self, election_id: int) -> VoteAttempt | None:
        key = self._key(election_id)
        with self._guard:
            attempt = self._inflight.get(key)
            if attempt is not None:
                return self._snapshot(attempt)
        stored = self.attempts.load(*key)
        return VoteAttempt.from_entry(stored) if stored else None

    def _continue(self, attempt: VoteAttempt) -> VoteAttempt:
        logger.info("Resuming vote attempt for election %s from %s", attempt.election_id, attempt.state.value)
        if attempt.state in (VoteState.CONFIRMED, VoteState.AWAITING_SERVER_VERIFICATION, VoteState.VERIFICATION_FAILED):
            return self._verify(attempt)
        return self._confirm(attempt)

    def _run(self, attempt: VoteAttempt) -> VoteAttempt:
        try:
            txn = self.ledger.build_vote_transaction(self.signer.address, attempt.election_id, attempt.candidate_id)
        except LedgerError as exc:
            return self._finish(attempt, VoteState.CHAIN_FAILED, VoteErrorCode.CHAIN_SUBMISSION_FAILED, str(exc))

        signed, failure = self._await_signature(attempt, txn)
        if signed is None:
            code, detail = failure
            return self._finish(attempt, VoteState.REJECTED, code, detail)

        with self._guard:
            attempt.transaction_hash = signed.get_txid()
            attempt.sender = self.signer.address
            attempt.last_valid_round = txn.last_valid_round
            self._cancel_events.pop(self._key(attempt.election_id), None)
        self._transition(attempt, VoteState.SUBMITTED)

        try:
            self.ledger.submit_vote(signed)
        except ChainRejected as exc:
            if exc.already_voted:
                return self._finish(attempt, VoteState.ALREADY_VOTED, VoteErrorCode.ALREADY_VOTED, exc.reason)
            if exc.election_closed:
                return self._finish(attempt, VoteState.CHAIN_FAILED, VoteErrorCode.ELECTION_CLOSED, exc.reason)
            return self._finish(attempt, VoteState.CHAIN_FAILED, VoteErrorCode.CHAIN_REVERTED, exc.reason)
        except LedgerUnavailable as exc:
            try:
                known = self.ledger.fetch_receipt(attempt.transaction_hash) is not None
            except LedgerError:
                return self._park(attempt, VoteErrorCode.CONFIRMATION_TIMED_OUT, str(exc), state=VoteState.AWAITING_CONFIRMATION)
            if not known:
                return self._finish(attempt, VoteState.CHAIN_FAILED, VoteErrorCode.CHAIN_SUBMISSION_FAILED, str(exc))
        return self._confirm(attempt)

    def _prompt_wallet(self, txn) -> Future:
        # one thread per prompt; an abandoned prompt must not hold up the next one
        future: Future = Future()

        def sign() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.signer.sign(txn))
            except Exception as exc:
                future.set_exception(exc)

        threading.Thread(target=sign, name="wallet-signer", daemon=True).start()
        return future

    def _await_signature(self, attempt: VoteAttempt, txn) -> tuple[Any, tuple[VoteErrorCode, str] | None]:
        cancel_event = self._cancel_events.get(self._key(attempt.election_id)) or threading.Event()
        future = self._prompt_wallet(txn)
        deadline = time.monotonic() + self.signature_timeout
        while True:
            done, _ = wait([future], timeout=self.poll_interval)
            if cancel_event.is_set():
                future.cancel()
                return None, (VoteErrorCode.USER_REJECTED_SIGNATURE, "cancelled")
            if done:
                break
            if time.monotonic() >= deadline:
                future.cancel()
                return None, (VoteErrorCode.SIGNER_UNAVAILABLE, "signature request timed out")
        try:
            return future.result(), None
        except SignatureRejectedError as exc:
            return None, (VoteErrorCode.USER_REJECTED_SIGNATURE, str(exc))
        except SignerError as exc:
            return None, (VoteErrorCode.SIGNER_UNAVAILABLE, str(exc))
        except Exception as exc:
            logger.exception("Wallet failed while signing the vote in election %s", attempt.election_id)
            return None, (VoteErrorCode.SIGNER_UNAVAILABLE, str(exc))

    def _confirm(self, attempt: VoteAttempt) -> VoteAttempt:
        if attempt.state != VoteState.AWAITING_CONFIRMATION:
            self._transition(attempt, VoteState.AWAITING_CONFIRMATION)
        try:
            confirmation = self.ledger.await_confirmation(
                attempt.transaction_hash,
                timeout_rounds=self.confirmation_timeout_rounds,
                last_valid_round=attempt.last_valid_round,
                election_id=attempt.election_id,
                sender=self._sender_of(attempt),
            )
        except TransactionDropped as exc:
            return self._dropped(attempt, exc)
        except LedgerUnavailable as exc:
            return self._park(attempt, VoteErrorCode.CONFIRMATION_TIMED_OUT, str(exc))
        if not confirmation.confirmed:
            return self._park(attempt, VoteErrorCode.CONFIRMATION_TIMED_OUT)

        receipt: TransactionReceipt = confirmation.receipt
        event = receipt.vote_event()
        if not receipt.success or event is None:
            return self._finish(attempt, VoteState.CHAIN_FAILED, VoteErrorCode.CHAIN_REVERTED, "transaction carries no vote event")
        with self._guard:
            attempt.block_number = receipt.block_number
            attempt.error = None
        self._transition(attempt, VoteState.CONFIRMED)
        return self._verify(attempt)

    def _sender_of(self, attempt: VoteAttempt) -> str:
        return attempt.sender or self.session.wallet_address or self.signer.address

    def _dropped(self, attempt: VoteAttempt, exc: TransactionDropped) -> VoteAttempt:
        # another transaction from this wallet may have voted in the meantime
        try:
            voted = self.ledger.has_voted(attempt.election_id, self._sender_of(attempt))
        except LedgerError as lookup_exc:
            return self._park(attempt, VoteErrorCode.CONFIRMATION_TIMED_OUT, str(lookup_exc))
        if voted:
            return self._finish(attempt, VoteState.ALREADY_VOTED, VoteErrorCode.ALREADY_VOTED, str(exc))
        return self._finish(attempt, VoteState.CHAIN_FAILED, VoteErrorCode.CHAIN_REVERTED, str(exc))

    def _verify(self, attempt: VoteAttempt) -> VoteAttempt:
        with self._guard:
            attempt.refused = False
        self._transition(attempt, VoteState.AWAITING_SERVER_VERIFICATION)
        last_exc: VerificationError | None = None
        for n in range(1, self.verify_max_attempts + 1):
            with self._guard:
                attempt.verification_attempts += 1
            try:
                status = self.verifier.verify_vote(attempt.transaction_hash, attempt.election_id, attempt.candidate_id)
            except VerificationError as exc:
                last_exc = exc
                if not exc.retryable:
                    with self._guard:
                        attempt.refused = True
                    break
                if n < self.verify_max_attempts:
                    delay = self.verify_backoff * (2 ** (n - 1))
                    logger.warning(
                        "Verification of %s failed with %s (attempt %d/%d); retrying in %.1fs",
                        attempt.transaction_hash,
                        exc.code,
                        n,
                        self.verify_max_attempts,
                        delay,
                    )
                    time.sleep(delay)
                continue
            attempt.duplicate = status == DUPLICATE
            return self._finish(attempt, VoteState.RECORDED, VoteErrorCode.DUPLICATE_IGNORED if attempt.duplicate else None)

        logger.error(
            "Verification of %s failed after %d attempts",
            attempt.transaction_hash,
            attempt.verification_attempts,
            exc_info=last_exc,
        )
        return self._park(attempt, VoteErrorCode.VERIFICATION_FAILED, str(last_exc), state=VoteState.VERIFICATION_FAILED)
