import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from algosdk import encoding, transaction
from algosdk.error import AlgodHTTPError, IndexerHTTPError
from algosdk.v2client import algod, indexer

from config import Settings
from errors import ChainRejected, LedgerUnavailable, TransactionDropped
from models import Candidate, Election, TransactionReceipt, from_unix, to_unix
from signer import WalletSigner

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIRMED = "confirmed"
TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class Confirmation:
    status: str
    receipt: TransactionReceipt | None = None

    @property
    def confirmed(self) -> bool:
        return self.status == CONFIRMED


def _u64(value: int) -> bytes:
    return int(value).to_bytes(8, "big")


def _is_not_found(exc: Exception) -> bool:
    return isinstance(exc, (AlgodHTTPError, IndexerHTTPError)) and getattr(exc, "code", None) == 404


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, (AlgodHTTPError, IndexerHTTPError)):
        code = getattr(exc, "code", None)
        return code is None or code >= 500 or code == 429
    return isinstance(exc, (OSError, TimeoutError))


def _normalize_address(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, bytes):
        return encoding.encode_address(value)
    if len(value) == 58:
        return value
    return encoding.encode_address(base64.b64decode(value))


def _b64_list(values: list[str] | None) -> tuple[bytes, ...]:
    return tuple(base64.b64decode(v) for v in values or [])


class AlgorandLedgerClient:
    def __init__(
        self,
        algod_client: algod.AlgodClient,
        app_id: int,
        indexer_client: indexer.IndexerClient | None = None,
        timeout_rounds: int = 12,
        min_confirmations: int = 0,
        read_retries: int = 3,
        retry_base_delay: float = 0.5,
    ) -> None:
        if app_id <= 0:
            raise RuntimeError("ALGORAND_APP_ID must be set to a deployed application id")
        self.algod = algod_client
        self.indexer = indexer_client
        self.app_id = app_id
        self.timeout_rounds = timeout_rounds
        self.min_confirmations = min_confirmations
        self.read_retries = max(1, read_retries)
        self.retry_base_delay = retry_base_delay

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlgorandLedgerClient":
        if not settings.algod_address:
            raise RuntimeError("ALGORAND_ALGOD_ADDRESS is required")
        algod_client = algod.AlgodClient(
            algod_token=settings.algod_token,
            algod_address=settings.algod_address,
            headers={"X-API-Key": settings.algod_token} if settings.algod_token else {},
        )
        indexer_client = None
        if settings.indexer_address:
            indexer_client = indexer.IndexerClient(
                indexer_token=settings.indexer_token,
                indexer_address=settings.indexer_address,
                headers={"X-API-Key": settings.indexer_token} if settings.indexer_token else {},
            )
        return cls(
            algod_client,
            settings.app_id,
            indexer_client=indexer_client,
            timeout_rounds=settings.tx_timeout_rounds,
            min_confirmations=settings.min_confirmations,
            read_retries=settings.ledger_read_retries,
            retry_base_delay=settings.ledger_retry_base_delay,
        )

    # box names mirror smart_contract.py

    @staticmethod
    def election_box(election_id: int) -> bytes:
        return b"e" + _u64(election_id)

    @staticmethod
    def candidate_box(election_id: int, candidate_id: int) -> bytes:
        return b"c" + _u64(election_id) + _u64(candidate_id)

    @staticmethod
    def voter_box(election_id: int, address: str) -> bytes:
        return b"v" + _u64(election_id) + encoding.decode_address(address)

    def _retrying(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        last_exc: Exception | None = None
        for attempt in range(1, self.read_retries + 1):
            try:
                return func(*args)
            except Exception as exc:  # noqa: BLE001
                if not _is_transient(exc):
                    raise
                last_exc = exc
                if attempt < self.read_retries:
                    delay = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "Ledger %s failed (attempt %d/%d); retrying in %.1fs",
                        operation,
                        attempt,
                        self.read_retries,
                        delay,
                        exc_info=True,
                    )
                    time.sleep(delay)
        logger.error("Ledger %s failed after %d attempts", operation, self.read_retries, exc_info=last_exc)
        raise LedgerUnavailable(f"Ledger {operation} failed: {last_exc}") from last_exc

    def _box(self, name: bytes) -> bytes | None:
        try:
            resp = self._retrying("box read", self.algod.application_box_by_name, self.app_id, name)
        except (AlgodHTTPError, IndexerHTTPError) as exc:
            if _is_not_found(exc):
                return None
            raise
        return base64.b64decode(resp["value"])

    def current_round(self) -> int:
        return int(self._retrying("status", self.algod.status)["last-round"])

    def election_count(self) -> int:
        app_info = self._retrying("application info", self.algod.application_info, self.app_id)
        for entry in app_info["params"].get("global-state", []):
            if base64.b64decode(entry["key"]) == b"election_count":
                return int(entry["value"].get("uint", 0))
        return 0

    def read_election(self, election_id: int) -> Election | None:
        header = self._box(self.election_box(election_id))
        if header is None:
            return None
        title = self._box(b"et" + _u64(election_id)) or b""
        description = self._box(b"ed" + _u64(election_id)) or b""
        return Election(
            id=election_id,
            title=title.decode("utf-8"),
            description=description.decode("utf-8"),
            start_at=from_unix(int.from_bytes(header[0:8], "big")),
            end_at=from_unix(int.from_bytes(header[8:16], "big")),
            closed=int.from_bytes(header[16:24], "big") != 0,
            candidate_count=int.from_bytes(header[24:32], "big"),
        )

    def read_candidate(self, election_id: int, candidate_id: int) -> Candidate | None:
        count = self._box(self.candidate_box(election_id, candidate_id))
        if count is None:
            return None
        key_suffix = _u64(election_id) + _u64(candidate_id)
        name = self._box(b"cn" + key_suffix) or b""
        party = self._box(b"cp" + key_suffix) or b""
        return Candidate(
            id=candidate_id,
            name=name.decode("utf-8"),
            party=party.decode("utf-8"),
            vote_count=int.from_bytes(count, "big"),
        )

    def read_election_with_candidates(self, election_id: int) -> Election | None:
        election = self.read_election(election_id)
        if election is None:
            return None
        candidates = []
        for candidate_id in range(1, election.candidate_count + 1):
            candidate = self.read_candidate(election_id, candidate_id)
            if candidate is not None:
                candidates.append(candidate)
        return Election(
            id=election.id,
            title=election.title,
            description=election.description,
            start_at=election.start_at,
            end_at=election.end_at,
            closed=election.closed,
            candidate_count=election.candidate_count,
            candidates=tuple(candidates),
        )

    def read_tally(self, election_id: int) -> dict[int, int]:
        election = self.read_election_with_candidates(election_id)
        if election is None:
            return {}
        return {c.id: c.vote_count for c in election.candidates}

    def read_voter_marker(self, election_id: int, address: str) -> tuple[int, int] | None:
        """Return (candidate id, commit round) for a voter who has voted, else None."""
        value = self._box(self.voter_box(election_id, address))
        if value is None:
            return None
        return int.from_bytes(value[0:8], "big"), int.from_bytes(value[8:16], "big")

    def has_voted(self, election_id: int, address: str) -> bool:
        return self.read_voter_marker(election_id, address) is not None

    def build_vote_transaction(self, sender: str, election_id: int, candidate_id: int) -> transaction.Transaction:
        sp = self._retrying("suggested params", self.algod.suggested_params)
        return transaction.ApplicationNoOpTxn(
            sender=sender,
            sp=sp,
            index=self.app_id,
            app_args=[b"vote", _u64(election_id), _u64(candidate_id)],
            boxes=[
                (self.app_id, self.election_box(election_id)),
                (self.app_id, self.candidate_box(election_id, candidate_id)),
                (self.app_id, self.voter_box(election_id, sender)),
            ],
        )

    def submit_vote(self, signed: transaction.SignedTransaction) -> str:
        """Send a signed vote and return its transaction hash without waiting."""
        return self._send(signed)

    def _send(self, signed: transaction.SignedTransaction) -> str:
        tx_id = signed.get_txid()
        last_exc: Exception | None = None
        for attempt in range(1, self.read_retries + 1):
            try:
                return self.algod.send_transaction(signed)
            except Exception as exc:  # noqa: BLE001
                if "already in" in str(exc):
                    return tx_id
                if not _is_transient(exc):
                    raise self._classify_rejection(signed.transaction, exc) from exc
                last_exc = exc
                if attempt < self.read_retries:
                    delay = self.retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "Sending %s failed (attempt %d/%d); retrying in %.1fs",
                        tx_id,
                        attempt,
                        self.read_retries,
                        delay,
                    )
                    time.sleep(delay)
        raise LedgerUnavailable(f"Could not send transaction {tx_id}: {last_exc}") from last_exc

    def _classify_rejection(self, txn: transaction.Transaction, exc: Exception) -> ChainRejected:
        reason = str(exc)
        args = list(getattr(txn, "app_args", None) or [])
        if len(args) != 3 or args[0] != b"vote":
            return ChainRejected(reason)
        election_id = int.from_bytes(args[1], "big")
        try:
            already_voted = self.has_voted(election_id, txn.sender)
            election = self.read_election(election_id)
        except LedgerUnavailable:
            logger.warning("Could not classify rejection of vote in election %s", election_id, exc_info=True)
            return ChainRejected(reason)
        election_closed = election is None or not election.is_open()
        return ChainRejected(reason, already_voted=already_voted, election_closed=election_closed)

    def _lookup_tx(self, tx_id: str) -> dict[str, Any] | None:
        if self.indexer:
            try:
                resp = self._retrying("indexer lookup", lambda: self.indexer.search_transactions(txid=tx_id))
            except IndexerHTTPError as exc:
                if not _is_not_found(exc):
                    raise
            else:
                txns = resp.get("transactions", [])
                if txns:
                    return txns[0]
        try:
            return self._retrying("pending lookup", self.algod.pending_transaction_info, tx_id)
        except AlgodHTTPError as exc:
            if _is_not_found(exc):
                return None
            raise

    def _receipt_from(self, tx_id: str, tx: dict[str, Any]) -> TransactionReceipt:
        confirmed_round = int(tx.get("confirmed-round", 0))
        if "tx-type" in tx:
            app_txn = tx.get("application-transaction", {})
            return TransactionReceipt(
                transaction_hash=tx.get("id", tx_id),
                block_number=confirmed_round,
                sender=_normalize_address(tx.get("sender")),
                application_id=int(app_txn.get("application-id", 0)),
                app_args=_b64_list(app_txn.get("application-args")),
                logs=_b64_list(tx.get("logs")),
                success=tx.get("tx-type") == "appl" and confirmed_round > 0,
                block_timestamp=int(tx.get("round-time", 0)),
            )

        txn = tx.get("txn", {}).get("txn", {})
        return TransactionReceipt(
            transaction_hash=tx_id,
            block_number=confirmed_round,
            sender=_normalize_address(txn.get("snd")),
            application_id=int(txn.get("apid", 0)),
            app_args=_b64_list(txn.get("apaa")),
            logs=_b64_list(tx.get("logs")),
            success=txn.get("type") == "appl" and confirmed_round > 0 and not tx.get("pool-error"),
        )

    def _receipt_from_marker(self, tx_id: str, election_id: int, sender: str) -> TransactionReceipt | None:
        """Rebuild a vote receipt from committed state once the node no longer serves the transaction.

        The voter box names the candidate and the round the vote committed in;
        a transaction proof for that round ties the vote to ``tx_id``. Returns
        None when the marker is missing or belongs to another transaction.
        """
        marker = self.read_voter_marker(election_id, sender)
        if marker is None:
            return None
        candidate_id, confirmed_round = marker
        try:
            self._retrying("transaction proof", self.algod.transaction_proof, confirmed_round, tx_id)
        except AlgodHTTPError as exc:
            if _is_not_found(exc):
                return None
            raise
        return TransactionReceipt(
            transaction_hash=tx_id,
            block_number=confirmed_round,
            sender=sender,
            application_id=self.app_id,
            app_args=(b"vote", _u64(election_id), _u64(candidate_id)),
            logs=(b"voted" + _u64(election_id) + _u64(candidate_id) + encoding.decode_address(sender),),
        )

    def fetch_receipt(
        self,
        tx_id: str,
        election_id: int | None = None,
        sender: str | None = None,
    ) -> TransactionReceipt | None:
        """Look a transaction up; with a vote's election and sender, fall back to the voter box."""
        tx = self._lookup_tx(tx_id)
        if tx is not None:
            return self._receipt_from(tx_id, tx)
        if election_id is not None and sender:
            return self._receipt_from_marker(tx_id, election_id, sender)
        return None

    def await_confirmation(
        self,
        tx_id: str,
        timeout_rounds: int | None = None,
        last_valid_round: int | None = None,
        election_id: int | None = None,
        sender: str | None = None,
    ) -> Confirmation:
        """Poll until ``tx_id`` is committed ``min_confirmations`` rounds deep.

        Returns a timed-out confirmation when the budget runs out; that says
        nothing about whether the vote happened. Raises ``TransactionDropped``
        only when absence is proven: the node reports a pool error, or the
        transaction is past its last valid round and neither the indexer nor
        the voter box (when ``election_id`` and ``sender`` are given) knows it.
        Without either source an expired transaction times out instead, since
        algod forgets confirmed transactions.
        """
        can_prove_absence = self.indexer is not None or (election_id is not None and bool(sender))
        timeout = timeout_rounds if timeout_rounds is not None else self.timeout_rounds
        start_round = self.current_round()
        current_round = start_round
        while current_round <= start_round + timeout:
            tx = self._lookup_tx(tx_id)
            if tx is None:
                receipt = None
                if election_id is not None and sender:
                    receipt = self._receipt_from_marker(tx_id, election_id, sender)
                if receipt is not None:
                    if current_round >= receipt.block_number + self.min_confirmations:
                        return Confirmation(CONFIRMED, receipt)
                elif last_valid_round is not None and current_round > last_valid_round:
                    if can_prove_absence:
                        raise TransactionDropped(f"Transaction {tx_id} expired at round {last_valid_round}")
                    logger.warning("Transaction %s is past its last valid round and cannot be located", tx_id)
                    break
            else:
                pool_error = tx.get("pool-error")
                if pool_error:
                    raise TransactionDropped(f"Transaction rejected: {pool_error}")
                confirmed_round = int(tx.get("confirmed-round", 0))
                if confirmed_round > 0 and current_round >= confirmed_round + self.min_confirmations:
                    return Confirmation(CONFIRMED, self._receipt_from(tx_id, tx))
            if current_round == start_round + timeout:
                break
            self._retrying("status after block", self.algod.status_after_block, current_round)
            current_round += 1
        logger.info("Transaction %s not final after %d rounds", tx_id, timeout)
        return Confirmation(TIMED_OUT)

    def _admin_call(
        self,
        signer: WalletSigner,
        app_args: list[bytes],
        boxes: list[tuple[int, bytes]],
    ) -> TransactionReceipt:
        sp = self._retrying("suggested params", self.algod.suggested_params)
        txn = transaction.ApplicationNoOpTxn(
            sender=signer.address,
            sp=sp,
            index=self.app_id,
            app_args=app_args,
            boxes=boxes,
        )
        signed = signer.sign(txn)
        tx_id = self._send(signed)
        confirmation = self.await_confirmation(tx_id, last_valid_round=txn.last_valid_round)
        if not confirmation.confirmed:
            raise LedgerUnavailable(f"Transaction {tx_id} not confirmed after {self.timeout_rounds} rounds")
        return confirmation.receipt

    def create_election(
        self,
        signer: WalletSigner,
        title: str,
        description: str = "",
        start_at=None,
        end_at=None,
    ) -> int:
        election_id = self.election_count() + 1
        receipt = self._admin_call(
            signer,
            [b"create_election", title.encode("utf-8"), description.encode("utf-8"), _u64(to_unix(start_at)), _u64(to_unix(end_at))],
            [
                (self.app_id, self.election_box(election_id)),
                (self.app_id, b"et" + _u64(election_id)),
                (self.app_id, b"ed" + _u64(election_id)),
            ],
        )
        for entry in receipt.logs:
            if entry.startswith(b"election"):
                return int.from_bytes(entry[len(b"election") :], "big")
        return election_id

    def add_candidate(self, signer: WalletSigner, election_id: int, name: str, party: str = "") -> int:
        election = self.read_election(election_id)
        if election is None:
            raise ValueError(f"Election {election_id} does not exist on the ledger")
        candidate_id = election.candidate_count + 1
        key_suffix = _u64(election_id) + _u64(candidate_id)
        receipt = self._admin_call(
            signer,
            [b"add_candidate", _u64(election_id), name.encode("utf-8"), party.encode("utf-8")],
            [
                (self.app_id, self.election_box(election_id)),
                (self.app_id, b"c" + key_suffix),
                (self.app_id, b"cn" + key_suffix),
                (self.app_id, b"cp" + key_suffix),
            ],
        )
        for entry in receipt.logs:
            if entry.startswith(b"candidate"):
                return int.from_bytes(entry[-8:], "big")
        return candidate_id

    def close_election(self, signer: WalletSigner, election_id: int) -> TransactionReceipt:
        return self._admin_call(
            signer,
            [b"close_election", _u64(election_id)],
            [(self.app_id, self.election_box(election_id))],
        )
