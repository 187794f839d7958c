import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Any

from algosdk import encoding, util
from psycopg2 import errors as pg_errors

from db import get_connection, release_connection
from errors import ChainRejected, LedgerError
from ledger_client import AlgorandLedgerClient
from models import Candidate, Election, VoteRecord, utcnow
from signer import WalletSigner

logger = logging.getLogger(__name__)

RECORDED = "recorded"
DUPLICATE = "duplicate"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id SERIAL PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    wallet TEXT UNIQUE,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS elections (
    id BIGINT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    start_at TIMESTAMPTZ,
    end_at TIMESTAMPTZ,
    closed BOOLEAN NOT NULL DEFAULT FALSE,
    synced_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS candidates (
    election_id BIGINT NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
    id BIGINT NOT NULL,
    name TEXT NOT NULL,
    party TEXT NOT NULL DEFAULT '',
    vote_count BIGINT NOT NULL DEFAULT 0,
    refreshed_at TIMESTAMPTZ DEFAULT NOW(),
    PRIMARY KEY (election_id, id)
);

CREATE TABLE IF NOT EXISTS vote_records (
    id SERIAL PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id),
    election_id BIGINT NOT NULL,
    candidate_id BIGINT NOT NULL,
    transaction_hash TEXT NOT NULL,
    recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT vote_records_unique_user_election UNIQUE (user_id, election_id),
    CONSTRAINT vote_records_unique_tx UNIQUE (transaction_hash)
);

CREATE OR REPLACE FUNCTION vote_records_immutable() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'vote_records rows are immutable';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS vote_records_no_change ON vote_records;
CREATE TRIGGER vote_records_no_change
BEFORE UPDATE OR DELETE ON vote_records
FOR EACH ROW EXECUTE FUNCTION vote_records_immutable();
"""


class StoreError(Exception):
    """A verification or admin request the Store refuses, with its HTTP mapping."""

    def __init__(self, code: str, message: str, status: int) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status


class PostgresVoteRepository:
    def ensure_schema(self) -> None:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(SCHEMA_SQL)
            conn.commit()
        finally:
            cur.close()
            release_connection(conn)

    def get_user(self, user_id: int) -> dict[str, Any] | None:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute("SELECT id, email, wallet FROM users WHERE id = %s", (user_id,))
            row = cur.fetchone()
            if not row:
                return None
            return {"id": row[0], "email": row[1], "wallet": row[2]}
        finally:
            cur.close()
            release_connection(conn)

    def get_vote_record(self, user_id: int, election_id: int) -> VoteRecord | None:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                SELECT user_id, election_id, candidate_id, transaction_hash, recorded_at
                FROM vote_records
                WHERE user_id = %s AND election_id = %s
                """,
                (user_id, election_id),
            )
            row = cur.fetchone()
            return VoteRecord(*row) if row else None
        finally:
            cur.close()
            release_connection(conn)

    def insert_vote_record(
        self,
        user_id: int,
        election_id: int,
        candidate_id: int,
        transaction_hash: str,
    ) -> tuple[VoteRecord | None, bool]:
        """Insert under the uniqueness constraints; ``created`` is False on conflict."""
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO vote_records (user_id, election_id, candidate_id, transaction_hash)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT DO NOTHING
                RETURNING user_id, election_id, candidate_id, transaction_hash, recorded_at
                """,
                (user_id, election_id, candidate_id, transaction_hash),
            )
            row = cur.fetchone()
            if row:
                conn.commit()
                return VoteRecord(*row), True

            cur.execute(
                """
                SELECT user_id, election_id, candidate_id, transaction_hash, recorded_at
                FROM vote_records
                WHERE user_id = %s AND election_id = %s
                """,
                (user_id, election_id),
            )
            existing = cur.fetchone()
            conn.commit()
            return (VoteRecord(*existing) if existing else None), False
        finally:
            cur.close()
            release_connection(conn)

    def find_user_by_wallet(self, address: str) -> dict[str, Any] | None:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute("SELECT id, email, wallet FROM users WHERE wallet = %s", (address,))
            row = cur.fetchone()
            if not row:
                return None
            return {"id": row[0], "email": row[1], "wallet": row[2]}
        finally:
            cur.close()
            release_connection(conn)

    def set_wallet(self, user_id: int, address: str) -> bool:
        """Link ``address`` to a user without one; False when the wallet is taken."""
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                "UPDATE users SET wallet = %s WHERE id = %s AND wallet IS NULL RETURNING id",
                (address, user_id),
            )
            updated = cur.fetchone() is not None
            conn.commit()
            return updated
        except pg_errors.UniqueViolation:
            conn.rollback()
            return False
        finally:
            cur.close()
            release_connection(conn)

    def list_vote_records_for_user(self, user_id: int) -> list[VoteRecord]:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                SELECT user_id, election_id, candidate_id, transaction_hash, recorded_at
                FROM vote_records
                WHERE user_id = %s
                ORDER BY recorded_at DESC
                """,
                (user_id,),
            )
            return [VoteRecord(*row) for row in cur.fetchall()]
        finally:
            cur.close()
            release_connection(conn)

    def list_vote_records(self) -> list[VoteRecord]:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                SELECT user_id, election_id, candidate_id, transaction_hash, recorded_at
                FROM vote_records
                ORDER BY id
                """
            )
            return [VoteRecord(*row) for row in cur.fetchall()]
        finally:
            cur.close()
            release_connection(conn)

    def upsert_election(self, election: Election) -> None:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                INSERT INTO elections (id, title, description, start_at, end_at, closed, synced_at)
                VALUES (%s, %s, %s, %s, %s, %s, NOW())
                ON CONFLICT (id)
                DO UPDATE SET
                    title = EXCLUDED.title,
                    description = EXCLUDED.description,
                    start_at = EXCLUDED.start_at,
                    end_at = EXCLUDED.end_at,
                    closed = elections.closed OR EXCLUDED.closed,
                    synced_at = NOW()
                """,
                (election.id, election.title, election.description, election.start_at, election.end_at, election.closed),
            )
            for candidate in election.candidates:
                cur.execute(
                    """
                    INSERT INTO candidates (election_id, id, name, party, vote_count, refreshed_at)
                    VALUES (%s, %s, %s, %s, %s, NOW())
                    ON CONFLICT (election_id, id)
                    DO UPDATE SET
                        name = EXCLUDED.name,
                        party = EXCLUDED.party,
                        vote_count = EXCLUDED.vote_count,
                        refreshed_at = NOW()
                    """,
                    (election.id, candidate.id, candidate.name, candidate.party, candidate.vote_count),
                )
            conn.commit()
        finally:
            cur.close()
            release_connection(conn)

    def mark_election_closed(self, election_id: int) -> None:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute("UPDATE elections SET closed = TRUE WHERE id = %s", (election_id,))
            conn.commit()
        finally:
            cur.close()
            release_connection(conn)

    def update_candidate_count(self, election_id: int, candidate_id: int, vote_count: int) -> None:
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                UPDATE candidates
                SET vote_count = %s, refreshed_at = NOW()
                WHERE election_id = %s AND id = %s
                """,
                (vote_count, election_id, candidate_id),
            )
            conn.commit()
        finally:
            cur.close()
            release_connection(conn)

    def list_elections(self, active_at: datetime | None = None) -> list[Election]:
        conn = get_connection()
        cur = conn.cursor()
        try:
            if active_at is None:
                cur.execute("SELECT id, title, description, start_at, end_at, closed FROM elections ORDER BY id")
            else:
                cur.execute(
                    """
                    SELECT id, title, description, start_at, end_at, closed
                    FROM elections
                    WHERE NOT closed
                    AND (start_at IS NULL OR start_at <= %s)
                    AND (end_at IS NULL OR end_at > %s)
                    ORDER BY id
                    """,
                    (active_at, active_at),
                )
            rows = cur.fetchall()
            elections = []
            for election_id, title, description, start_at, end_at, closed in rows:
                cur.execute(
                    "SELECT id, name, party, vote_count FROM candidates WHERE election_id = %s ORDER BY id",
                    (election_id,),
                )
                candidates = tuple(Candidate(*c) for c in cur.fetchall())
                elections.append(
                    Election(
                        id=election_id,
                        title=title,
                        description=description,
                        start_at=start_at,
                        end_at=end_at,
                        closed=closed,
                        candidate_count=len(candidates),
                        candidates=candidates,
                    )
                )
            return elections
        finally:
            cur.close()
            release_connection(conn)


class VoteStoreService:
    """Store-side rules: vote verification against the ledger and the tally cache."""

    def __init__(
        self,
        repository: PostgresVoteRepository,
        ledger: AlgorandLedgerClient,
        min_confirmations: int = 0,
        challenge_ttl_seconds: int = 300,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.min_confirmations = min_confirmations
        self.challenge_ttl_seconds = challenge_ttl_seconds
        self._challenges: dict[int, dict[str, Any]] = {}
        self._challenge_lock = threading.Lock()

    def _user(self, user_id: int) -> dict[str, Any]:
        user = self.repository.get_user(user_id)
        if not user:
            raise StoreError("UnknownUser", "User not found", 401)
        return user

    def _wallet_for(self, user_id: int) -> str:
        user = self._user(user_id)
        if not user.get("wallet"):
            raise StoreError("SignerUnavailable", "No wallet is linked to this account", 403)
        return user["wallet"]

    def verify_vote(
        self,
        user_id: int,
        election_id: int,
        candidate_id: int,
        transaction_hash: str,
    ) -> tuple[str, VoteRecord]:
        """Record a confirmed on-chain vote exactly once.

        The vote facts are re-derived from the ledger transaction; the
        submitted election and candidate ids must match what the transaction
        actually did. A second call for the same (user, election) returns
        ``duplicate`` with the record that already exists.
        """
        wallet = self._wallet_for(user_id)
        existing = self.repository.get_vote_record(user_id, election_id)
        if existing:
            return DUPLICATE, existing

        try:
            receipt = self.ledger.fetch_receipt(transaction_hash, election_id, wallet)
            current_round = self.ledger.current_round() if self.min_confirmations else 0
        except LedgerError as exc:
            logger.warning("Ledger unavailable while verifying %s", transaction_hash, exc_info=True)
            raise StoreError("LedgerUnavailable", f"Could not reach the ledger: {exc}", 503) from exc

        if receipt is None:
            raise StoreError("TransactionNotFound", "Transaction not found on the ledger", 404)
        if receipt.block_number <= 0:
            raise StoreError("NotFinalized", "Transaction is not confirmed yet", 409)
        if self.min_confirmations and current_round < receipt.block_number + self.min_confirmations:
            raise StoreError("NotFinalized", "Transaction is not final yet", 409)

        event = receipt.vote_event()
        mismatches = []
        if receipt.application_id != self.ledger.app_id:
            mismatches.append("application")
        if not receipt.success or event is None:
            mismatches.append("vote event")
        else:
            if event.voter != wallet or receipt.sender != wallet:
                mismatches.append("voter")
            if event.election_id != election_id:
                mismatches.append("election")
            if event.candidate_id != candidate_id:
                mismatches.append("candidate")
        if mismatches:
            logger.warning(
                "Rejected vote verification for user %s, transaction %s: mismatched %s",
                user_id,
                transaction_hash,
                ", ".join(mismatches),
            )
            raise StoreError("TransactionMismatch", f"Transaction does not prove this vote ({', '.join(mismatches)})", 422)

        record, created = self.repository.insert_vote_record(user_id, event.election_id, event.candidate_id, transaction_hash)
        if record is None:
            raise StoreError("TransactionAlreadyClaimed", "Transaction is already recorded for another vote", 409)
        if not created:
            logger.info("Vote of user %s in election %s already recorded", user_id, election_id)
            return DUPLICATE, record

        logger.info("Recorded vote of user %s in election %s (%s)", user_id, election_id, transaction_hash)
        self._refresh_candidate(event.election_id, event.candidate_id)
        return RECORDED, record

    def _refresh_candidate(self, election_id: int, candidate_id: int) -> None:
        try:
            candidate = self.ledger.read_candidate(election_id, candidate_id)
        except LedgerError:
            logger.warning("Could not refresh cached tally for election %s", election_id, exc_info=True)
            return
        if candidate is not None:
            self.repository.update_candidate_count(election_id, candidate_id, candidate.vote_count)

    def issue_wallet_challenge(self, user_id: int) -> dict[str, Any]:
        """Hand out a single-use message the user signs with the wallet to link."""
        self._user(user_id)
        expires_at = utcnow() + timedelta(seconds=self.challenge_ttl_seconds)
        message = (
            "chainballot wallet link\n"
            f"user: {user_id}\n"
            f"nonce: {secrets.token_hex(16)}\n"
            f"expires: {expires_at.isoformat()}"
        )
        with self._challenge_lock:
            self._challenges[user_id] = {"message": message, "expires_at": expires_at}
        return {"message": message, "expires_at": expires_at.isoformat()}

    def link_wallet(self, user_id: int, address: str, signature: str) -> dict[str, Any]:
        user = self._user(user_id)
        with self._challenge_lock:
            challenge = self._challenges.pop(user_id, None)
        if challenge is None:
            raise StoreError("ChallengeNotFound", "Request a wallet link challenge first", 400)
        if utcnow() > challenge["expires_at"]:
            raise StoreError("ChallengeExpired", "Wallet link challenge expired; request a new one", 400)
        if not encoding.is_valid_address(address):
            raise StoreError("BadRequest", "address is not a valid Algorand address", 400)
        try:
            valid = util.verify_bytes(challenge["message"].encode("utf-8"), signature, address)
        except (TypeError, ValueError):
            valid = False
        if not valid:
            raise StoreError("InvalidSignature", "Signature does not match the wallet", 401)

        if user.get("wallet") == address:
            return {"user_id": user_id, "wallet": address}
        if user.get("wallet"):
            raise StoreError("WalletAlreadyLinked", "A different wallet is already linked to this account", 409)
        owner = self.repository.find_user_by_wallet(address)
        if (owner and owner["id"] != user_id) or not self.repository.set_wallet(user_id, address):
            raise StoreError("WalletInUse", "This wallet is linked to another account", 409)
        logger.info("Linked wallet %s to user %s", address, user_id)
        return {"user_id": user_id, "wallet": address}

    def vote_history(self, user_id: int) -> list[dict[str, Any]]:
        elections = {e.id: e for e in self.repository.list_elections()}
        history = []
        for record in self.repository.list_vote_records_for_user(user_id):
            entry = record.to_dict()
            election = elections.get(record.election_id)
            if election is not None:
                entry["election_title"] = election.title
                entry["candidate_name"] = next((c.name for c in election.candidates if c.id == record.candidate_id), None)
            history.append(entry)
        return history

    def vote_status(self, user_id: int, election_id: int) -> dict[str, Any]:
        record = self.repository.get_vote_record(user_id, election_id)
        return {
            "election_id": election_id,
            "has_voted": record is not None,
            "record": record.to_dict() if record else None,
        }

    def active_elections(self) -> list[Election]:
        return self.repository.list_elections(active_at=utcnow())

    def results(self) -> list[dict[str, Any]]:
        """Per-election counts read from committed ledger state."""
        results = []
        for election in self.repository.list_elections():
            try:
                tally = self.ledger.read_tally(election.id)
            except LedgerError as exc:
                raise StoreError("LedgerUnavailable", f"Could not reach the ledger: {exc}", 503) from exc
            candidates = [
                {"id": c.id, "name": c.name, "party": c.party, "votes": int(tally.get(c.id, 0))}
                for c in election.candidates
            ]
            results.append(
                {
                    "election_id": election.id,
                    "title": election.title,
                    "closed": election.closed,
                    "source": "blockchain",
                    "results": candidates,
                }
            )
        return results

    def sync_election(self, election_id: int) -> Election:
        try:
            election = self.ledger.read_election_with_candidates(election_id)
        except LedgerError as exc:
            raise StoreError("LedgerUnavailable", f"Could not reach the ledger: {exc}", 503) from exc
        if election is None:
            raise StoreError("ElectionNotFound", "Election not found on the ledger", 404)
        self.repository.upsert_election(election)
        logger.info("Synced election %s (%d candidates, closed=%s)", election.id, len(election.candidates), election.closed)
        return election

    def sync_elections(self, election_ids: list[int] | None = None) -> list[Election]:
        if election_ids is None:
            try:
                election_ids = list(range(1, self.ledger.election_count() + 1))
            except LedgerError as exc:
                raise StoreError("LedgerUnavailable", f"Could not reach the ledger: {exc}", 503) from exc
        return [self.sync_election(election_id) for election_id in election_ids]

    def create_election(
        self,
        signer: WalletSigner,
        title: str,
        description: str = "",
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        candidates: list[tuple[str, str]] | None = None,
    ) -> Election:
        try:
            election_id = self.ledger.create_election(signer, title, description, start_at, end_at)
            for name, party in candidates or []:
                self.ledger.add_candidate(signer, election_id, name, party)
        except ChainRejected as exc:
            raise StoreError("ChainRejected", f"The ledger refused the election: {exc.reason}", 422) from exc
        except LedgerError as exc:
            raise StoreError("LedgerUnavailable", f"Could not create the election on the ledger: {exc}", 503) from exc
        logger.info("Created election %s on-chain with %d candidates", election_id, len(candidates or []))
        return self.sync_election(election_id)

    def add_candidate(self, election_id: int, signer: WalletSigner, name: str, party: str = "") -> tuple[int, Election]:
        try:
            election = self.ledger.read_election(election_id)
            if election is None:
                raise StoreError("ElectionNotFound", "Election not found on the ledger", 404)
            if election.closed:
                raise StoreError("ElectionClosed", "Election is closed", 409)
            candidate_id = self.ledger.add_candidate(signer, election_id, name, party)
        except ChainRejected as exc:
            raise StoreError("ChainRejected", f"The ledger refused the candidate: {exc.reason}", 422) from exc
        except LedgerError as exc:
            raise StoreError("LedgerUnavailable", f"Could not add the candidate on the ledger: {exc}", 503) from exc
        return candidate_id, self.sync_election(election_id)

    def close_election(self, election_id: int, signer: WalletSigner) -> Election:
        try:
            if self.ledger.read_election(election_id) is None:
                raise StoreError("ElectionNotFound", "Election not found on the ledger", 404)
            receipt = self.ledger.close_election(signer, election_id)
        except LedgerError as exc:
            raise StoreError("LedgerUnavailable", f"Could not close the election on the ledger: {exc}", 503) from exc
        logger.info("Closed election %s on-chain in round %s", election_id, receipt.block_number)
        election = self.sync_election(election_id)
        self.repository.mark_election_closed(election_id)
        return election

    def audit_records(self) -> dict[str, Any]:
        """Re-check every stored vote against its ledger transaction."""
        checked = 0
        invalid: list[str] = []
        unreachable = 0
        elections: set[int] = set()
        for record in self.repository.list_vote_records():
            checked += 1
            elections.add(record.election_id)
            try:
                user = self.repository.get_user(record.user_id) or {}
                receipt = self.ledger.fetch_receipt(record.transaction_hash, record.election_id, user.get("wallet"))
            except LedgerError:
                unreachable += 1
                continue
            event = receipt.vote_event() if receipt else None
            if (
                event is None
                or event.election_id != record.election_id
                or event.candidate_id != record.candidate_id
                or event.voter != user.get("wallet")
            ):
                invalid.append(record.transaction_hash)

        for election_id in sorted(elections):
            try:
                tally = self.ledger.read_tally(election_id)
            except LedgerError:
                logger.warning("Could not refresh cached tally for election %s", election_id, exc_info=True)
                continue
            for candidate_id, count in tally.items():
                self.repository.update_candidate_count(election_id, candidate_id, count)

        if invalid:
            logger.error("Audit found %d vote records without a matching ledger vote", len(invalid))
        return {"checked_records": checked, "invalid_transactions": invalid, "unreachable": unreachable}
