import base64
import dataclasses
import hashlib
import threading
import time

import pytest
import requests
from algosdk import account, encoding, transaction
from algosdk.error import AlgodHTTPError

from app import create_app
from attempt_store import AttemptStore
from config import load_settings
from deploy_contract import deploy_application
from ledger_client import AlgorandLedgerClient
from models import VoteRecord, utcnow
from session_utils import create_session_token
from signer import LocalKeySigner
from verification_client import VerificationClient
from vote_orchestrator import VoteOrchestrator, VoteSession
from vote_store import VoteStoreService

GENESIS_HASH = base64.b64encode(b"\x01" * 32).decode("ascii")
STORE_URL = "http://store.test"
ADMIN_TOKEN = "admin-secret"


def _u64(value: int) -> bytes:
    return int(value).to_bytes(8, "big")


def _b64(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


class LogicRejected(Exception):
    pass


class FakeAlgod:
    """In-process algod running the voting application's rules on real transactions."""

    def __init__(self):
        self.lock = threading.RLock()
        self.last_round = 10
        self.now = int(time.time())
        self.app_id = 0
        self.admin = None
        self.election_count = 0
        self.boxes = {}
        self.txns = {}
        self.sent = []
        self.calls = []
        self.hold = False
        self.fail_sends = 0
        self.fail_after_accept = 0
        self.fail_box_reads = 0
        self.unavailable = False

    def _call(self, name):
        self.calls.append(name)
        if self.unavailable:
            raise AlgodHTTPError("service unavailable", 503)

    # node api used by the ledger client

    def status(self):
        with self.lock:
            self._call("status")
            return {"last-round": self.last_round}

    def status_after_block(self, block_num):
        with self.lock:
            self._call("status_after_block")
            self.last_round = max(self.last_round, int(block_num) + 1)
            self._mine()
            return {"last-round": self.last_round}

    def suggested_params(self):
        with self.lock:
            self._call("suggested_params")
            return transaction.SuggestedParams(
                fee=1000,
                first=self.last_round,
                last=self.last_round + 1000,
                gh=GENESIS_HASH,
                gen="fake-v1",
                flat_fee=True,
            )

    def compile(self, source):
        self._call("compile")
        digest = hashlib.sha256(source.encode("utf-8")).digest()
        return {"hash": encoding.encode_address(digest), "result": _b64(b"\x08" + digest)}

    def application_info(self, app_id):
        with self.lock:
            self._call("application_info")
            if app_id != self.app_id:
                raise AlgodHTTPError("application does not exist", 404)
            return {
                "id": app_id,
                "params": {
                    "creator": self.admin,
                    "global-state": [
                        {"key": _b64(b"admin"), "value": {"type": 1, "bytes": _b64(encoding.decode_address(self.admin)), "uint": 0}},
                        {"key": _b64(b"election_count"), "value": {"type": 2, "bytes": "", "uint": self.election_count}},
                    ],
                },
            }

    def application_box_by_name(self, app_id, name):
        with self.lock:
            self._call("application_box_by_name")
            if self.fail_box_reads > 0:
                self.fail_box_reads -= 1
                raise AlgodHTTPError("upstream timeout", 504)
            if app_id != self.app_id or name not in self.boxes:
                raise AlgodHTTPError("box not found", 404)
            return {"name": _b64(name), "round": self.last_round, "value": _b64(self.boxes[name])}

    def send_transaction(self, signed):
        with self.lock:
            self._call("send_transaction")
            if self.fail_sends > 0:
                self.fail_sends -= 1
                raise AlgodHTTPError("node is busy", 503)
            tx_id = signed.get_txid()
            if tx_id in self.txns:
                raise AlgodHTTPError(f"transaction already in ledger: {tx_id}", 400)
            try:
                record = self._apply(signed.transaction)
            except LogicRejected as exc:
                raise AlgodHTTPError(
                    f"TransactionPool.Remember: transaction {tx_id}: logic eval error: {exc}", 400
                ) from exc
            record["signed"] = signed
            self.txns[tx_id] = record
            self.sent.append(tx_id)
            if self.fail_after_accept > 0:
                self.fail_after_accept -= 1
                raise AlgodHTTPError("connection reset after accept", 502)
            return tx_id

    def pending_transaction_info(self, tx_id):
        with self.lock:
            self._call("pending_transaction_info")
            record = self.txns.get(tx_id)
            if record is None or record.get("forgotten"):
                raise AlgodHTTPError("txn does not exist", 404)
            txn = record["signed"].transaction
            body = {"type": txn.type, "snd": txn.sender, "fv": txn.first_valid_round, "lv": txn.last_valid_round}
            if txn.type == "appl":
                body["apid"] = txn.index
                body["apaa"] = [_b64(arg) for arg in txn.app_args or []]
            info = {
                "confirmed-round": record["confirmed_round"],
                "pool-error": record["pool_error"],
                "logs": [_b64(entry) for entry in record["logs"]],
                "txn": {"sig": "", "txn": body},
            }
            if record.get("application_index"):
                info["application-index"] = record["application_index"]
            return info

    def transaction_proof(self, round_num, txid):
        with self.lock:
            self._call("transaction_proof")
            record = self.txns.get(txid)
            if record is None or record["pool_error"] or record["confirmed_round"] != int(round_num):
                raise AlgodHTTPError("transaction not found in block", 404)
            return {"hashtype": "sha512_256", "idx": 0, "proof": "", "stibhash": "", "treedepth": 0}

    # test controls

    def forget(self, tx_id):
        """Evict a transaction from the pending cache the way a real node does."""
        with self.lock:
            self.txns[tx_id]["forgotten"] = True

    def release(self):
        with self.lock:
            self.hold = False

    def drop(self, tx_id):
        with self.lock:
            record = self.txns[tx_id]
            for name, previous in record["undo"].items():
                if previous is None:
                    self.boxes.pop(name, None)
                else:
                    self.boxes[name] = previous
            record["pool_error"] = "transaction expired"

    def votes_for(self, election_id, candidate_id):
        return int.from_bytes(self.boxes.get(b"c" + _u64(election_id) + _u64(candidate_id), b""), "big")

    # contract semantics

    def _mine(self):
        if self.hold:
            return
        for record in self.txns.values():
            if record["confirmed_round"] == 0 and not record["pool_error"]:
                record["confirmed_round"] = self.last_round
                marker = record.get("marker")
                if marker in self.boxes:
                    self.boxes[marker] = self.boxes[marker][:8] + _u64(self.last_round)

    def _apply(self, txn):
        record = {"confirmed_round": 0, "pool_error": "", "logs": [], "undo": {}}
        if isinstance(txn, transaction.PaymentTxn):
            return record
        if not isinstance(txn, transaction.ApplicationCallTxn):
            raise LogicRejected("unsupported transaction type")
        if txn.index == 0:
            self.app_id = 1000 + len(self.txns) + 1
            self.admin = txn.sender
            self.election_count = 0
            record["application_index"] = self.app_id
            return record
        if txn.index != self.app_id:
            raise LogicRejected("unknown application")
        if txn.on_complete != transaction.OnComplete.NoOpOC:
            raise LogicRejected("reject")

        args = list(txn.app_args or [])
        method = args[0] if args else b""
        writes = {}
        if method == b"create_election":
            self._require(len(args) == 5 and txn.sender == self.admin)
            election_id = self.election_count + 1
            key = _u64(election_id)
            writes[b"e" + key] = args[3] + args[4] + _u64(0) + _u64(0)
            writes[b"et" + key] = args[1]
            writes[b"ed" + key] = args[2]
            self.election_count = election_id
            record["logs"].append(b"election" + key)
        elif method == b"add_candidate":
            self._require(len(args) == 4 and txn.sender == self.admin)
            header = self.boxes.get(b"e" + args[1])
            self._require(header is not None and int.from_bytes(header[16:24], "big") == 0)
            candidate_id = int.from_bytes(header[24:32], "big") + 1
            suffix = args[1] + _u64(candidate_id)
            writes[b"e" + args[1]] = header[:24] + _u64(candidate_id)
            writes[b"c" + suffix] = _u64(0)
            writes[b"cn" + suffix] = args[2]
            writes[b"cp" + suffix] = args[3]
            record["logs"].append(b"candidate" + suffix)
        elif method == b"close_election":
            self._require(len(args) == 2 and txn.sender == self.admin)
            header = self.boxes.get(b"e" + args[1])
            self._require(header is not None)
            writes[b"e" + args[1]] = header[:16] + _u64(1) + header[24:32]
        elif method == b"vote":
            self._require(len(args) == 3)
            header = self.boxes.get(b"e" + args[1])
            self._require(header is not None)
            start_at = int.from_bytes(header[0:8], "big")
            end_at = int.from_bytes(header[8:16], "big")
            self._require(int.from_bytes(header[16:24], "big") == 0)
            self._require(start_at == 0 or self.now >= start_at)
            self._require(end_at == 0 or self.now < end_at)
            voter_key = b"v" + args[1] + encoding.decode_address(txn.sender)
            self._require(voter_key not in self.boxes)
            count_key = b"c" + args[1] + args[2]
            self._require(count_key in self.boxes)
            writes[count_key] = _u64(int.from_bytes(self.boxes[count_key], "big") + 1)
            writes[voter_key] = args[2] + _u64(0)
            record["marker"] = voter_key
            record["logs"].append(b"voted" + args[1] + args[2] + encoding.decode_address(txn.sender))
        else:
            raise LogicRejected("unknown method")

        for name, value in writes.items():
            record["undo"][name] = self.boxes.get(name)
            self.boxes[name] = value
        return record

    @staticmethod
    def _require(condition):
        if not condition:
            raise LogicRejected("assert failed")


class InMemoryVoteRepository:
    """Vote store double honoring the (user, election) and transaction uniqueness rules."""

    def __init__(self, users):
        self._lock = threading.Lock()
        self.users = {u["id"]: dict(u) for u in users}
        self.records = []
        self.elections = {}

    def ensure_schema(self):
        return None

    def get_user(self, user_id):
        user = self.users.get(user_id)
        return dict(user) if user else None

    def get_vote_record(self, user_id, election_id):
        with self._lock:
            for record in self.records:
                if record.user_id == user_id and record.election_id == election_id:
                    return record
        return None

    def insert_vote_record(self, user_id, election_id, candidate_id, transaction_hash):
        with self._lock:
            for record in self.records:
                if record.user_id == user_id and record.election_id == election_id:
                    return record, False
                if record.transaction_hash == transaction_hash:
                    return None, False
            record = VoteRecord(user_id, election_id, candidate_id, transaction_hash, utcnow())
            self.records.append(record)
            return record, True

    def find_user_by_wallet(self, address):
        for user in self.users.values():
            if user.get("wallet") == address:
                return dict(user)
        return None

    def set_wallet(self, user_id, address):
        with self._lock:
            if self.users[user_id].get("wallet") or any(u.get("wallet") == address for u in self.users.values()):
                return False
            self.users[user_id]["wallet"] = address
            return True

    def list_vote_records_for_user(self, user_id):
        with self._lock:
            return [r for r in reversed(self.records) if r.user_id == user_id]

    def list_vote_records(self):
        with self._lock:
            return list(self.records)

    def upsert_election(self, election):
        with self._lock:
            existing = self.elections.get(election.id)
            if existing is not None and existing.closed:
                election = dataclasses.replace(election, closed=True)
            self.elections[election.id] = election

    def mark_election_closed(self, election_id):
        with self._lock:
            self.elections[election_id] = dataclasses.replace(self.elections[election_id], closed=True)

    def update_candidate_count(self, election_id, candidate_id, vote_count):
        with self._lock:
            election = self.elections.get(election_id)
            if election is None:
                return
            candidates = tuple(
                dataclasses.replace(c, vote_count=vote_count) if c.id == candidate_id else c for c in election.candidates
            )
            self.elections[election_id] = dataclasses.replace(election, candidates=candidates)

    def list_elections(self, active_at=None):
        with self._lock:
            elections = sorted(self.elections.values(), key=lambda e: e.id)
        if active_at is None:
            return elections
        return [e for e in elections if e.is_open(active_at)]


class _StoreResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FlaskStoreSession:
    """``requests.Session`` stand-in that routes calls into the Flask test client."""

    def __init__(self, client):
        self.client = client
        self.calls = []
        self.fail_next = 0
        self._lock = threading.Lock()

    def request(self, method, url, headers=None, timeout=None, json=None, params=None):
        path = url[len(STORE_URL) :]
        with self._lock:
            self.calls.append((method, path))
            if self.fail_next > 0:
                self.fail_next -= 1
                raise requests.exceptions.ConnectionError("store unreachable")
        resp = self.client.open(path, method=method, headers=headers, json=json, query_string=params)
        return _StoreResponse(resp.status_code, resp.get_json(silent=True))


class Approver:
    """Wallet prompt double: approves, declines or blocks until released."""

    def __init__(self, decisions=None):
        self.decisions = list(decisions or [])
        self.started = threading.Event()
        self.release = threading.Event()
        self.block = False
        self.barrier = None
        self.fail_with = None
        self.prompts = 0

    def __call__(self, txn):
        self.prompts += 1
        self.started.set()
        if self.fail_with is not None:
            exc, self.fail_with = self.fail_with, None
            raise exc
        if self.barrier is not None:
            self.barrier.wait(timeout=5)
        if self.block:
            self.release.wait(timeout=10)
        if self.decisions:
            return self.decisions.pop(0)
        return True


@pytest.fixture(autouse=True)
def session_secret(monkeypatch):
    monkeypatch.setenv("SESSION_SECRET", "test-session-secret")


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    import ledger_client
    import vote_orchestrator

    sleeps = []
    monkeypatch.setattr(vote_orchestrator.time, "sleep", lambda seconds: sleeps.append(seconds))
    monkeypatch.setattr(ledger_client.time, "sleep", lambda seconds: sleeps.append(seconds))
    return sleeps


@pytest.fixture
def admin_signer():
    private_key, _ = account.generate_account()
    return LocalKeySigner(private_key)


@pytest.fixture
def voter_key():
    private_key, _ = account.generate_account()
    return private_key


@pytest.fixture
def other_key():
    private_key, _ = account.generate_account()
    return private_key


@pytest.fixture
def algod(admin_signer):
    fake = FakeAlgod()
    deploy_application(fake, admin_signer)
    return fake


@pytest.fixture
def ledger(algod):
    return AlgorandLedgerClient(algod, algod.app_id, timeout_rounds=5, read_retries=3, retry_base_delay=0)


@pytest.fixture
def election_id(ledger, admin_signer):
    election_id = ledger.create_election(admin_signer, "Student council", "Spring term")
    ledger.add_candidate(admin_signer, election_id, "Ada", "Blue")
    ledger.add_candidate(admin_signer, election_id, "Grace", "Green")
    return election_id


@pytest.fixture
def repository(voter_key, other_key):
    return InMemoryVoteRepository(
        [
            {"id": 1, "email": "voter@example.edu", "wallet": account.address_from_private_key(voter_key)},
            {"id": 2, "email": "other@example.edu", "wallet": account.address_from_private_key(other_key)},
            {"id": 3, "email": "nowallet@example.edu", "wallet": None},
        ]
    )


@pytest.fixture
def store_service(repository, ledger):
    return VoteStoreService(repository, ledger)


@pytest.fixture
def settings():
    return dataclasses.replace(
        load_settings(),
        admin_api_token=ADMIN_TOKEN,
        service_mnemonic="",
        reconcile_interval_seconds=0,
        client_reconcile_interval_seconds=0,
    )


@pytest.fixture
def flask_app(settings, store_service, admin_signer):
    return create_app(settings, service=store_service, admin_signer=admin_signer)


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def store_session(client):
    return FlaskStoreSession(client)


def auth_headers(user_id):
    return {"Authorization": f"Bearer {create_session_token(user_id)}"}


@pytest.fixture
def make_orchestrator(ledger, store_session, tmp_path, voter_key, election_id):
    created = []

    def factory(approver=None, user_id=1, private_key=None, store_path=None, **kwargs):
        private_key = private_key or voter_key
        signer = LocalKeySigner(private_key, approve=approver or Approver())
        token = create_session_token(user_id)
        session = VoteSession(user_id=user_id, token=token, wallet_address=signer.address)
        verifier = VerificationClient(STORE_URL, token, session=store_session)
        attempts = AttemptStore(str(store_path or tmp_path / "attempts.json"))
        kwargs.setdefault("poll_interval", 0.01)
        kwargs.setdefault("verify_backoff", 0.01)
        orchestrator = VoteOrchestrator(
            session,
            ledger,
            verifier,
            signer,
            attempts,
            elections=[ledger.read_election_with_candidates(election_id)],
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.stop_reconciler()
