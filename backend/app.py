import hmac
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any

import psycopg2
from flask import Flask, jsonify, request
from flask_cors import CORS

import db
from config import Settings, configure_logging, load_settings
from errors import SignerError
from ledger_client import AlgorandLedgerClient
from session_utils import SessionTokens
from signer import LocalKeySigner, WalletSigner
from vote_store import RECORDED, PostgresVoteRepository, StoreError, VoteStoreService

logger = logging.getLogger(__name__)


def _extract_session(tokens: SessionTokens | None) -> tuple[dict[str, Any] | None, tuple[dict[str, str], int] | None]:
    if tokens is None:
        return None, ({"error": "Sessions are not configured", "code": "StoreUnavailable"}, 503)
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None, ({"error": "Missing bearer session token", "code": "Unauthorized"}, 401)
    token = auth_header.split(" ", 1)[1].strip()
    try:
        payload = tokens.verify(token)
        return payload, None
    except ValueError as exc:
        return None, ({"error": str(exc), "code": "Unauthorized"}, 401)


def _int_arg(value: Any, name: str) -> tuple[int | None, tuple[dict[str, str], int] | None]:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return None, ({"error": f"{name} must be an integer", "code": "BadRequest"}, 400)
    if parsed <= 0:
        return None, ({"error": f"{name} must be positive", "code": "BadRequest"}, 400)
    return parsed, None


def _datetime_arg(value: Any, name: str) -> tuple[datetime | None, tuple[dict[str, str], int] | None]:
    if value in (None, ""):
        return None, None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None, ({"error": f"{name} must be an ISO 8601 timestamp", "code": "BadRequest"}, 400)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed, None


def _run_reconcile_monitor(service: VoteStoreService, interval: float, stop_event: threading.Event) -> None:
    while not stop_event.is_set():
        try:
            service.sync_elections()
            report = service.audit_records()
            logger.info("Background reconcile checked %d vote records", report["checked_records"])
        except Exception:  # noqa: BLE001
            logger.exception("Background reconcile pass failed")
        stop_event.wait(interval)


def start_reconcile_monitor(service: VoteStoreService, interval: float) -> threading.Event | None:
    """Run ledger sync and the vote record audit every ``interval`` seconds."""
    if interval <= 0:
        return None
    # the debug reloader parent process does not serve requests
    if os.getenv("WERKZEUG_RUN_MAIN") not in (None, "true"):
        return None
    stop_event = threading.Event()
    thread = threading.Thread(
        target=_run_reconcile_monitor,
        args=(service, interval, stop_event),
        name="vote-store-reconcile",
        daemon=True,
    )
    thread.start()
    return stop_event


def create_app(
    settings: Settings | None = None,
    service: VoteStoreService | None = None,
    admin_signer: WalletSigner | None = None,
) -> Flask:
    settings = settings or load_settings()
    app = Flask(__name__)
    CORS(app)

    tokens: SessionTokens | None = None
    try:
        tokens = SessionTokens.from_settings(settings)
    except RuntimeError as exc:
        logger.error("Sessions unavailable: %s", exc)

    init_error: str | None = None
    if service is None:
        try:
            ledger = AlgorandLedgerClient.from_settings(settings)
            db.configure(settings)
            service = VoteStoreService(
                PostgresVoteRepository(),
                ledger,
                min_confirmations=settings.min_confirmations,
                challenge_ttl_seconds=settings.wallet_challenge_ttl_seconds,
            )
        except Exception as exc:  # noqa: BLE001
            init_error = str(exc)
            logger.error("Vote store unavailable: %s", exc)

    if admin_signer is None and settings.service_mnemonic:
        try:
            admin_signer = LocalKeySigner.from_mnemonic(settings.service_mnemonic)
        except SignerError as exc:
            logger.error("Service account unavailable: %s", exc)

    app.extensions["reconcile_stop"] = start_reconcile_monitor(service, settings.reconcile_interval_seconds) if service else None

    def _service_or_error() -> tuple[VoteStoreService | None, tuple[dict[str, str], int] | None]:
        if service is None:
            return None, (
                {"error": f"Vote store unavailable: {init_error or 'unknown error'}", "code": "StoreUnavailable"},
                503,
            )
        return service, None

    def _admin_error() -> tuple[dict[str, str], int] | None:
        if not settings.admin_api_token:
            return {"error": "Admin API is disabled", "code": "Forbidden"}, 403
        provided = request.headers.get("X-Admin-Token", "")
        if not hmac.compare_digest(provided.encode("utf-8"), settings.admin_api_token.encode("utf-8")):
            return {"error": "Invalid admin token", "code": "Forbidden"}, 403
        return None

    @app.errorhandler(StoreError)
    def handle_store_error(exc: StoreError):
        return jsonify({"error": exc.message, "code": exc.code}), exc.status

    @app.errorhandler(psycopg2.Error)
    def handle_database_error(exc: psycopg2.Error):
        logger.exception("Database error")
        return jsonify({"error": "Database unavailable", "code": "DatabaseUnavailable"}), 503

    @app.cli.command("init-db")
    def init_db():
        """Create the vote store tables."""
        store, err = _service_or_error()
        if err:
            raise RuntimeError(err[0]["error"])
        store.repository.ensure_schema()
        print("Schema ready.")

    @app.cli.command("reconcile")
    def reconcile():
        """Sync elections from the ledger and audit every vote record once."""
        store, err = _service_or_error()
        if err:
            raise RuntimeError(err[0]["error"])
        store.sync_elections()
        report = store.audit_records()
        print(f"Checked {report['checked_records']} records; invalid: {report['invalid_transactions'] or 'none'}")

    def _session_and_store():
        session_payload, session_err = _extract_session(tokens)
        if session_err:
            return None, None, session_err
        store, err = _service_or_error()
        if err:
            return None, None, err
        return int(session_payload["sub"]), store, None

    @app.route("/auth/challenge", methods=["POST"])
    def wallet_challenge():
        user_id, store, err = _session_and_store()
        if err:
            return jsonify(err[0]), err[1]
        return jsonify(store.issue_wallet_challenge(user_id))

    @app.route("/auth/verify-link", methods=["POST"])
    def verify_wallet_link():
        user_id, store, err = _session_and_store()
        if err:
            return jsonify(err[0]), err[1]
        data = request.get_json(silent=True) or {}
        address = str(data.get("address") or "").strip()
        signature = str(data.get("signature") or "").strip()
        if not address or not signature:
            return jsonify({"error": "address and signature are required", "code": "BadRequest"}), 400
        return jsonify(store.link_wallet(user_id, address, signature))

    @app.route("/vote/history", methods=["GET"])
    def vote_history():
        user_id, store, err = _session_and_store()
        if err:
            return jsonify(err[0]), err[1]
        return jsonify({"votes": store.vote_history(user_id)})

    @app.route("/verify/vote", methods=["POST"])
    def verify_vote():
        user_id, store, err = _session_and_store()
        if err:
            return jsonify(err[0]), err[1]

        data = request.get_json(silent=True) or {}
        tx_hash = str(data.get("transactionHash") or "").strip()
        if not tx_hash:
            return jsonify({"error": "transactionHash is required", "code": "BadRequest"}), 400
        election_id, arg_err = _int_arg(data.get("electionId"), "electionId")
        if arg_err:
            return jsonify(arg_err[0]), arg_err[1]
        candidate_id, arg_err = _int_arg(data.get("candidateId"), "candidateId")
        if arg_err:
            return jsonify(arg_err[0]), arg_err[1]

        status, record = store.verify_vote(user_id, election_id, candidate_id, tx_hash)
        return jsonify({"status": status, "record": record.to_dict()}), 201 if status == RECORDED else 200

    @app.route("/vote/status", methods=["GET"])
    def vote_status():
        user_id, store, err = _session_and_store()
        if err:
            return jsonify(err[0]), err[1]
        election_id, arg_err = _int_arg(request.args.get("election_id"), "election_id")
        if arg_err:
            return jsonify(arg_err[0]), arg_err[1]
        return jsonify(store.vote_status(user_id, election_id))

    @app.route("/elections/active", methods=["GET"])
    def active_elections():
        store, err = _service_or_error()
        if err:
            return jsonify(err[0]), err[1]
        return jsonify({"elections": [e.to_dict() for e in store.active_elections()]})

    @app.route("/elections/results", methods=["GET"])
    def election_results():
        store, err = _service_or_error()
        if err:
            return jsonify(err[0]), err[1]
        return jsonify({"source": "blockchain", "elections": store.results()})

    @app.route("/admin/elections/sync", methods=["POST"])
    def admin_sync_elections():
        admin_err = _admin_error()
        if admin_err:
            return jsonify(admin_err[0]), admin_err[1]
        store, err = _service_or_error()
        if err:
            return jsonify(err[0]), err[1]

        data = request.get_json(silent=True) or {}
        election_ids = None
        if data.get("electionId") is not None:
            election_id, arg_err = _int_arg(data.get("electionId"), "electionId")
            if arg_err:
                return jsonify(arg_err[0]), arg_err[1]
            election_ids = [election_id]
        synced = store.sync_elections(election_ids)
        return jsonify({"synced": [e.to_dict() for e in synced]})

    def _admin_store_and_signer():
        admin_err = _admin_error()
        if admin_err:
            return None, admin_err
        store, err = _service_or_error()
        if err:
            return None, err
        if admin_signer is None:
            return None, ({"error": "Service account unavailable", "code": "SignerUnavailable"}, 503)
        return store, None

    @app.route("/admin/elections", methods=["POST"])
    def admin_create_election():
        store, err = _admin_store_and_signer()
        if err:
            return jsonify(err[0]), err[1]
        data = request.get_json(silent=True) or {}
        title = str(data.get("title") or "").strip()
        if not title:
            return jsonify({"error": "title is required", "code": "BadRequest"}), 400
        start_at, arg_err = _datetime_arg(data.get("startAt"), "startAt")
        if arg_err:
            return jsonify(arg_err[0]), arg_err[1]
        end_at, arg_err = _datetime_arg(data.get("endAt"), "endAt")
        if arg_err:
            return jsonify(arg_err[0]), arg_err[1]
        if start_at and end_at and end_at <= start_at:
            return jsonify({"error": "endAt must be after startAt", "code": "BadRequest"}), 400
        candidates = []
        for entry in data.get("candidates") or []:
            name = str((entry or {}).get("name") or "").strip()
            if name:
                candidates.append((name, str(entry.get("party") or "").strip()))
        election = store.create_election(
            admin_signer,
            title,
            str(data.get("description") or "").strip(),
            start_at,
            end_at,
            candidates,
        )
        return jsonify({"election": election.to_dict()}), 201

    @app.route("/admin/elections/<int:election_id>/candidates", methods=["POST"])
    def admin_add_candidate(election_id: int):
        store, err = _admin_store_and_signer()
        if err:
            return jsonify(err[0]), err[1]
        data = request.get_json(silent=True) or {}
        name = str(data.get("name") or "").strip()
        if not name:
            return jsonify({"error": "name is required", "code": "BadRequest"}), 400
        candidate_id, election = store.add_candidate(election_id, admin_signer, name, str(data.get("party") or "").strip())
        return jsonify({"candidate_id": candidate_id, "election": election.to_dict()}), 201

    @app.route("/admin/elections/<int:election_id>/close", methods=["POST"])
    def admin_close_election(election_id: int):
        store, err = _admin_store_and_signer()
        if err:
            return jsonify(err[0]), err[1]
        election = store.close_election(election_id, admin_signer)
        return jsonify({"election": election.to_dict()})

    @app.route("/admin/reconcile", methods=["POST"])
    def admin_reconcile():
        admin_err = _admin_error()
        if admin_err:
            return jsonify(admin_err[0]), admin_err[1]
        store, err = _service_or_error()
        if err:
            return jsonify(err[0]), err[1]
        return jsonify(store.audit_records())

    @app.route("/health")
    def health():
        return jsonify(
            {
                "status": "ok",
                "vote_store": "ready" if service else "unavailable",
                "vote_store_error": init_error,
                "service_account": "ready" if admin_signer else "unavailable",
            }
        )

    return app


settings = load_settings()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    app.run(debug=True)
