import logging
from typing import Any

import requests

from errors import VerificationError
from models import Election

logger = logging.getLogger(__name__)

RECORDED = "recorded"
DUPLICATE = "duplicate"


class VerificationClient:
    """HTTP client for the Store's vote verification and vote-status endpoints."""

    def __init__(self, base_url: str, token: str, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as exc:
            raise VerificationError(f"Store unreachable: {exc}", code="StoreUnavailable") from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if resp.status_code >= 400:
            raise VerificationError(
                payload.get("error") or f"Store returned HTTP {resp.status_code}",
                code=payload.get("code") or "VerificationFailed",
                status=resp.status_code,
            )
        return payload

    def verify_vote(self, transaction_hash: str, election_id: int, candidate_id: int) -> str:
        """Ask the Store to record a confirmed vote; returns ``recorded`` or ``duplicate``."""
        payload = self._request(
            "POST",
            "/verify/vote",
            json={"transactionHash": transaction_hash, "electionId": election_id, "candidateId": candidate_id},
        )
        status = payload.get("status")
        if status not in (RECORDED, DUPLICATE):
            raise VerificationError(f"Unexpected verification status: {status!r}")
        logger.info("Store answered %s for transaction %s", status, transaction_hash)
        return status

    def vote_status(self, election_id: int) -> dict[str, Any]:
        return self._request("GET", "/vote/status", params={"election_id": election_id})

    def has_voted(self, election_id: int) -> bool:
        return bool(self.vote_status(election_id).get("has_voted"))

    def active_elections(self) -> list[Election]:
        payload = self._request("GET", "/elections/active")
        return [Election.from_dict(e) for e in payload.get("elections", [])]
