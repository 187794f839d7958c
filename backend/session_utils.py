"""Bearer session tokens the Store issues to voters.

A token is ``<payload>.<signature>``: the payload is base64url JSON holding the
user id in ``sub`` and an ``exp`` timestamp, signed with HMAC-SHA256.
"""

import base64
import hashlib
import hmac
import json
import time
from typing import Any

from config import Settings, load_settings


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + padding).encode("ascii"))


class SessionTokens:
    def __init__(self, secret: str, ttl_seconds: int = 3600) -> None:
        if not secret:
            raise RuntimeError("SESSION_SECRET is required")
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionTokens":
        return cls(settings.session_secret, settings.session_ttl_seconds)

    def _sign(self, payload_part: str) -> bytes:
        return hmac.new(self._secret, payload_part.encode("ascii"), hashlib.sha256).digest()

    def issue(self, user_id: int, ttl_seconds: int | None = None) -> str:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        payload = {"sub": int(user_id), "exp": int(time.time()) + int(ttl)}
        payload_part = _b64url_encode(json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8"))
        return f"{payload_part}.{_b64url_encode(self._sign(payload_part))}"

    def verify(self, token: str) -> dict[str, Any]:
        """Return the payload of a valid token; raise ``ValueError`` otherwise."""
        try:
            payload_part, signature_part = token.split(".", 1)
        except ValueError as exc:
            raise ValueError("Invalid session token format") from exc

        try:
            provided = _b64url_decode(signature_part)
        except (ValueError, UnicodeEncodeError) as exc:
            raise ValueError("Invalid session token signature") from exc
        if not hmac.compare_digest(self._sign(payload_part), provided):
            raise ValueError("Invalid session token signature")

        try:
            payload = json.loads(_b64url_decode(payload_part).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError("Invalid session token payload") from exc
        if int(payload.get("exp", 0)) < int(time.time()):
            raise ValueError("Session token expired")
        if not isinstance(payload.get("sub"), int):
            raise ValueError("Session token has no user")
        return payload


def create_session_token(user_id: int, ttl_seconds: int | None = None) -> str:
    return SessionTokens.from_settings(load_settings()).issue(user_id, ttl_seconds)
