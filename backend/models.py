from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from algosdk import encoding

VOTE_EVENT_PREFIX = b"voted"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def from_unix(value: int) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def to_unix(value: datetime | None) -> int:
    if value is None:
        return 0
    return int(value.timestamp())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Candidate:
    id: int
    name: str
    party: str
    vote_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "party": self.party, "votes": self.vote_count}


@dataclass(frozen=True)
class Election:
    id: int
    title: str
    description: str = ""
    start_at: datetime | None = None
    end_at: datetime | None = None
    closed: bool = False
    candidate_count: int = 0
    candidates: tuple[Candidate, ...] = ()

    def is_open(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        if self.closed:
            return False
        if self.start_at and now < self.start_at:
            return False
        if self.end_at and now >= self.end_at:
            return False
        return True

    def has_candidate(self, candidate_id: int) -> bool:
        if self.candidates:
            return any(c.id == candidate_id for c in self.candidates)
        return 1 <= candidate_id <= self.candidate_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "start_at": _iso(self.start_at),
            "end_at": _iso(self.end_at),
            "closed": self.closed,
            "candidate_count": self.candidate_count,
            "candidates": [c.to_dict() for c in self.candidates],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Election":
        candidates = tuple(
            Candidate(id=int(c["id"]), name=c["name"], party=c.get("party", ""), vote_count=int(c.get("votes", 0)))
            for c in data.get("candidates", [])
        )
        return cls(
            id=int(data["id"]),
            title=data.get("title", ""),
            description=data.get("description", ""),
            start_at=datetime.fromisoformat(data["start_at"]) if data.get("start_at") else None,
            end_at=datetime.fromisoformat(data["end_at"]) if data.get("end_at") else None,
            closed=bool(data.get("closed", False)),
            candidate_count=int(data.get("candidate_count", len(candidates))),
            candidates=candidates,
        )


@dataclass(frozen=True)
class VoteIntent:
    user_id: int
    election_id: int
    candidate_id: int


@dataclass(frozen=True)
class VoteRecord:
    user_id: int
    election_id: int
    candidate_id: int
    transaction_hash: str
    recorded_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "election_id": self.election_id,
            "candidate_id": self.candidate_id,
            "transaction_hash": self.transaction_hash,
            "recorded_at": _iso(self.recorded_at),
        }


@dataclass(frozen=True)
class VoteEvent:
    election_id: int
    candidate_id: int
    voter: str


@dataclass(frozen=True)
class TransactionReceipt:
    transaction_hash: str
    block_number: int
    sender: str
    application_id: int
    app_args: tuple[bytes, ...] = ()
    logs: tuple[bytes, ...] = ()
    success: bool = True
    block_timestamp: int = 0

    def vote_event(self) -> VoteEvent | None:
        """Decode the contract's vote log, if this transaction emitted one."""
        expected_len = len(VOTE_EVENT_PREFIX) + 8 + 8 + 32
        for entry in self.logs:
            if entry.startswith(VOTE_EVENT_PREFIX) and len(entry) == expected_len:
                offset = len(VOTE_EVENT_PREFIX)
                election_id = int.from_bytes(entry[offset : offset + 8], "big")
                candidate_id = int.from_bytes(entry[offset + 8 : offset + 16], "big")
                voter = encoding.encode_address(entry[offset + 16 :])
                return VoteEvent(election_id=election_id, candidate_id=candidate_id, voter=voter)
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "sender": self.sender,
            "application_id": self.application_id,
            "success": self.success,
            "block_timestamp": self.block_timestamp,
        }
