import json
import os
import tempfile
import threading
from typing import Any


class AttemptStore:
    """Durable client-side storage of vote attempts keyed by (user, election).

    Entries outlive the process so a submitted transaction is re-polled and
    re-verified after a restart instead of being signed again.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()

    @staticmethod
    def _key(user_id: int, election_id: int) -> str:
        return f"{user_id}:{election_id}"

    def _read(self) -> dict[str, dict[str, Any]]:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return {}

    def _write(self, data: dict[str, dict[str, Any]]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".attempts-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, sort_keys=True, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            os.unlink(tmp_path)
            raise

    def load(self, user_id: int, election_id: int) -> dict[str, Any] | None:
        with self._lock:
            return self._read().get(self._key(user_id, election_id))

    def save(self, user_id: int, election_id: int, entry: dict[str, Any]) -> None:
        with self._lock:
            data = self._read()
            data[self._key(user_id, election_id)] = entry
            self._write(data)

    def delete(self, user_id: int, election_id: int) -> None:
        with self._lock:
            data = self._read()
            if data.pop(self._key(user_id, election_id), None) is not None:
                self._write(data)

    def for_user(self, user_id: int) -> list[dict[str, Any]]:
        prefix = f"{user_id}:"
        with self._lock:
            return [entry for key, entry in sorted(self._read().items()) if key.startswith(prefix)]
