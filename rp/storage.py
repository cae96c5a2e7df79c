"""Token storage for the relying party.

The client owns its storage explicitly. Two slots are kept: the token set of
the last successful login, and the pending request (state + nonce) between
building the login URL and handling the response.
"""
import json
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from config import CONFIG_DIR

TOKENS_FILE = CONFIG_DIR / "rp_tokens.json"


@dataclass(frozen=True)
class TokenSet:
    access_token: Optional[str]
    id_token: Optional[str]
    token_type: str
    expires_at: int
    scope: str
    claims: dict = field(default_factory=dict)

    def is_expired(self, now: float = None) -> bool:
        return (now or time.time()) >= self.expires_at

    @property
    def scopes(self) -> list:
        return self.scope.split()

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TokenSet":
        return cls(
            access_token=data.get("access_token"),
            id_token=data.get("id_token"),
            token_type=data.get("token_type", "Bearer"),
            expires_at=int(data.get("expires_at", 0)),
            scope=data.get("scope", ""),
            claims=dict(data.get("claims") or {}),
        )


@dataclass(frozen=True)
class PendingLogin:
    state: str
    nonce: str
    created_at: int


class TokenStorage:
    """Key-value store for the RP's token set and pending login."""

    def save(self, tokens: TokenSet) -> None:
        raise NotImplementedError

    def read(self) -> Optional[TokenSet]:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def save_pending(self, pending: PendingLogin) -> None:
        raise NotImplementedError

    def read_pending(self) -> Optional[PendingLogin]:
        raise NotImplementedError

    def clear_pending(self) -> None:
        raise NotImplementedError


class MemoryTokenStorage(TokenStorage):
    def __init__(self):
        self._tokens = None
        self._pending = None

    def save(self, tokens):
        self._tokens = tokens

    def read(self):
        return self._tokens

    def clear(self):
        self._tokens = None
        self._pending = None

    def save_pending(self, pending):
        self._pending = pending

    def read_pending(self):
        return self._pending

    def clear_pending(self):
        self._pending = None


class FileTokenStorage(TokenStorage):
    """JSON file storage, readable by the owner only."""

    def __init__(self, path: Path = TOKENS_FILE):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                return json.load(f)
        except (json.JSONDecodeError, IOError):
            return {}

    def _store(self, data: dict) -> None:
        if not data:
            if self.path.exists():
                self.path.unlink()
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(data, f, indent=2)
        # Owner read/write only
        os.chmod(self.path, 0o600)

    def save(self, tokens):
        data = self._load()
        data["tokens"] = tokens.to_dict()
        self._store(data)

    def read(self):
        data = self._load().get("tokens")
        return TokenSet.from_dict(data) if data else None

    def clear(self):
        self._store({})

    def save_pending(self, pending):
        data = self._load()
        data["pending"] = asdict(pending)
        self._store(data)

    def read_pending(self):
        data = self._load().get("pending")
        if not data:
            return None
        return PendingLogin(state=data["state"], nonce=data["nonce"], created_at=int(data["created_at"]))

    def clear_pending(self):
        data = self._load()
        data.pop("pending", None)
        self._store(data)
