"""
Persisted auth token storage.

The REST client reads the bearer token from a :class:`TokenStore` on every
request and clears it on ``401``; the WebSocket connection manager only
reads it. :class:`AuthSession` is the login/logout front end.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol

from dashboard_sync.types import User

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_PATH = Path.home() / ".config" / "dashboard-sync" / "auth.json"


class TokenStore(Protocol):
    def get_token(self) -> str | None: ...

    def set_token(self, token: str) -> None: ...

    def clear_token(self) -> None: ...


class MemoryTokenStore:
    """Token store that lives only as long as the process."""

    def __init__(self, token: str | None = None) -> None:
        self._token = token
        self.user: User | None = None

    def get_token(self) -> str | None:
        return self._token

    def set_token(self, token: str) -> None:
        self._token = token

    def clear_token(self) -> None:
        self._token = None
        self.user = None


class FileTokenStore:
    """Token store backed by a small JSON file.

    A missing or unreadable file is treated as "no token".
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else DEFAULT_TOKEN_PATH

    def _read(self) -> dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable token file %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data), encoding="utf-8")

    def get_token(self) -> str | None:
        token = self._read().get("token")
        return token or None

    def set_token(self, token: str) -> None:
        data = self._read()
        data["token"] = token
        self._write(data)

    def clear_token(self) -> None:
        if self.path.exists():
            self.path.unlink()

    def get_user(self) -> User | None:
        user = self._read().get("user")
        return User(**user) if user else None

    def set_user(self, user: User | None) -> None:
        data = self._read()
        data["user"] = user.model_dump() if user else None
        self._write(data)


class AuthSession:
    """Login state on top of a token store."""

    def __init__(self, store: TokenStore) -> None:
        self._store = store
        self._user: User | None = None
        if isinstance(store, FileTokenStore):
            self._user = store.get_user()

    @property
    def token(self) -> str | None:
        return self._store.get_token()

    @property
    def user(self) -> User | None:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self.token is not None

    def login(self, token: str, user: User) -> None:
        self._store.set_token(token)
        self._user = user
        if isinstance(self._store, FileTokenStore):
            self._store.set_user(user)
        elif isinstance(self._store, MemoryTokenStore):
            self._store.user = user
        logger.info("Logged in as %s", user.username)

    def logout(self) -> None:
        self._store.clear_token()
        self._user = None

    def set_token(self, token: str) -> None:
        self._store.set_token(token)
