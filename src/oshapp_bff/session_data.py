# src/oshapp_bff/session_data.py

import json
import time
import typing
import uuid

from pydantic import BaseModel, ValidationError

STORE_KEY = "oshapp_tokens"
ADAPTER_TOKEN_KEY = "kc_t"
ADAPTER_REFRESH_KEY = "kc_r"


class TokenPair(BaseModel):
    """
    Token set returned by the Keycloak token endpoint.
    Only access_token and refresh_token are required; the rest is kept when Keycloak sends it.
    """
    access_token: str
    refresh_token: str
    expires_in: typing.Optional[int] = None
    refresh_expires_in: typing.Optional[int] = None
    id_token: typing.Optional[str] = None
    token_type: typing.Optional[str] = None


class SessionStorage(typing.Protocol):
    def get(self, key: str) -> typing.Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def clear(self) -> None: ...


class InMemorySessionStorage:
    """String key/value storage for one browser session."""

    def __init__(self):
        self._data: typing.Dict[str, str] = {}
        # Non-string per-session state (pending PKCE verifier, flags) lives here.
        self.state: typing.Dict[str, typing.Any] = {}

    def get(self, key: str) -> typing.Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()
        self.state.clear()


class TokenStore:
    """Reads and writes the token pair and the adapter's own token cache."""

    def __init__(self, storage: SessionStorage):
        self.storage = storage

    def save_tokens(self, tokens: TokenPair) -> None:
        self.storage.set(STORE_KEY, tokens.model_dump_json(exclude_none=True))

    def load_tokens(self) -> typing.Optional[TokenPair]:
        raw = self.storage.get(STORE_KEY)
        if not raw:
            return None
        try:
            return TokenPair(**json.loads(raw))
        except (ValueError, TypeError, ValidationError):
            # json.JSONDecodeError is a ValueError
            return None

    def clear_tokens(self) -> None:
        self.storage.remove(STORE_KEY)

    def save_adapter_tokens(self, access_token: str, refresh_token: typing.Optional[str]) -> None:
        self.storage.set(ADAPTER_TOKEN_KEY, access_token)
        if refresh_token:
            self.storage.set(ADAPTER_REFRESH_KEY, refresh_token)

    def load_adapter_tokens(self) -> typing.Tuple[typing.Optional[str], typing.Optional[str]]:
        return self.storage.get(ADAPTER_TOKEN_KEY), self.storage.get(ADAPTER_REFRESH_KEY)

    def clear_adapter_tokens(self) -> None:
        self.storage.remove(ADAPTER_TOKEN_KEY)
        self.storage.remove(ADAPTER_REFRESH_KEY)


# --- Session registry ---
# One storage per browser session, keyed by the session cookie value.
# Sessions are independent: nothing here propagates a logout across them.
_sessions: typing.Dict[str, InMemorySessionStorage] = {}
_last_seen: typing.Dict[str, float] = {}


def get_or_create_session(session_id: typing.Optional[str]) -> typing.Tuple[str, InMemorySessionStorage]:
    if not session_id or session_id not in _sessions:
        session_id = str(uuid.uuid4())
        _sessions[session_id] = InMemorySessionStorage()
    _last_seen[session_id] = time.monotonic()
    return session_id, _sessions[session_id]


def get_session(session_id: str) -> typing.Optional[InMemorySessionStorage]:
    return _sessions.get(session_id)


def drop_session(session_id: str) -> None:
    _sessions.pop(session_id, None)
    _last_seen.pop(session_id, None)


def evict_idle_sessions(max_idle_seconds: float, now: typing.Optional[float] = None) -> typing.List[str]:
    """Drops sessions unused for longer than max_idle_seconds and returns their ids."""
    now = time.monotonic() if now is None else now
    stale = [sid for sid, seen in _last_seen.items() if now - seen > max_idle_seconds]
    for session_id in stale:
        drop_session(session_id)
    if stale:
        print(f"SESSION: Evicted {len(stale)} idle session(s)")
    return stale
