# src/oshapp_bff/auth_context.py

import typing

from .auth_utils import User, user_from_token
from .config import settings
from .exceptions import TokenDecodeError
from .keycloak_adapter import KeycloakAdapter
from .roles import AUTO_REDIRECT_PATHS, dashboard_path_for
from .session_data import SessionStorage, TokenPair, TokenStore


class AuthContext:
    """
    Authentication state of one browser session.

    Holds the decoded user and access token, and the two flags that hold back the
    automatic dashboard redirect while a login form or a logout is still running.
    """

    def __init__(self, storage: SessionStorage, adapter: typing.Optional[KeycloakAdapter] = None):
        self.storage = storage
        self.store = TokenStore(storage)
        self.adapter = adapter or KeycloakAdapter(self.store)
        self.user: typing.Optional[User] = None
        self.access_token: typing.Optional[str] = None
        self.loading = True
        self.login_in_progress = False
        self.is_logging_out = False

    async def bootstrap(self) -> typing.Optional[User]:
        # 1. Token pair from the login form: decode locally, no round trip, no adapter.
        stored = self.store.load_tokens()
        if stored is not None:
            try:
                self.user = user_from_token(stored.access_token)
                self.access_token = stored.access_token
                self.loading = False
                return self.user
            except TokenDecodeError:
                # Malformed and expired tokens alike fall through to the adapter.
                pass

        # 2. Otherwise ask the adapter whether an SSO session is still alive.
        authenticated = await self.adapter.init(check_sso=True)
        if authenticated:
            try:
                self.user = user_from_token(self.adapter.token)
                self.access_token = self.adapter.token
            except TokenDecodeError:
                self._reset()
        else:
            self._reset()
        self.loading = False
        return self.user

    def begin_login(self) -> None:
        self.login_in_progress = True

    def end_login(self) -> None:
        self.login_in_progress = False

    def complete_login(self, tokens: TokenPair) -> str:
        """Persists a fresh token pair and returns the dashboard to land on."""
        self.store.save_tokens(tokens)
        self.adapter.adopt(tokens)
        self.user = user_from_token(tokens.access_token)
        self.access_token = tokens.access_token
        self.loading = False
        return dashboard_path_for(self.user.roles)

    def redirect_target(self, current_path: str) -> typing.Optional[str]:
        if self.user is None:
            return None
        if self.login_in_progress or self.is_logging_out:
            return None
        if current_path not in AUTO_REDIRECT_PATHS:
            return None
        return dashboard_path_for(self.user.roles)

    async def logout(self) -> str:
        """Tears the session down and returns the route for a hard navigation."""
        self.is_logging_out = True
        stored = self.store.load_tokens()
        refresh_token = stored.refresh_token if stored else self.adapter.refresh_token
        username = self.user.username if self.user else None
        try:
            await self.adapter.idp.backchannel_logout(refresh_token)
        finally:
            self.store.clear_tokens()
            self.adapter.clear()
            self.storage.clear()
            self._reset()
            self.is_logging_out = False
        print(f"AUTH_CONTEXT: Logged out user '{username or 'N/A'}'")
        return settings.POST_LOGOUT_REDIRECT_PATH

    def expire(self) -> None:
        """Drops the session's tokens after a failed refresh; only a new login restores it."""
        self.store.clear_tokens()
        self.adapter.clear()
        self._reset()

    def _reset(self) -> None:
        self.user = None
        self.access_token = None
