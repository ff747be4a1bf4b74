# src/oshapp_bff/keycloak_adapter.py

import time
import typing

from .auth_utils import KeycloakClient, keycloak_client, token_expiry
from .exceptions import IdentityProviderError, TokenDecodeError
from .session_data import TokenPair, TokenStore


class KeycloakAdapter:
    """
    Server-side counterpart of the Keycloak JS adapter for one session.

    It owns the adapter token cache (kc_t / kc_r) and never forces a login:
    init() only reports whether the cached session is still usable.
    """

    def __init__(self, store: TokenStore, idp: typing.Optional[KeycloakClient] = None):
        self.store = store
        self.idp = idp or keycloak_client
        self.token: typing.Optional[str] = None
        self.refresh_token: typing.Optional[str] = None
        self.authenticated = False

    async def init(self, check_sso: bool = True) -> bool:
        token, refresh_token = self.store.load_adapter_tokens()
        self.token, self.refresh_token = token, refresh_token
        if not token:
            self.authenticated = False
            return False
        try:
            expired = self.is_token_expired()
        except TokenDecodeError:
            self.clear()
            return False
        if expired and check_sso:
            # check-sso: try a silent refresh, never redirect
            try:
                await self.update_token(0)
            except (IdentityProviderError, TokenDecodeError) as e:
                print(f"AUTH_CONTEXT: Silent SSO check failed: {e}")
                self.clear()
                return False
        self.authenticated = True
        return True

    def adopt(self, tokens: TokenPair) -> None:
        self.token = tokens.access_token
        self.refresh_token = tokens.refresh_token
        self.authenticated = True
        self.store.save_adapter_tokens(tokens.access_token, tokens.refresh_token)

    def is_token_expired(self, min_validity: int = 0) -> bool:
        if not self.token:
            return True
        exp = token_expiry(self.token)
        if exp is None:
            return False
        return exp - min_validity <= time.time()

    async def update_token(self, min_validity: int) -> bool:
        """
        Refreshes the token if it expires within min_validity seconds.
        Returns True when a refresh happened. Raises when the refresh fails.
        """
        if not self.is_token_expired(min_validity):
            return False
        if not self.refresh_token:
            raise TokenDecodeError("No refresh token available")
        current = TokenPair(access_token=self.token or "", refresh_token=self.refresh_token)
        refreshed = await self.idp.refresh_tokens(current)
        self.adopt(refreshed)
        # Keep the persisted pair in step when the session was opened through the login form.
        if self.store.load_tokens() is not None:
            self.store.save_tokens(refreshed)
        return True

    def clear(self) -> None:
        self.token = None
        self.refresh_token = None
        self.authenticated = False
        self.store.clear_adapter_tokens()
