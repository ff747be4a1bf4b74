# src/oshapp_bff/auth_utils.py
import base64
import hashlib
import secrets
import typing
from urllib.parse import urlencode

import httpx
from fastapi import Request, HTTPException, status
from jose import JWTError, jwt
from pydantic import BaseModel

from .config import settings
from .exceptions import IdentityProviderError, TokenDecodeError
from .session_data import TokenPair


class User(BaseModel):
    username: str
    email: typing.Optional[str] = None
    first_name: typing.Optional[str] = None
    last_name: typing.Optional[str] = None
    roles: typing.List[str] = []
    sub: typing.Optional[str] = None
    email_verified: bool = False


# --- Token decoding ---

def decode_claims(token: typing.Optional[str]) -> dict:
    """
    Reads the JWT payload without verifying the signature.
    The backend validates every token it receives; here the claims only drive routing and display.
    """
    if not token:
        raise TokenDecodeError("No token")
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as e:
        raise TokenDecodeError(f"Invalid token: {e}") from e
    if not isinstance(claims, dict):
        raise TokenDecodeError("Token payload is not an object")
    return claims


def extract_roles(claims: dict, client_id: typing.Optional[str] = None) -> typing.List[str]:
    client_id = client_id or settings.KEYCLOAK_CLIENT_ID
    realm_roles = (claims.get("realm_access") or {}).get("roles")
    if realm_roles:
        return list(realm_roles)
    client_roles = ((claims.get("resource_access") or {}).get(client_id) or {}).get("roles")
    if client_roles:
        return list(client_roles)
    roles = claims.get("roles")
    if roles:
        return list(roles) if isinstance(roles, (list, tuple)) else [roles]
    return []


def user_from_token(token: typing.Optional[str]) -> User:
    claims = decode_claims(token)
    username = claims.get("preferred_username")
    if not username:
        raise TokenDecodeError("Token has no preferred_username claim")
    return User(
        username=username,
        email=claims.get("email"),
        first_name=claims.get("given_name"),
        last_name=claims.get("family_name"),
        roles=extract_roles(claims),
        sub=claims.get("sub"),
        email_verified=bool(claims.get("email_verified", False)),
    )


def token_expiry(token: str) -> typing.Optional[int]:
    exp = decode_claims(token).get("exp")
    return int(exp) if exp is not None else None


# --- PKCE ---

def generate_pkce_pair() -> typing.Tuple[str, str]:
    """Returns (code_verifier, code_challenge) for the S256 method."""
    code_verifier = secrets.token_urlsafe(64)[:96]
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge


# --- Keycloak token endpoint client ---

class KeycloakClient:
    """Talks to the realm's OpenID Connect endpoints for the public oshapp-frontend client."""

    def __init__(self, transport: typing.Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=settings.BACKEND_TIMEOUT_SECONDS)

    async def _token_request(self, form: dict, failure_message: str) -> TokenPair:
        form = {"client_id": settings.KEYCLOAK_CLIENT_ID, **form}
        async with self._client() as client:
            try:
                response = await client.post(
                    settings.TOKEN_ENDPOINT,
                    data=form,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            except httpx.RequestError as e:
                print(f"AUTH_UTILS: Could not reach Keycloak token endpoint: {e}")
                raise IdentityProviderError(failure_message) from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            print(f"AUTH_UTILS: Token endpoint answered {response.status_code} for grant '{form.get('grant_type')}'")
            raise IdentityProviderError(
                body.get("error_description") or failure_message,
                error=body.get("error"),
            )
        try:
            return TokenPair(**response.json())
        except (ValueError, TypeError) as e:
            # pydantic's ValidationError is a ValueError
            raise IdentityProviderError(failure_message) from e

    async def login_with_credentials(self, username: str, password: str) -> TokenPair:
        return await self._token_request(
            {
                "grant_type": "password",
                "username": username,
                "password": password,
                "scope": "openid profile email",
            },
            failure_message="Login failed",
        )

    async def exchange_code(self, code: str, code_verifier: str) -> TokenPair:
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": code_verifier,
                "redirect_uri": settings.BFF_REDIRECT_URI,
            },
            failure_message="Failed to acquire token",
        )

    async def refresh_tokens(self, tokens: TokenPair) -> TokenPair:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": tokens.refresh_token},
            failure_message="Refresh failed",
        )

    async def backchannel_logout(self, refresh_token: typing.Optional[str]) -> None:
        """Fire-and-forget: the local session is torn down whatever Keycloak answers."""
        if not refresh_token:
            return
        async with self._client() as client:
            try:
                await client.post(
                    settings.LOGOUT_ENDPOINT,
                    data={"client_id": settings.KEYCLOAK_CLIENT_ID, "refresh_token": refresh_token},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            except httpx.HTTPError as e:
                print(f"AUTH_UTILS: Back-channel logout failed, ignoring: {e}")


keycloak_client = KeycloakClient()


# --- OIDC Flow Functions ---

def build_auth_url(state: str, code_challenge: str, scopes: typing.Optional[list] = None) -> str:
    """
    Builds the Keycloak authorization URL (authorization code + PKCE S256).
    The state and code_verifier are stored in the session by the calling route.
    """
    if not scopes:
        scopes = settings.KEYCLOAK_SCOPES
    query = urlencode({
        "client_id": settings.KEYCLOAK_CLIENT_ID,
        "response_type": "code",
        "redirect_uri": settings.BFF_REDIRECT_URI,
        "scope": " ".join(scopes),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    })
    print(f"AUTH_UTILS: build_auth_url - State: {state}, Redirect URI: {settings.BFF_REDIRECT_URI}")
    return f"{settings.AUTHORIZATION_ENDPOINT}?{query}"


async def get_token_from_code(
        request: Request,
        expected_state: typing.Optional[str],
        code_verifier: typing.Optional[str],
) -> TokenPair:
    """
    Acquires tokens using the authorization code.
    Verifies the returned state against the expected_state kept in the session.
    """
    returned_state = request.query_params.get("state")

    if not expected_state or not code_verifier:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Authentication state missing from session. Please try logging in again."
        )
    if not returned_state or returned_state != expected_state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Authentication state mismatch. Possible CSRF attack."
        )

    auth_code = request.query_params.get("code")
    if not auth_code:
        error = request.query_params.get("error")
        error_description = request.query_params.get("error_description")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Authentication failed at Keycloak: {error} - {error_description}"
        )

    try:
        tokens = await keycloak_client.exchange_code(auth_code, code_verifier)
    except IdentityProviderError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to acquire token: {e}"
        ) from e

    print("AUTH_UTILS: get_token_from_code - Token acquired successfully.")
    return tokens


def build_logout_url(post_logout_redirect_uri: str, id_token: typing.Optional[str] = None) -> str:
    params = {
        "client_id": settings.KEYCLOAK_CLIENT_ID,
        "post_logout_redirect_uri": post_logout_redirect_uri,
    }
    if id_token:
        params["id_token_hint"] = id_token
    return f"{settings.LOGOUT_ENDPOINT}?{urlencode(params)}"
