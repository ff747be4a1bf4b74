import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import make_pair
from oshapp_bff.auth_context import AuthContext
from oshapp_bff.exceptions import IdentityProviderError
from oshapp_bff.keycloak_adapter import KeycloakAdapter
from oshapp_bff.session_data import TokenStore
from oshapp_bff.token_refresh import LOGIN_REQUIRED_FLAG, TokenRefreshLoop

pytestmark = pytest.mark.unit


def logged_in_context(storage, expires_in, refresh_result) -> AuthContext:
    idp = Mock()
    if isinstance(refresh_result, Exception):
        idp.refresh_tokens = AsyncMock(side_effect=refresh_result)
    else:
        idp.refresh_tokens = AsyncMock(return_value=refresh_result)
    ctx = AuthContext(storage, adapter=KeycloakAdapter(TokenStore(storage), idp=idp))
    ctx.complete_login(make_pair("nurse", ["INFIRMIER_ST"], expires_in=expires_in))
    return ctx


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_refreshes_tokens_close_to_expiry(self, storage):
        fresh = make_pair("nurse", ["INFIRMIER_ST"], expires_in=300)
        ctx = logged_in_context(storage, 10, fresh)
        loop = TokenRefreshLoop(interval=60, min_validity=30)
        loop.register("s1", ctx, storage.state)

        assert await loop.run_once() == {"s1": True}
        assert ctx.adapter.token == fresh.access_token
        assert ctx.store.load_tokens().access_token == fresh.access_token
        assert LOGIN_REQUIRED_FLAG not in storage.state
        assert loop.registered() == ["s1"]

    @pytest.mark.asyncio
    async def test_fresh_tokens_are_left_alone(self, storage):
        ctx = logged_in_context(storage, 300, make_pair())
        loop = TokenRefreshLoop(interval=60, min_validity=30)
        loop.register("s1", ctx, storage.state)

        assert await loop.run_once() == {"s1": True}
        ctx.adapter.idp.refresh_tokens.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_drops_the_whole_session_login(self, storage):
        ctx = logged_in_context(storage, 10, IdentityProviderError("Refresh failed"))
        loop = TokenRefreshLoop(interval=60, min_validity=30)
        loop.register("s1", ctx, storage.state)

        assert await loop.run_once() == {"s1": False}
        assert storage.state[LOGIN_REQUIRED_FLAG] is True
        assert loop.registered() == []
        assert ctx.adapter.authenticated is False
        assert ctx.store.load_adapter_tokens() == (None, None)
        # Nothing left that could pass for a live session.
        assert ctx.user is None
        assert ctx.access_token is None
        assert ctx.store.load_tokens() is None

    @pytest.mark.asyncio
    async def test_expired_session_does_not_come_back_on_bootstrap(self, storage):
        ctx = logged_in_context(storage, 10, IdentityProviderError("Refresh failed"))
        loop = TokenRefreshLoop(interval=60, min_validity=30)
        loop.register("s1", ctx, storage.state)
        await loop.run_once()

        fresh_ctx = AuthContext(storage, adapter=ctx.adapter)
        assert await fresh_ctx.bootstrap() is None

    @pytest.mark.asyncio
    async def test_unauthenticated_sessions_are_skipped(self, storage):
        ctx = AuthContext(storage, adapter=KeycloakAdapter(TokenStore(storage), idp=Mock()))
        loop = TokenRefreshLoop(interval=60, min_validity=30)
        loop.register("s1", ctx, storage.state)
        assert await loop.run_once() == {}


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        loop = TokenRefreshLoop(interval=0.01, min_validity=0)
        loop.run_once = AsyncMock(return_value={})

        loop.start()
        await asyncio.sleep(0.05)
        await loop.stop()

        assert loop.run_once.await_count >= 1
        assert loop._task is None
