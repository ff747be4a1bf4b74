# src/oshapp_bff/token_refresh.py

import asyncio
import typing

from .auth_context import AuthContext
from .config import settings
from .exceptions import IdentityProviderError, TokenDecodeError

LOGIN_REQUIRED_FLAG = "login_required"


class TokenRefreshLoop:
    """
    Single process-wide loop that keeps every registered session's token fresh.

    A failed refresh is not retried: the session is flagged so that its next
    request goes back through an interactive Keycloak login.
    """

    def __init__(
            self,
            interval: typing.Optional[float] = None,
            min_validity: typing.Optional[int] = None,
    ):
        self.interval = interval if interval is not None else settings.TOKEN_REFRESH_INTERVAL_SECONDS
        self.min_validity = min_validity if min_validity is not None else settings.TOKEN_MIN_VALIDITY_SECONDS
        # session_id -> (auth context, per-session state dict)
        self._sessions: typing.Dict[str, typing.Tuple[AuthContext, dict]] = {}
        self._task: typing.Optional[asyncio.Task] = None

    def register(self, session_id: str, ctx: AuthContext, state: dict) -> None:
        self._sessions[session_id] = (ctx, state)

    def unregister(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def registered(self) -> typing.List[str]:
        return list(self._sessions.keys())

    async def run_once(self) -> typing.Dict[str, bool]:
        """One sweep over all sessions. Returns session_id -> refresh succeeded."""
        results = {}
        for session_id, (ctx, state) in list(self._sessions.items()):
            if not ctx.adapter.authenticated:
                continue
            try:
                await ctx.adapter.update_token(self.min_validity)
                results[session_id] = True
            except (IdentityProviderError, TokenDecodeError) as e:
                print(f"REFRESH: Token refresh failed for session {session_id}: {e}. Login required.")
                ctx.expire()
                state[LOGIN_REQUIRED_FLAG] = True
                self.unregister(session_id)
                results[session_id] = False
        return results

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())
            print(f"REFRESH: Token refresh loop started (every {self.interval}s, min validity {self.min_validity}s)")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


refresh_loop = TokenRefreshLoop()
