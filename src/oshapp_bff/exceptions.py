# src/oshapp_bff/exceptions.py

import typing


class OshappError(Exception):
    """Base class for errors raised by the BFF."""


class IdentityProviderError(OshappError):
    """Keycloak refused a grant (login, code exchange or refresh)."""

    def __init__(self, message: str, error: typing.Optional[str] = None):
        self.error = error
        super().__init__(message)


class TokenDecodeError(OshappError):
    pass


# --- Backend errors ---

class BackendError(OshappError):
    """Base class for failures talking to the OSHApp REST backend."""


class BackendUnavailableError(BackendError):
    """Timeout, refused connection or any other transport failure."""


class BackendUnauthorizedError(BackendError):
    def __init__(self, message: str = "Session expirée, veuillez vous reconnecter."):
        super().__init__(message)


class BackendHTTPError(BackendError):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"{status_code}: {message}")


class MalformedResponseError(BackendError):
    pass


# --- Medical-visit workflow ---

class InvalidTransitionError(OshappError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Transition {current} -> {target} is not allowed")


class ProposalNotAllowedError(OshappError):
    pass
