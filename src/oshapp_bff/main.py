# src/oshapp_bff/main.py

import typing
import uuid

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from . import auth_utils
from .api_client import BackendClient
from .appointments import AppointmentService, CreateAppointment
from .auth_context import AuthContext
from .auth_utils import User
from .config import settings
from .exceptions import (
    BackendError,
    BackendHTTPError,
    BackendUnauthorizedError,
    BackendUnavailableError,
    IdentityProviderError,
    InvalidTransitionError,
    MalformedResponseError,
    OshappError,
    ProposalNotAllowedError,
    TokenDecodeError,
)
from .medical_visits import (
    ConfirmSlot,
    CreateMedicalVisitRequest,
    MedicalVisitRequest,
    MedicalVisitService,
    ProposeSlot,
    RequestCache,
    VisitStatus,
    allowed_actions,
    filter_requests,
)
from .roles import dashboard_path_for, is_medical_staff
from .session_data import InMemorySessionStorage, drop_session, evict_idle_sessions, get_or_create_session
from .token_refresh import LOGIN_REQUIRED_FLAG, refresh_loop

SESSION_COOKIE_NAME = "session_id"
SESSION_COOKIE_MAX_AGE = 60 * 60 * 4  # 4 hours
LOGIN_PATH = "/login"


class SessionMiddlewareCustom(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        for stale_id in evict_idle_sessions(SESSION_COOKIE_MAX_AGE):
            refresh_loop.unregister(stale_id)
        session_id, storage = get_or_create_session(request.cookies.get(SESSION_COOKIE_NAME))
        request.state.session_id = session_id
        request.state.session = storage
        request.state.drop_session = False
        response: StarletteResponse = await call_next(request)
        if request.state.drop_session:
            drop_session(session_id)
            response.delete_cookie(SESSION_COOKIE_NAME, samesite="lax")
        else:
            response.set_cookie(
                SESSION_COOKIE_NAME,
                session_id,
                max_age=SESSION_COOKIE_MAX_AGE,
                httponly=True,
                secure=False,  # Set to True in production with HTTPS
                samesite="lax",
            )
        return response


# --- FastAPI App Setup ---
app = FastAPI(
    title="OSHApp BFF API",
    description="Backend-For-Frontend for the OSHApp UI: Keycloak sessions, role routing and medical-visit workflow.",
    version="0.1.0"
)

app.add_middleware(SessionMiddlewareCustom)


# --- Session / auth dependencies ---

async def get_auth_context(request: Request) -> AuthContext:
    storage: InMemorySessionStorage = request.state.session
    ctx = storage.state.get("auth")
    if ctx is None:
        ctx = AuthContext(storage)
        await ctx.bootstrap()
        storage.state["auth"] = ctx
        if ctx.user is not None:
            refresh_loop.register(request.state.session_id, ctx, storage.state)
    elif ctx.adapter.authenticated and ctx.adapter.token != ctx.access_token:
        # The refresh loop rotated the token since the last request.
        ctx.access_token = ctx.adapter.token
    return ctx


def _login_redirect_exception(request: Request) -> HTTPException:
    if request.url.path.startswith("/api/"):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Not authenticated", "login_url": LOGIN_PATH},
        )
    response = RedirectResponse(url=LOGIN_PATH, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    # Remember where the user was going; /login picks it up.
    response.set_cookie(
        key="auth_redirect_path_temp",
        value=request.url.path,
        max_age=300,
        httponly=True,
        samesite="lax",
        path="/",
    )
    return HTTPException(
        status_code=response.status_code,
        detail="Not authenticated",
        headers=dict(response.headers),
    )


async def get_authenticated_user(
        request: Request,
        ctx: AuthContext = Depends(get_auth_context),
) -> User:
    storage: InMemorySessionStorage = request.state.session
    if storage.state.get(LOGIN_REQUIRED_FLAG):
        print(f"MAIN: Session {request.state.session_id} needs an interactive login after a failed refresh.")
        raise _login_redirect_exception(request)
    if ctx.user is None:
        raise _login_redirect_exception(request)
    return ctx.user


def get_backend_client(ctx: AuthContext = Depends(get_auth_context)) -> BackendClient:
    return BackendClient(ctx.access_token)


def get_visit_service(client: BackendClient = Depends(get_backend_client)) -> MedicalVisitService:
    # Cache lives for this request only: other sessions change visit state.
    return MedicalVisitService(client, RequestCache())


def get_appointment_service(client: BackendClient = Depends(get_backend_client)) -> AppointmentService:
    return AppointmentService(client)


def _to_http_exception(e: OshappError) -> HTTPException:
    if isinstance(e, BackendUnavailableError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Le serveur backend n'est pas accessible. Veuillez vérifier que le serveur est démarré.",
        )
    if isinstance(e, BackendUnauthorizedError):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": str(e), "login_url": LOGIN_PATH},
        )
    if isinstance(e, BackendHTTPError):
        return HTTPException(status_code=e.status_code, detail=e.message)
    if isinstance(e, MalformedResponseError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Invalid backend response: {e}")
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, ProposalNotAllowedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


def _request_view(request: MedicalVisitRequest, username: str) -> dict:
    return {"request": request, "allowed_actions": sorted(allowed_actions(request, username))}


# --- Authentication Routes ---

@app.get("/login")
async def login(request: Request):
    storage: InMemorySessionStorage = request.state.session
    state = str(uuid.uuid4())
    code_verifier, code_challenge = auth_utils.generate_pkce_pair()
    storage.state["auth_state"] = state
    storage.state["code_verifier"] = code_verifier

    redirect_path_temp = request.cookies.get("auth_redirect_path_temp")
    storage.state["auth_redirect_path"] = redirect_path_temp or "/"

    auth_url = auth_utils.build_auth_url(state=state, code_challenge=code_challenge)
    response = RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)
    if redirect_path_temp:
        response.delete_cookie(key="auth_redirect_path_temp", samesite="lax", path="/")
    return response


@app.get("/auth/callback")
async def auth_callback(request: Request, ctx: AuthContext = Depends(get_auth_context)):
    storage: InMemorySessionStorage = request.state.session
    expected_state = storage.state.pop("auth_state", None)
    code_verifier = storage.state.pop("code_verifier", None)
    redirect_path = storage.state.pop("auth_redirect_path", "/")

    try:
        tokens = await auth_utils.get_token_from_code(request, expected_state, code_verifier)
        dashboard = ctx.complete_login(tokens)
    except HTTPException:
        storage.clear()
        raise
    except TokenDecodeError as e:
        storage.clear()
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Unusable token from Keycloak: {e}")

    storage.state.pop(LOGIN_REQUIRED_FLAG, None)
    refresh_loop.register(request.state.session_id, ctx, storage.state)
    print(f"MAIN: /auth/callback successful for '{ctx.user.username}', roles {ctx.user.roles}")
    target = dashboard if redirect_path in ("/", "/dashboard") else redirect_path
    return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)


class CredentialsLogin(BaseModel):
    username: str
    password: str


@app.post("/api/bff/login")
async def login_with_credentials(
        request: Request,
        credentials: CredentialsLogin,
        ctx: AuthContext = Depends(get_auth_context),
):
    # The form redirects on its own; keep the generic dashboard redirect out of the way meanwhile.
    ctx.begin_login()
    try:
        tokens = await auth_utils.keycloak_client.login_with_credentials(credentials.username, credentials.password)
        dashboard = ctx.complete_login(tokens)
    except IdentityProviderError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except TokenDecodeError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Unusable token from Keycloak: {e}")
    finally:
        ctx.end_login()

    request.state.session.state.pop(LOGIN_REQUIRED_FLAG, None)
    refresh_loop.register(request.state.session_id, ctx, request.state.session.state)
    return {"redirect": dashboard, "user": ctx.user}


@app.get("/logout")
async def logout(request: Request, ctx: AuthContext = Depends(get_auth_context)):
    refresh_loop.unregister(request.state.session_id)
    target = await ctx.logout()
    request.state.drop_session = True
    return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)


# --- Session information ---

@app.get("/api/bff/userinfo")
async def get_user_info(
        ctx: AuthContext = Depends(get_auth_context),
        user: User = Depends(get_authenticated_user),
):
    return {
        "user": user,
        "dashboard": dashboard_path_for(user.roles),
        "login_in_progress": ctx.login_in_progress,
    }


@app.get("/api/bff/redirect")
async def redirect_decision(
        path: str = Query("/"),
        ctx: AuthContext = Depends(get_auth_context),
):
    return {"redirect": ctx.redirect_target(path)}


@app.get("/api/bff/health")
async def backend_health(client: BackendClient = Depends(get_backend_client)):
    return {"backend_available": await client.check_backend_available()}


# --- Medical visits ---

@app.get("/api/bff/medical-visits")
async def list_medical_visits(
        status_filter: str = Query("ALL", alias="status"),
        search: typing.Optional[str] = None,
        user: User = Depends(get_authenticated_user),
        service: MedicalVisitService = Depends(get_visit_service),
):
    try:
        if status_filter.upper() in VisitStatus.__members__:
            requests = await service.get_requests_by_status(status_filter)
        else:
            requests = await service.get_all_requests()
    except BackendError as e:
        raise _to_http_exception(e)
    return [_request_view(r, user.username) for r in filter_requests(requests, status_filter, search)]


@app.get("/api/bff/medical-visits/counts")
async def medical_visit_counts(
        user: User = Depends(get_authenticated_user),
        service: MedicalVisitService = Depends(get_visit_service),
):
    try:
        return await service.get_request_counts()
    except BackendError as e:
        raise _to_http_exception(e)


@app.get("/api/bff/employees/{employee_id}/medical-visits")
async def employee_medical_visits(
        employee_id: int,
        user: User = Depends(get_authenticated_user),
        service: MedicalVisitService = Depends(get_visit_service),
):
    try:
        requests = await service.get_employee_requests(employee_id)
        active = await service.check_active_requests(employee_id)
    except BackendError as e:
        raise _to_http_exception(e)
    return {
        "requests": [_request_view(r, user.username) for r in requests],
        "has_active_request": active.has_active_requests,
    }


@app.post("/api/bff/employees/{employee_id}/medical-visits", status_code=status.HTTP_201_CREATED)
async def create_medical_visit(
        employee_id: int,
        data: CreateMedicalVisitRequest,
        user: User = Depends(get_authenticated_user),
        client: BackendClient = Depends(get_backend_client),
        service: MedicalVisitService = Depends(get_visit_service),
):
    if not await client.check_backend_available():
        raise _to_http_exception(BackendUnavailableError("health check failed"))
    try:
        active = await service.check_active_requests(employee_id)
        if active.has_active_requests:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Vous avez déjà une demande de visite médicale en cours.",
            )
        requests = await service.create_request(employee_id, data)
    except BackendError as e:
        raise _to_http_exception(e)
    print(f"MAIN: Medical visit request created by '{user.username}' for employee {employee_id}")
    return [_request_view(r, user.username) for r in requests]


@app.put("/api/bff/medical-visits/{request_id}/propose")
async def propose_slot(
        request_id: int,
        slot: ProposeSlot,
        user: User = Depends(get_authenticated_user),
        service: MedicalVisitService = Depends(get_visit_service),
):
    try:
        updated = await service.propose_slot(request_id, slot, user.username)
    except OshappError as e:
        raise _to_http_exception(e)
    return _request_view(updated, user.username)


@app.put("/api/bff/medical-visits/{request_id}/accept")
async def accept_proposal(
        request_id: int,
        user: User = Depends(get_authenticated_user),
        service: MedicalVisitService = Depends(get_visit_service),
):
    try:
        updated = await service.accept_proposal(request_id, user.username)
    except OshappError as e:
        raise _to_http_exception(e)
    return _request_view(updated, user.username)


@app.put("/api/bff/medical-visits/{request_id}/reject")
async def reject_proposal(
        request_id: int,
        body: typing.Dict[str, typing.Any] = Body(default={}),
        user: User = Depends(get_authenticated_user),
        service: MedicalVisitService = Depends(get_visit_service),
):
    try:
        updated = await service.reject_proposal(request_id, user.username, body.get("reason"))
    except OshappError as e:
        raise _to_http_exception(e)
    return _request_view(updated, user.username)


@app.put("/api/bff/medical-visits/{request_id}/confirm")
async def confirm_request(
        request_id: int,
        slot: typing.Optional[ConfirmSlot] = None,
        user: User = Depends(get_authenticated_user),
        service: MedicalVisitService = Depends(get_visit_service),
):
    if not is_medical_staff(user.roles):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only medical staff can confirm a visit.")
    try:
        updated = await service.confirm_request(request_id, slot or ConfirmSlot(), user.username)
    except OshappError as e:
        raise _to_http_exception(e)
    return _request_view(updated, user.username)


@app.put("/api/bff/medical-visits/{request_id}/cancel")
async def cancel_request(
        request_id: int,
        user: User = Depends(get_authenticated_user),
        service: MedicalVisitService = Depends(get_visit_service),
):
    try:
        updated = await service.cancel_request(request_id, user.username)
    except OshappError as e:
        raise _to_http_exception(e)
    return _request_view(updated, user.username)


@app.delete("/api/bff/employees/{employee_id}/medical-visits")
async def reset_employee_requests(
        employee_id: int,
        user: User = Depends(get_authenticated_user),
        service: MedicalVisitService = Depends(get_visit_service),
):
    if not settings.DEV_MODE:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    try:
        await service.reset_employee_requests(employee_id)
    except BackendUnavailableError as e:
        if not settings.DEMO_MODE_ENABLED:
            raise _to_http_exception(e)
        print(f"MAIN: Backend unreachable, reset for employee {employee_id} answered in demo mode")
        return {"demo_mode": True, "requests": []}
    except BackendError as e:
        raise _to_http_exception(e)
    return {"demo_mode": False, "requests": []}


# --- Appointments ---

@app.get("/api/bff/appointments")
async def my_appointments(
        user: User = Depends(get_authenticated_user),
        service: AppointmentService = Depends(get_appointment_service),
):
    try:
        return await service.my_appointments()
    except BackendError as e:
        raise _to_http_exception(e)


@app.post("/api/bff/appointments", status_code=status.HTTP_201_CREATED)
async def create_appointment(
        data: CreateAppointment,
        user: User = Depends(get_authenticated_user),
        service: AppointmentService = Depends(get_appointment_service),
):
    try:
        return await service.create(data)
    except BackendError as e:
        raise _to_http_exception(e)


@app.put("/api/bff/appointments/{appointment_id}/{action}")
async def update_appointment(
        appointment_id: int,
        action: str,
        user: User = Depends(get_authenticated_user),
        service: AppointmentService = Depends(get_appointment_service),
):
    if action not in ("confirm", "cancel"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")
    try:
        if action == "confirm":
            return await service.confirm(appointment_id)
        return await service.cancel(appointment_id)
    except BackendError as e:
        raise _to_http_exception(e)


# --- Lifecycle Events ---

@app.on_event("startup")
async def startup_event():
    print("--- OSHApp BFF (FastAPI) Starting Up ---")
    print(f"Keycloak issuer: {settings.ISSUER}")
    print(f"Keycloak client ID: {settings.KEYCLOAK_CLIENT_ID}")
    print(f"BFF Redirect URI: {settings.BFF_REDIRECT_URI}")
    print(f"Backend API URL: {settings.API_URL}")
    print(f"Dev mode: {settings.DEV_MODE}, demo mode: {settings.DEMO_MODE_ENABLED}")
    refresh_loop.start()
    print("-------------------------------------------")


@app.on_event("shutdown")
async def shutdown_event():
    await refresh_loop.stop()
