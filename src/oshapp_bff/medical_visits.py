# src/oshapp_bff/medical_visits.py

import datetime
import enum
import typing

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .api_client import BackendClient
from .exceptions import InvalidTransitionError, MalformedResponseError, ProposalNotAllowedError

MEDICAL_VISITS_PATH = "/api/v1/medical-visits"


class VisitStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROPOSED = "PROPOSED"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class ProposalStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


TRANSITIONS: typing.Dict[VisitStatus, typing.FrozenSet[VisitStatus]] = {
    VisitStatus.PENDING: frozenset({VisitStatus.PROPOSED, VisitStatus.CONFIRMED, VisitStatus.CANCELLED}),
    VisitStatus.PROPOSED: frozenset({VisitStatus.CONFIRMED, VisitStatus.REJECTED, VisitStatus.PROPOSED}),
    VisitStatus.CONFIRMED: frozenset(),
    VisitStatus.REJECTED: frozenset(),
    VisitStatus.CANCELLED: frozenset(),
}

# User action -> status the backend moves the request to.
ACTION_TARGETS: typing.Dict[str, VisitStatus] = {
    "propose": VisitStatus.PROPOSED,
    "accept": VisitStatus.CONFIRMED,
    "reject": VisitStatus.REJECTED,
    "confirm": VisitStatus.CONFIRMED,
    "cancel": VisitStatus.CANCELLED,
}


def _upper(v: typing.Any) -> typing.Any:
    return v.upper() if isinstance(v, str) else v


def _date_part(v: typing.Any) -> typing.Any:
    # Backend sends either "2024-05-02" or a full ISO timestamp.
    if isinstance(v, str) and len(v) > 10 and v[10] in "T ":
        return v[:10]
    if v == "":
        return None
    return v


class Proposal(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    proposed_date: datetime.date = Field(alias="proposedDate")
    proposed_time: typing.Optional[str] = Field(None, alias="proposedTime")
    proposed_by: str = Field("", alias="proposedBy")
    status: ProposalStatus = ProposalStatus.PENDING
    reason: typing.Optional[str] = None
    proposed_at: typing.Optional[str] = Field(None, alias="proposedAt")

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: typing.Any) -> typing.Any:
        return _upper(v) or ProposalStatus.PENDING.value

    @field_validator("proposed_date", mode="before")
    @classmethod
    def normalize_date(cls, v: typing.Any) -> typing.Any:
        return _date_part(v)

    @field_validator("proposed_by", mode="before")
    @classmethod
    def none_to_empty(cls, v: typing.Any) -> typing.Any:
        return v or ""


class MedicalVisitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    status: VisitStatus
    employee_id: typing.Optional[int] = Field(None, alias="employeeId")
    employee_name: typing.Optional[str] = Field(None, alias="employeeName")
    employee_department: typing.Optional[str] = Field(None, alias="employeeDepartment")
    motif: typing.Optional[str] = None
    date_souhaitee: datetime.date = Field(alias="dateSouhaitee")
    heure_souhaitee: typing.Optional[str] = Field(None, alias="heureSouhaitee")
    urgent: bool = False
    notes: typing.Optional[str] = None
    proposed_date: typing.Optional[datetime.date] = Field(None, alias="proposedDate")
    proposed_time: typing.Optional[str] = Field(None, alias="proposedTime")
    confirmed_date: typing.Optional[datetime.date] = Field(None, alias="confirmedDate")
    confirmed_time: typing.Optional[str] = Field(None, alias="confirmedTime")
    previous_proposals: typing.List[Proposal] = Field(default_factory=list, alias="previousProposals")

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: typing.Any) -> typing.Any:
        return _upper(v)

    @field_validator("date_souhaitee", "proposed_date", "confirmed_date", mode="before")
    @classmethod
    def normalize_dates(cls, v: typing.Any) -> typing.Any:
        return _date_part(v)

    @field_validator("previous_proposals", mode="before")
    @classmethod
    def none_to_list(cls, v: typing.Any) -> typing.Any:
        return v or []


class CreateMedicalVisitRequest(BaseModel):
    motif: str = Field(min_length=1)
    date_souhaitee: datetime.date
    heure_souhaitee: str = Field(min_length=1)
    urgent: bool = False
    notes: typing.Optional[str] = None

    def to_backend(self) -> dict:
        body = {
            "motif": self.motif,
            "dateSouhaitee": self.date_souhaitee.isoformat(),
            "heureSouhaitee": self.heure_souhaitee,
            "urgent": self.urgent,
        }
        if self.notes:
            body["notes"] = self.notes
        return body


class ProposeSlot(BaseModel):
    proposed_date: datetime.date
    proposed_time: str = Field(min_length=1)
    reason: typing.Optional[str] = None


class ConfirmSlot(BaseModel):
    confirmed_date: typing.Optional[datetime.date] = None
    confirmed_time: typing.Optional[str] = None
    notes: typing.Optional[str] = None


class ActiveRequests(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_active_requests: bool = Field(False, alias="hasActiveRequests")
    active_requests: typing.List[MedicalVisitRequest] = Field(default_factory=list, alias="activeRequests")


# --- Parsing at the network boundary ---

def parse_request(payload: typing.Any) -> MedicalVisitRequest:
    try:
        return MedicalVisitRequest.model_validate(payload)
    except ValidationError as e:
        raise MalformedResponseError(f"Malformed medical visit request: {e.error_count()} error(s)") from e


def parse_request_list(payload: typing.Any) -> typing.List[MedicalVisitRequest]:
    if not isinstance(payload, list):
        raise MalformedResponseError("Expected a list of medical visit requests")
    return [parse_request(item) for item in payload]


# --- State machine ---

def can_transition(current: VisitStatus, target: VisitStatus) -> bool:
    return target in TRANSITIONS[VisitStatus(current)]


def latest_proposal(request: MedicalVisitRequest) -> typing.Optional[Proposal]:
    if not request.previous_proposals:
        return None
    return request.previous_proposals[-1]


def _made_latest_pending_proposal(request: MedicalVisitRequest, username: str) -> bool:
    latest = latest_proposal(request)
    if latest is None or latest.status != ProposalStatus.PENDING:
        return False
    return latest.proposed_by.lower() == (username or "").lower()


def can_propose(request: MedicalVisitRequest, username: str) -> bool:
    """Proposals alternate: whoever made the pending latest proposal waits for the other side."""
    if not can_transition(request.status, VisitStatus.PROPOSED):
        return False
    return not _made_latest_pending_proposal(request, username)


def allowed_actions(request: MedicalVisitRequest, username: str) -> typing.Set[str]:
    actions = set()
    if can_propose(request, username):
        actions.add("propose")
    if request.status == VisitStatus.PROPOSED and not _made_latest_pending_proposal(request, username):
        actions.update({"accept", "reject"})
    if can_transition(request.status, VisitStatus.CONFIRMED):
        actions.add("confirm")
    if can_transition(request.status, VisitStatus.CANCELLED):
        actions.add("cancel")
    return actions


def check_action(request: MedicalVisitRequest, action: str, username: str) -> None:
    target = ACTION_TARGETS[action]
    if not can_transition(request.status, target):
        raise InvalidTransitionError(request.status.value, target.value)
    if action in ("accept", "reject") and request.status != VisitStatus.PROPOSED:
        raise ProposalNotAllowedError(f"Request {request.id} has no proposal to {action}")
    if action not in allowed_actions(request, username):
        raise ProposalNotAllowedError(
            f"User '{username}' made the latest proposal and must wait for an answer"
        )


# --- Client-side list helpers ---

def filter_requests(
        requests: typing.Iterable[MedicalVisitRequest],
        status: typing.Optional[str] = None,
        search: typing.Optional[str] = None,
) -> typing.List[MedicalVisitRequest]:
    wanted = (status or "ALL").upper()
    term = (search or "").lower()
    result = []
    for request in requests:
        if wanted != "ALL" and request.status.value != wanted:
            continue
        if term and term not in (request.employee_name or "").lower() and term not in (request.motif or "").lower():
            continue
        result.append(request)
    return result


def count_by_status(requests: typing.Iterable[MedicalVisitRequest]) -> typing.Dict[str, int]:
    counts = {s.value: 0 for s in VisitStatus}
    for request in requests:
        counts[request.status.value] += 1
    counts["ALL"] = sum(counts.values())
    return counts


# --- Cache with explicit invalidation ---

class RequestCache:
    """
    Read-through cache scoped to one HTTP request.

    The backend owns visit state and other users change it, so nothing is kept
    between requests. Every mutating call also invalidates it so the next read re-fetches.
    """

    def __init__(self):
        self._entries: typing.Dict[str, typing.Any] = {}

    def get(self, key: str) -> typing.Any:
        return self._entries.get(key)

    def set(self, key: str, value: typing.Any) -> None:
        self._entries[key] = value

    def invalidate(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._entries


class MedicalVisitService:
    def __init__(self, client: BackendClient, cache: typing.Optional[RequestCache] = None):
        self.client = client
        self.cache = cache if cache is not None else RequestCache()

    # --- Reads ---

    async def _cached(self, key: str, path: str, parse: typing.Callable[[typing.Any], typing.Any]) -> typing.Any:
        if key in self.cache:
            return self.cache.get(key)
        value = parse(await self.client.get(path))
        self.cache.set(key, value)
        return value

    async def get_all_requests(self) -> typing.List[MedicalVisitRequest]:
        return await self._cached("all", MEDICAL_VISITS_PATH, parse_request_list)

    async def get_requests_by_status(self, status: str) -> typing.List[MedicalVisitRequest]:
        status = VisitStatus(status.upper()).value
        return await self._cached(f"status:{status}", f"{MEDICAL_VISITS_PATH}/status/{status}", parse_request_list)

    async def get_request(self, request_id: int) -> MedicalVisitRequest:
        return await self._cached(f"request:{request_id}", f"{MEDICAL_VISITS_PATH}/{request_id}", parse_request)

    async def get_employee_requests(self, employee_id: int) -> typing.List[MedicalVisitRequest]:
        return await self._cached(
            f"employee:{employee_id}", f"{MEDICAL_VISITS_PATH}/employee/{employee_id}", parse_request_list
        )

    async def check_active_requests(self, employee_id: int) -> ActiveRequests:
        def parse(payload: typing.Any) -> ActiveRequests:
            try:
                return ActiveRequests.model_validate(payload)
            except ValidationError as e:
                raise MalformedResponseError("Malformed active-requests payload") from e

        return await self._cached(
            f"active:{employee_id}", f"{MEDICAL_VISITS_PATH}/employee/{employee_id}/active", parse
        )

    async def get_request_counts(self) -> typing.Dict[str, int]:
        def parse(payload: typing.Any) -> typing.Dict[str, int]:
            if not isinstance(payload, dict):
                raise MalformedResponseError("Expected an object of counts")
            try:
                counts = {s.value: int(payload.get(s.value) or 0) for s in VisitStatus}
            except (TypeError, ValueError) as e:
                raise MalformedResponseError("Counts must be integers") from e
            counts["ALL"] = sum(counts.values())
            return counts

        return await self._cached("counts", f"{MEDICAL_VISITS_PATH}/counts", parse)

    # --- Mutations: each one invalidates the cache, nothing is patched locally ---

    async def _mutate(self, method: str, path: str, body: typing.Any = None) -> None:
        try:
            await self.client.request(method, path, json=body)
        finally:
            self.cache.invalidate()

    async def create_request(self, employee_id: int, data: CreateMedicalVisitRequest) -> typing.List[MedicalVisitRequest]:
        await self._mutate("POST", f"{MEDICAL_VISITS_PATH}/employee/{employee_id}", data.to_backend())
        return await self.get_employee_requests(employee_id)

    async def _act(self, request_id: int, action: str, username: str, body: typing.Any = None) -> MedicalVisitRequest:
        # Checked against the backend's current state, never a cached copy.
        current = parse_request(await self.client.get(f"{MEDICAL_VISITS_PATH}/{request_id}"))
        check_action(current, action, username)
        await self._mutate("PUT", f"{MEDICAL_VISITS_PATH}/{request_id}/{action}", body)
        return await self.get_request(request_id)

    async def propose_slot(self, request_id: int, slot: ProposeSlot, username: str) -> MedicalVisitRequest:
        body = {
            "proposedDate": slot.proposed_date.isoformat(),
            "proposedTime": slot.proposed_time,
            "reason": slot.reason or "Nouveau créneau proposé",
            "proposedBy": username,
        }
        return await self._act(request_id, "propose", username, body)

    async def accept_proposal(self, request_id: int, username: str) -> MedicalVisitRequest:
        return await self._act(request_id, "accept", username)

    async def reject_proposal(self, request_id: int, username: str, reason: typing.Optional[str] = None) -> MedicalVisitRequest:
        return await self._act(request_id, "reject", username, {"reason": reason} if reason else None)

    async def confirm_request(self, request_id: int, slot: ConfirmSlot, username: str) -> MedicalVisitRequest:
        body = {
            "confirmedDate": slot.confirmed_date.isoformat() if slot.confirmed_date else None,
            "confirmedTime": slot.confirmed_time,
            "notes": slot.notes,
        }
        return await self._act(request_id, "confirm", username, {k: v for k, v in body.items() if v is not None})

    async def cancel_request(self, request_id: int, username: str) -> MedicalVisitRequest:
        return await self._act(request_id, "cancel", username)

    async def reset_employee_requests(self, employee_id: int) -> None:
        await self._mutate("DELETE", f"{MEDICAL_VISITS_PATH}/employee/{employee_id}/reset")
