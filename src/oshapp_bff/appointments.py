# src/oshapp_bff/appointments.py

import typing

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .api_client import BackendClient
from .exceptions import MalformedResponseError

APPOINTMENTS_PATH = "/api/v1/appointments"


class Appointment(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    status: str
    type: typing.Optional[str] = None
    reason: typing.Optional[str] = None
    requested_date: typing.Optional[str] = Field(None, alias="requestedDate")
    scheduled_time: typing.Optional[str] = Field(None, alias="scheduledTime")
    employee_id: typing.Optional[int] = Field(None, alias="employeeId")
    employee_name: typing.Optional[str] = Field(None, alias="employeeName")
    notes: typing.Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def upper_status(cls, v: typing.Any) -> typing.Any:
        return v.upper() if isinstance(v, str) else v


class CreateAppointment(BaseModel):
    type: str = Field(min_length=1)
    reason: str = Field(min_length=1)
    requested_date: str = Field(min_length=1)
    notes: typing.Optional[str] = None

    def to_backend(self) -> dict:
        body = {"type": self.type, "reason": self.reason, "requestedDate": self.requested_date}
        if self.notes:
            body["notes"] = self.notes
        return body


def parse_appointments(payload: typing.Any) -> typing.List[Appointment]:
    # Paged responses wrap the list in "content".
    if isinstance(payload, dict) and "content" in payload:
        payload = payload["content"]
    if not isinstance(payload, list):
        raise MalformedResponseError("Expected a list of appointments")
    try:
        return [Appointment.model_validate(item) for item in payload]
    except ValidationError as e:
        raise MalformedResponseError(f"Malformed appointment: {e.error_count()} error(s)") from e


class AppointmentService:
    def __init__(self, client: BackendClient):
        self.client = client

    async def my_appointments(self) -> typing.List[Appointment]:
        return parse_appointments(await self.client.get(f"{APPOINTMENTS_PATH}/my-appointments"))

    async def create(self, data: CreateAppointment) -> typing.List[Appointment]:
        await self.client.post(APPOINTMENTS_PATH, json=data.to_backend())
        return await self.my_appointments()

    async def confirm(self, appointment_id: int) -> typing.List[Appointment]:
        await self.client.put(f"{APPOINTMENTS_PATH}/{appointment_id}/confirm")
        return await self.my_appointments()

    async def cancel(self, appointment_id: int) -> typing.List[Appointment]:
        await self.client.put(f"{APPOINTMENTS_PATH}/{appointment_id}/cancel")
        return await self.my_appointments()
