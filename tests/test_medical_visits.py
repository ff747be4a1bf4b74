"""
Medical-visit workflow: schemas at the network boundary, the client-observed
state machine, proposal alternation and the re-fetch-after-mutation contract.
"""

import datetime
import json

import httpx
import pytest

from conftest import proposal_payload, visit_payload
from oshapp_bff.api_client import BackendClient
from oshapp_bff.exceptions import (
    InvalidTransitionError,
    MalformedResponseError,
    ProposalNotAllowedError,
)
from oshapp_bff.medical_visits import (
    CreateMedicalVisitRequest,
    MedicalVisitService,
    ProposeSlot,
    VisitStatus,
    allowed_actions,
    can_propose,
    can_transition,
    count_by_status,
    filter_requests,
    latest_proposal,
    parse_request,
    parse_request_list,
)

pytestmark = pytest.mark.unit


class TestParsing:
    def test_camel_case_payload(self):
        request = parse_request(visit_payload(
            status="proposed",
            proposals=[proposal_payload("Infirmier1", status="pending")],
            proposedDate="2025-03-12T00:00:00",
            proposedTime="10:00",
        ))
        assert request.status == VisitStatus.PROPOSED
        assert request.employee_name == "Jean Dupont"
        assert request.date_souhaitee == datetime.date(2025, 3, 10)
        assert request.proposed_date == datetime.date(2025, 3, 12)
        assert request.previous_proposals[0].proposed_by == "Infirmier1"

    def test_null_proposals_become_empty_list(self):
        request = parse_request(visit_payload(previousProposals=None))
        assert request.previous_proposals == []

    @pytest.mark.parametrize("payload", [
        {"status": "PENDING"},
        visit_payload(status="ARCHIVED"),
        visit_payload(dateSouhaitee="soon"),
        "not an object",
    ])
    def test_malformed_payload_rejected(self, payload):
        with pytest.raises(MalformedResponseError):
            parse_request(payload)

    def test_list_expected(self):
        with pytest.raises(MalformedResponseError):
            parse_request_list({"content": []})


class TestStateMachine:
    @pytest.mark.parametrize("src,dst", [
        ("PENDING", "PROPOSED"),
        ("PENDING", "CONFIRMED"),
        ("PENDING", "CANCELLED"),
        ("PROPOSED", "CONFIRMED"),
        ("PROPOSED", "REJECTED"),
        ("PROPOSED", "PROPOSED"),
    ])
    def test_allowed(self, src, dst):
        assert can_transition(VisitStatus(src), VisitStatus(dst))

    @pytest.mark.parametrize("src", ["CONFIRMED", "REJECTED", "CANCELLED"])
    def test_terminal_states(self, src):
        for dst in VisitStatus:
            assert not can_transition(VisitStatus(src), dst)

    def test_pending_cannot_be_rejected(self):
        assert not can_transition(VisitStatus.PENDING, VisitStatus.REJECTED)


class TestCanPropose:
    def test_latest_pending_proposal_by_current_user_blocks(self):
        request = parse_request(visit_payload(
            status="PROPOSED",
            proposals=[proposal_payload("jdupont", status="REJECTED"), proposal_payload("Infirmier1")],
        ))
        assert latest_proposal(request).proposed_by == "Infirmier1"
        assert can_propose(request, "infirmier1") is False
        assert can_propose(request, "jdupont") is True

    def test_comparison_is_case_insensitive(self):
        request = parse_request(visit_payload(status="PROPOSED", proposals=[proposal_payload("JDupont")]))
        assert can_propose(request, "jdupont") is False

    def test_answered_proposal_does_not_block(self):
        request = parse_request(visit_payload(
            status="PROPOSED", proposals=[proposal_payload("jdupont", status="REJECTED")]
        ))
        assert can_propose(request, "jdupont") is True

    def test_pending_request_without_history(self):
        assert can_propose(parse_request(visit_payload()), "nurse") is True

    @pytest.mark.parametrize("status", ["CONFIRMED", "REJECTED", "CANCELLED"])
    def test_terminal_requests_cannot_be_proposed(self, status):
        assert can_propose(parse_request(visit_payload(status=status)), "nurse") is False

    def test_allowed_actions(self):
        pending = parse_request(visit_payload())
        assert allowed_actions(pending, "nurse") == {"propose", "confirm", "cancel"}

        mine = parse_request(visit_payload(status="PROPOSED", proposals=[proposal_payload("nurse")]))
        assert allowed_actions(mine, "nurse") == {"confirm"}
        assert allowed_actions(mine, "jdupont") == {"propose", "accept", "reject", "confirm"}


class TestListHelpers:
    def setup_method(self):
        self.requests = parse_request_list([
            visit_payload(1, "PENDING", employeeName="Jean Dupont", motif="Douleurs dorsales"),
            visit_payload(2, "PROPOSED", employeeName="Amina Benali", motif="Reprise"),
            visit_payload(3, "CONFIRMED", employeeName="Paul Martin", motif="Visite annuelle"),
        ])

    def test_filter_by_status(self):
        assert [r.id for r in filter_requests(self.requests, "proposed")] == [2]
        assert len(filter_requests(self.requests, "ALL")) == 3

    def test_search_name_or_motif(self):
        assert [r.id for r in filter_requests(self.requests, search="DUPONT")] == [1]
        assert [r.id for r in filter_requests(self.requests, search="reprise")] == [2]
        assert filter_requests(self.requests, "CONFIRMED", search="dupont") == []

    def test_count_by_status(self):
        counts = count_by_status(self.requests)
        assert counts["ALL"] == 3
        assert counts["PENDING"] == counts["PROPOSED"] == counts["CONFIRMED"] == 1
        assert counts["CANCELLED"] == 0


class FakeBackend:
    """In-memory stand-in for the medical-visit REST endpoints."""

    def __init__(self, requests):
        self.requests = {r["id"]: r for r in requests}
        self.calls = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        parts = path.rstrip("/").split("/")
        if request.method == "GET" and path == "/api/v1/medical-visits":
            return httpx.Response(200, json=list(self.requests.values()))
        if request.method == "GET" and parts[-2] == "medical-visits":
            return httpx.Response(200, json=self.requests[int(parts[-1])])
        if request.method == "GET" and parts[-2] == "employee":
            return httpx.Response(200, json=list(self.requests.values()))
        if request.method == "GET" and parts[-1] == "active":
            return httpx.Response(200, json={"hasActiveRequests": False, "activeRequests": []})
        if request.method == "POST" and parts[-2] == "employee":
            body = json.loads(request.content)
            new_id = max(self.requests) + 1 if self.requests else 1
            self.requests[new_id] = visit_payload(new_id, **{k: v for k, v in body.items() if k != "urgent"})
            return httpx.Response(201, json=self.requests[new_id])
        if request.method == "PUT" and parts[-1] == "propose":
            body = json.loads(request.content)
            visit = self.requests[int(parts[-2])]
            visit["status"] = "PROPOSED"
            visit["previousProposals"].append(proposal_payload(body["proposedBy"], date=body["proposedDate"]))
            return httpx.Response(200, json=visit)
        if request.method == "PUT" and parts[-1] == "accept":
            visit = self.requests[int(parts[-2])]
            visit["status"] = "CONFIRMED"
            return httpx.Response(200, json=visit)
        return httpx.Response(404, json={"message": "unknown route"})


def service_for(backend: FakeBackend) -> MedicalVisitService:
    client = BackendClient("token", base_url="http://backend.test", transport=httpx.MockTransport(backend.handler))
    return MedicalVisitService(client)


class TestService:
    @pytest.mark.asyncio
    async def test_reads_are_cached_until_a_mutation(self):
        backend = FakeBackend([visit_payload(1)])
        service = service_for(backend)

        await service.get_all_requests()
        await service.get_all_requests()
        assert backend.calls.count(("GET", "/api/v1/medical-visits")) == 1

        await service.propose_slot(
            1, ProposeSlot(proposed_date=datetime.date(2025, 3, 12), proposed_time="10:00"), "nurse"
        )
        refreshed = await service.get_all_requests()

        assert backend.calls.count(("GET", "/api/v1/medical-visits")) == 2
        assert refreshed[0].status == VisitStatus.PROPOSED

    @pytest.mark.asyncio
    async def test_propose_returns_refetched_request(self):
        backend = FakeBackend([visit_payload(1)])
        service = service_for(backend)

        updated = await service.propose_slot(
            1, ProposeSlot(proposed_date=datetime.date(2025, 3, 12), proposed_time="10:00"), "nurse"
        )

        assert updated.status == VisitStatus.PROPOSED
        assert latest_proposal(updated).proposed_by == "nurse"
        assert backend.calls[-1] == ("GET", "/api/v1/medical-visits/1")

    @pytest.mark.asyncio
    async def test_same_user_cannot_propose_twice(self):
        backend = FakeBackend([visit_payload(1, "PROPOSED", proposals=[proposal_payload("nurse")])])
        service = service_for(backend)

        with pytest.raises(ProposalNotAllowedError):
            await service.propose_slot(
                1, ProposeSlot(proposed_date=datetime.date(2025, 3, 14), proposed_time="11:00"), "Nurse"
            )
        assert not any(method == "PUT" for method, _ in backend.calls)

    @pytest.mark.asyncio
    async def test_employee_accepts_proposal(self):
        backend = FakeBackend([visit_payload(1, "PROPOSED", proposals=[proposal_payload("nurse")])])
        updated = await service_for(backend).accept_proposal(1, "jdupont")
        assert updated.status == VisitStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_action_checked_against_current_backend_state(self):
        backend = FakeBackend([visit_payload(1)])
        service = service_for(backend)
        assert (await service.get_request(1)).status == VisitStatus.PENDING

        # A nurse proposes a slot from another session.
        backend.requests[1] = visit_payload(1, "PROPOSED", proposals=[proposal_payload("nurse")])

        updated = await service.accept_proposal(1, "jdupont")
        assert updated.status == VisitStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_accept_without_proposal_names_the_reason(self):
        backend = FakeBackend([visit_payload(1)])
        with pytest.raises(ProposalNotAllowedError, match="has no proposal to accept"):
            await service_for(backend).accept_proposal(1, "jdupont")
        assert not any(method == "PUT" for method, _ in backend.calls)

    @pytest.mark.asyncio
    async def test_cancel_on_confirmed_request_is_invalid(self):
        backend = FakeBackend([visit_payload(1, "CONFIRMED")])
        with pytest.raises(InvalidTransitionError):
            await service_for(backend).cancel_request(1, "jdupont")

    @pytest.mark.asyncio
    async def test_create_refetches_employee_requests(self):
        backend = FakeBackend([])
        service = service_for(backend)
        data = CreateMedicalVisitRequest(
            motif="Consultation", date_souhaitee=datetime.date(2025, 4, 1), heure_souhaitee="14:00"
        )

        requests = await service.create_request(6, data)

        assert [r.motif for r in requests] == ["Consultation"]
        assert backend.calls[-1] == ("GET", "/api/v1/medical-visits/employee/6")

    @pytest.mark.asyncio
    async def test_counts_sum_to_all(self):
        def handler(request):
            return httpx.Response(200, json={"PENDING": 2, "PROPOSED": 1, "CONFIRMED": 4})

        client = BackendClient("t", base_url="http://backend.test", transport=httpx.MockTransport(handler))
        counts = await MedicalVisitService(client).get_request_counts()
        assert counts["ALL"] == 7
        assert counts["REJECTED"] == 0
