"""
Shared fixtures for the OSHApp BFF tests.

Environment variables are set before any oshapp_bff import so that the
module-level Settings() picks them up. No test talks to a real Keycloak or
backend: HTTP is served by httpx.MockTransport handlers.
"""

import os
import time

import pytest
from jose import jwt

os.environ.setdefault("API_URL", "http://backend.test")
os.environ.setdefault("KEYCLOAK_BASE_URL", "http://keycloak.test")
os.environ.setdefault("BFF_REDIRECT_URI", "http://testserver/auth/callback")

from oshapp_bff.session_data import InMemorySessionStorage, TokenPair, TokenStore  # noqa: E402


def make_token(username="jdupont", roles=None, expires_in=300, **claims):
    payload = {
        "sub": f"sub-{username}",
        "preferred_username": username,
        "email": f"{username}@example.com",
        "given_name": "Jean",
        "family_name": "Dupont",
        "email_verified": True,
        "exp": int(time.time()) + expires_in,
    }
    if roles is not None:
        payload["realm_access"] = {"roles": list(roles)}
    payload.update(claims)
    return jwt.encode(payload, "test-secret", algorithm="HS256")


def make_pair(username="jdupont", roles=None, expires_in=300) -> TokenPair:
    return TokenPair(
        access_token=make_token(username, roles, expires_in),
        refresh_token=f"refresh-{username}",
        expires_in=expires_in,
    )


@pytest.fixture
def storage():
    return InMemorySessionStorage()


@pytest.fixture
def store(storage):
    return TokenStore(storage)


def visit_payload(request_id=1, status="PENDING", proposals=None, **overrides):
    payload = {
        "id": request_id,
        "status": status,
        "employeeId": 6,
        "employeeName": "Jean Dupont",
        "employeeDepartment": "Production",
        "motif": "Douleurs dorsales",
        "dateSouhaitee": "2025-03-10",
        "heureSouhaitee": "09:30",
        "urgent": False,
        "previousProposals": proposals or [],
    }
    payload.update(overrides)
    return payload


def proposal_payload(proposed_by, status="PENDING", date="2025-03-12", time_="10:00"):
    return {
        "proposedDate": date,
        "proposedTime": time_,
        "proposedBy": proposed_by,
        "status": status,
        "proposedAt": f"{date}T08:00:00",
    }
