"""Shared test doubles and helpers."""

import re
import time
import uuid
from urllib.parse import parse_qs

import httpx
from jose import jwt


USER_ID = "11111111-1111-1111-1111-111111111111"
MEMBER_ID = "22222222-2222-2222-2222-222222222222"
OUTSIDER_ID = "33333333-3333-3333-3333-333333333333"

SELF_EMPLOYMENT = {
    "businessId": "XAIS12345678901",
    "typeOfBusiness": "self-employment",
    "tradingName": "Jones Plumbing",
    "nino": "NE101272A",
    "utr": "1234567890",
}
UK_PROPERTY = {
    "businessId": "XPIS12345678902",
    "typeOfBusiness": "uk-property",
}


class FakeHMRC:
    """In-memory stand-in for the HMRC token endpoint and REST API."""

    def __init__(self):
        self.businesses = [SELF_EMPLOYMENT]
        self.token_error = None
        self.list_error_status = None
        self.details_error_status = None
        self.expires_in = 14400
        self.requests = []
        self.token_grants = []
        self._issued = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth/token":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_grants.append(form)
            if self.token_error:
                return httpx.Response(400, json={
                    "error": self.token_error,
                    "error_description": "The authorization code is invalid or has expired",
                })
            self._issued += 1
            return httpx.Response(200, json={
                "access_token": f"access-{self._issued}",
                "refresh_token": f"refresh-{self._issued}",
                "expires_in": self.expires_in,
                "token_type": "bearer",
                "scope": "read:self-assessment write:self-assessment",
            })

        if re.fullmatch(r"/individuals/business/details/[^/]+/list", path):
            if self.list_error_status:
                return httpx.Response(self.list_error_status, json={
                    "code": "CLIENT_OR_AGENT_NOT_AUTHORISED",
                    "message": "The client and/or agent is not authorised",
                })
            return httpx.Response(200, json={"listOfBusinesses": self.businesses})

        match = re.fullmatch(r"/individuals/business/details/[^/]+/([^/]+)", path)
        if match:
            if self.details_error_status:
                return httpx.Response(self.details_error_status, json={"code": "SERVER_ERROR", "message": "Down"})
            return httpx.Response(200, json={
                "businessId": match.group(1),
                "accountingPeriods": [{"start": "2025-04-06", "end": "2026-04-05"}],
            })

        if path.startswith("/obligations/details/"):
            return httpx.Response(200, json={
                "obligations": [{"periodKey": "Q1", "status": "open", "due": "2026-08-05"}],
            })

        return httpx.Response(404, json={"code": "MATCHING_RESOURCE_NOT_FOUND", "message": "Not found"})

    def requests_to(self, fragment: str):
        return [r for r in self.requests if fragment in r.url.path]


def make_token(user_id: str, settings, **overrides) -> str:
    claims = {
        "sub": user_id,
        "aud": settings.auth_jwt_audience,
        "email": f"{user_id[:8]}@example.com",
        "exp": int(time.time()) + 3600,
    }
    claims.update(overrides)
    return jwt.encode(claims, settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)


async def connect_entity(api, headers, entity_id, code="auth-code-1"):
    """Run initiate + callback and return (state, callback response json)."""
    response = await api.post("/api/hmrc/auth/initiate", json={"entity_id": entity_id}, headers=headers)
    assert response.status_code == 200, response.text
    state = response.json()["state"]

    response = await api.post("/api/hmrc/auth/callback", json={"code": code, "state": state}, headers=headers)
    assert response.status_code == 200, response.text
    return state, response.json()


def new_id() -> str:
    return str(uuid.uuid4())
