from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from dealflow.core.config import get_settings
from dealflow.main import app


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    with TestClient(app) as test_client:
        yield test_client


def _token(secret: str = "test-secret", **claims: object) -> str:
    return jwt.encode(claims, secret, algorithm="HS256")


def test_me_maps_admin_role_names_to_admin(client: TestClient) -> None:
    response = client.get("/me", headers={"Authorization": f"Bearer {_token(sub='alice', roles=['system.admin'])}"})
    assert response.status_code == 200
    assert response.json() == {"user_id": "alice", "role": "admin"}


def test_me_defaults_to_member(client: TestClient) -> None:
    response = client.get("/me", headers={"Authorization": f"Bearer {_token(sub='bob', roles=['sales'])}"})
    assert response.status_code == 200
    assert response.json() == {"user_id": "bob", "role": "member"}


def test_single_role_claim_is_accepted(client: TestClient) -> None:
    response = client.get("/me", headers={"Authorization": f"Bearer {_token(sub='carol', roles='admin')}"})
    assert response.json()["role"] == "admin"


@pytest.mark.parametrize(
    "headers",
    [
        {},
        {"Authorization": "Basic Zm9vOmJhcg=="},
        {"Authorization": f"Bearer {_token(secret='wrong-secret', sub='mallory')}"},
        {"Authorization": f"Bearer {_token(roles=['admin'])}"},
    ],
)
def test_missing_or_invalid_token_is_unauthenticated(client: TestClient, headers: dict[str, str]) -> None:
    response = client.get("/me", headers=headers)
    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"


def test_stage_mutation_without_token_is_rejected(client: TestClient) -> None:
    response = client.post("/pipeline-stages", json={"name": "Anonymous"})
    assert response.status_code == 401


def test_health_is_public(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["service"] == "Dealflow API"
