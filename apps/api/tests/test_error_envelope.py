from __future__ import annotations

import logging
from collections.abc import Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from dealflow.main import app
from dealflow.pipeline.access import Identity, Role
from dealflow.pipeline.api import get_identity, get_store
from dealflow.pipeline.store import SqlRecordStore


class _BrokenSession:
    def scalars(self, *args: Any, **kwargs: Any) -> Any:
        raise OperationalError("SELECT", {}, Exception("password authentication failed for user dealflow"))

    def get(self, *args: Any, **kwargs: Any) -> Any:
        raise OperationalError("SELECT", {}, Exception("password authentication failed for user dealflow"))

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass


@pytest.fixture()
def client() -> Generator[TestClient, None, None]:
    def override_get_store() -> SqlRecordStore:
        return SqlRecordStore(_BrokenSession())  # type: ignore[arg-type]

    def override_get_identity() -> Identity:
        return Identity(user_id="admin-1", role=Role.ADMIN)

    app.dependency_overrides[get_store] = override_get_store
    app.dependency_overrides[get_identity] = override_get_identity
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_store_failure_returns_generic_500_envelope(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/pipeline-stages", headers={"X-Correlation-Id": "store-down-1"})

    assert response.status_code == 500
    assert response.json() == {
        "code": "store_failure",
        "message": "internal error",
        "details": None,
        "correlation_id": "store-down-1",
    }
    assert "password" not in response.text

    records = [record for record in caplog.records if record.getMessage() == "pipeline.store_failure"]
    assert records
    assert getattr(records[0], "operation", None) == "list_active_stages"
    assert getattr(records[0], "correlation_id", None) == "store-down-1"
    assert records[0].exc_info is not None


def test_store_failure_on_deal_lookup(client: TestClient) -> None:
    response = client.get("/deals/5b3f9c1e-8f6a-4a51-9d59-3a1c2f0e7b11")
    assert response.status_code == 500
    assert response.json()["code"] == "store_failure"
