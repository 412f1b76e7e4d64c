from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow import audit, events
from dealflow.core.config import get_settings
from dealflow.core.database import Base, get_db
from dealflow.main import app
from dealflow.pipeline.access import Identity, Role
from dealflow.pipeline.api import get_identity


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "admin": Identity(user_id="admin-1", role=Role.ADMIN),
        "member": Identity(user_id="member-1", role=Role.MEMBER),
    }
    state = {"current": "admin"}

    def override_get_identity(request: Request) -> Identity | None:
        actor = actors.get(state["current"])
        if actor is None:
            return None
        return Identity(
            user_id=actor.user_id,
            role=actor.role,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_identity] = override_get_identity
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _names(response_json: list[dict]) -> list[tuple[str, int]]:
    return [(item["name"], item["order_index"]) for item in response_json]


def test_create_and_list_stages_in_order(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client

    for name in ("New", "Contacted", "Closed"):
        assert test_client.post("/pipeline-stages", json={"name": name}).status_code == 201

    set_actor("anonymous")
    listed = test_client.get("/pipeline-stages")
    assert listed.status_code == 200
    assert _names(listed.json()) == [("New", 0), ("Contacted", 1), ("Closed", 2)]


def test_create_stage_at_taken_index_shifts_the_rest(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    test_client.post("/pipeline-stages", json={"name": "New"})
    test_client.post("/pipeline-stages", json={"name": "Closed"})

    inserted = test_client.post("/pipeline-stages", json={"name": "Qualified", "order_index": 1})
    assert inserted.status_code == 201
    assert inserted.json()["order_index"] == 1

    listed = test_client.get("/pipeline-stages").json()
    assert _names(listed) == [("New", 0), ("Qualified", 1), ("Closed", 2)]
    indexes = [item["order_index"] for item in listed]
    assert len(indexes) == len(set(indexes))


def test_duplicate_active_name_rejected_case_insensitively(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    first = test_client.post("/pipeline-stages", json={"name": "Proposal"})
    assert first.status_code == 201

    duplicate = test_client.post("/pipeline-stages", json={"name": "  proposal "})
    assert duplicate.status_code == 400
    assert duplicate.json()["code"] == "duplicate_name"

    assert test_client.delete(f"/pipeline-stages/{first.json()['id']}").status_code == 200
    assert test_client.post("/pipeline-stages", json={"name": "Proposal"}).status_code == 201


def test_stage_mutations_require_admin(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    stage = test_client.post("/pipeline-stages", json={"name": "New"}).json()

    set_actor("member")
    assert test_client.post("/pipeline-stages", json={"name": "Other"}).status_code == 403
    assert test_client.put(f"/pipeline-stages/{stage['id']}", json={"name": "Renamed"}).status_code == 403
    assert test_client.delete(f"/pipeline-stages/{stage['id']}").status_code == 403
    assert test_client.put("/pipeline-stages/reorder", json={"stage_ids": [stage["id"]]}).status_code == 403
    assert test_client.get("/pipeline-stages", params={"include_inactive": "true"}).status_code == 403

    set_actor("anonymous")
    response = test_client.post("/pipeline-stages", json={"name": "Other"})
    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"


def test_reorder_stages_assigns_positions(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    ids = [test_client.post("/pipeline-stages", json={"name": name}).json()["id"] for name in ("A", "B", "C")]

    response = test_client.put("/pipeline-stages/reorder", json={"stage_ids": [ids[2], ids[0], ids[1]]})
    assert response.status_code == 200
    assert _names(response.json()) == [("C", 0), ("A", 1), ("B", 2)]

    reorder_events = [item for item in events.published_events if item["event_type"] == "pipeline.stage.reordered"]
    assert reorder_events[-1]["payload"]["stage_ids"] == [ids[2], ids[0], ids[1]]


def test_reorder_with_bad_permutation_changes_nothing(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    ids = [test_client.post("/pipeline-stages", json={"name": name}).json()["id"] for name in ("A", "B", "C")]
    stranger = str(uuid.uuid4())

    missing = test_client.put("/pipeline-stages/reorder", json={"stage_ids": [ids[1], ids[0]]})
    assert missing.status_code == 400
    assert missing.json()["code"] == "invalid_permutation"
    assert missing.json()["details"]["missing"] == [ids[2]]

    mixed = test_client.put(
        "/pipeline-stages/reorder",
        json={"stage_ids": [ids[0], ids[0], ids[1], ids[2], stranger]},
    )
    assert mixed.status_code == 400
    assert mixed.json()["details"] == {"missing": [], "duplicate": [ids[0]], "unknown": [stranger]}

    listed = test_client.get("/pipeline-stages").json()
    assert _names(listed) == [("A", 0), ("B", 1), ("C", 2)]


def test_update_stage_rename_and_move(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    ids = [test_client.post("/pipeline-stages", json={"name": name}).json()["id"] for name in ("A", "B", "C")]

    renamed = test_client.put(f"/pipeline-stages/{ids[1]}", json={"name": "Bee"})
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Bee"

    clash = test_client.put(f"/pipeline-stages/{ids[1]}", json={"name": "a"})
    assert clash.status_code == 400
    assert clash.json()["code"] == "duplicate_name"

    moved = test_client.put(f"/pipeline-stages/{ids[2]}", json={"order_index": 0})
    assert moved.status_code == 200
    listed = test_client.get("/pipeline-stages").json()
    assert [item["id"] for item in listed] == [ids[2], ids[0], ids[1]]
    indexes = [item["order_index"] for item in listed]
    assert len(indexes) == len(set(indexes))


def test_update_stage_row_version_conflict(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    stage = test_client.post("/pipeline-stages", json={"name": "Draft"}).json()

    first = test_client.put(f"/pipeline-stages/{stage['id']}", json={"name": "Drafted", "row_version": stage["row_version"]})
    assert first.status_code == 200

    stale = test_client.put(f"/pipeline-stages/{stage['id']}", json={"name": "Final", "row_version": stage["row_version"]})
    assert stale.status_code == 409
    assert test_client.get(f"/pipeline-stages/{stage['id']}").json()["name"] == "Drafted"


def test_deactivate_is_idempotent_and_hidden_from_default_list(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    keep = test_client.post("/pipeline-stages", json={"name": "Keep"}).json()
    drop = test_client.post("/pipeline-stages", json={"name": "Drop"}).json()

    assert test_client.delete(f"/pipeline-stages/{drop['id']}").json() == {"success": True}
    assert test_client.delete(f"/pipeline-stages/{drop['id']}").json() == {"success": True}
    deactivations = [item for item in events.published_events if item["event_type"] == "pipeline.stage.deactivated"]
    assert len(deactivations) == 1

    active = test_client.get("/pipeline-stages").json()
    assert [item["id"] for item in active] == [keep["id"]]

    everything = test_client.get("/pipeline-stages", params={"include_inactive": "true"}).json()
    assert {item["id"] for item in everything} == {keep["id"], drop["id"]}

    fetched = test_client.get(f"/pipeline-stages/{drop['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["is_active"] is False


def test_missing_stage_returns_404_envelope(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    missing_id = uuid.uuid4()

    response = test_client.get(f"/pipeline-stages/{missing_id}", headers={"X-Correlation-Id": "stage-404"})
    assert response.status_code == 404
    assert response.json() == {
        "code": "not_found",
        "message": "stage not found",
        "details": None,
        "correlation_id": "stage-404",
    }
    assert test_client.put(f"/pipeline-stages/{missing_id}", json={"name": "X"}).status_code == 404
    assert test_client.delete(f"/pipeline-stages/{missing_id}").status_code == 404


def test_invalid_stage_payloads_return_422(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    assert test_client.post("/pipeline-stages", json={"name": "   "}).status_code == 422
    assert test_client.post("/pipeline-stages", json={"name": "Neg", "order_index": -1}).status_code == 422

    stage = test_client.post("/pipeline-stages", json={"name": "Valid"}).json()
    assert test_client.put(f"/pipeline-stages/{stage['id']}", json={"name": None}).status_code == 422


def test_stage_mutations_are_audited(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    stage = test_client.post(
        "/pipeline-stages",
        json={"name": "Audited"},
        headers={"X-Correlation-Id": "stage-audit-1"},
    ).json()
    test_client.put(f"/pipeline-stages/{stage['id']}", json={"name": "Audited Twice"})

    entries = [entry for entry in audit.audit_entries if entry["entity_id"] == stage["id"]]
    assert [entry["action"] for entry in entries] == ["create", "update"]
    assert entries[0]["correlation_id"] == "stage-audit-1"
    assert entries[1]["before"]["name"] == "Audited"
    assert entries[1]["after"]["name"] == "Audited Twice"


def test_created_stage_matches_later_reads(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = test_client.post("/pipeline-stages", json={"name": "Stable"}).json()

    fetched = test_client.get(f"/pipeline-stages/{created['id']}").json()
    listed = test_client.get("/pipeline-stages").json()

    assert fetched == created
    assert listed == [created]
    assert created["created_at"].endswith("Z")
