from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.crm.models import CRMPipeline
from app.crm.service import ActorUser
from app.main import app


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
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    get_settings.cache_clear()


@pytest.fixture()
def companies() -> dict[str, uuid.UUID]:
    return {"c1": uuid.uuid4(), "c2": uuid.uuid4()}


@pytest.fixture()
def client(
    db_session: Session,
    companies: dict[str, uuid.UUID],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "manager": ActorUser(
            user_id="manager-1",
            company_id=companies["c1"],
            permissions={"crm.pipelines.manage", "crm.pipelines.read", "crm.deals.read"},
            correlation_id="corr-pipelines",
        ),
        "reader": ActorUser(
            user_id="reader-1",
            company_id=companies["c1"],
            permissions={"crm.pipelines.read"},
            correlation_id="corr-pipelines",
        ),
        "other_company": ActorUser(
            user_id="manager-2",
            company_id=companies["c2"],
            permissions={"crm.pipelines.manage", "crm.pipelines.read"},
            correlation_id="corr-pipelines",
        ),
        "no_company": ActorUser(
            user_id="drifter",
            company_id=None,
            permissions={"crm.pipelines.manage", "crm.pipelines.read"},
        ),
        "no_access": ActorUser(user_id="guest", company_id=companies["c1"], permissions=set()),
    }
    state = {"current": "manager"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def test_create_pipeline_from_stage_names(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post(
        "/api/crm/pipelines",
        json={"name": "  Продажи  ", "stages": ["Новый", "Переговоры", "Закрыто успешно"]},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["name"] == "Продажи"
    assert json.loads(body["stages"]) == ["Новый", "Переговоры", "Закрыто успешно"]
    assert [(stage["name"], stage["probability"]) for stage in body["parsed_stages"]] == [
        ("Новый", 34),
        ("Переговоры", 67),
        ("Закрыто успешно", 100),
    ]
    assert body["row_version"] == 1

    pipeline_audits = [entry for entry in audit.audit_entries if entry["entity_type"] == "crm.pipeline"]
    assert pipeline_audits
    assert pipeline_audits[-1]["action"] == "create"
    assert pipeline_audits[-1]["correlation_id"] == "corr-pipelines"


def test_create_pipeline_keeps_raw_stage_text(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    raw = '[{"name":"Lead","color":"#999","probability":10},{"name":"Won","color":"#0a0"}]'

    response = test_client.post("/api/crm/pipelines", json={"name": "Objects", "stages": raw})

    assert response.status_code == 201
    body = response.json()
    assert body["stages"] == raw
    assert body["parsed_stages"] == [
        {"name": "Lead", "color": "#999", "probability": 10},
        {"name": "Won", "color": "#0a0", "probability": 100},
    ]


def test_corrupt_stage_text_reads_as_empty(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    companies: dict[str, uuid.UUID],
) -> None:
    test_client, _ = client
    pipeline = CRMPipeline(company_id=companies["c1"], name="Broken", stages="[not json")
    db_session.add(pipeline)
    db_session.commit()

    response = test_client.get(f"/api/crm/pipelines/{pipeline.id}")

    assert response.status_code == 200
    assert response.json()["stages"] == "[not json"
    assert response.json()["parsed_stages"] == []


def test_unreadable_stored_stages_do_not_break_listing(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    companies: dict[str, uuid.UUID],
) -> None:
    test_client, _ = client
    db_session.add_all(
        [
            CRMPipeline(company_id=companies["c1"], name="Huge", stages='[{"name":"A","probability":1e400}]'),
            CRMPipeline(company_id=companies["c1"], name="Nested", stages="[" * 100000),
        ]
    )
    db_session.commit()

    created = test_client.post(
        "/api/crm/pipelines",
        json={"name": "Overflow", "stages": '[{"name":"X","probability":-1e400},{"name":"Y"}]'},
    )
    assert created.status_code == 201
    assert [(stage["name"], stage["probability"]) for stage in created.json()["parsed_stages"]] == [
        ("X", 50),
        ("Y", 100),
    ]

    response = test_client.get("/api/crm/pipelines")

    assert response.status_code == 200
    parsed = {item["name"]: item["parsed_stages"] for item in response.json()}
    assert parsed["Huge"] == [{"name": "A", "color": None, "probability": 100}]
    assert parsed["Nested"] == []
    assert len(parsed) == 3


def test_blank_stage_text_is_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post("/api/crm/pipelines", json={"name": "Empty", "stages": "   "})

    assert response.status_code == 422


def test_default_pipeline_is_unique_and_listed_first(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client

    first = test_client.post("/api/crm/pipelines", json={"name": "First", "stages": ["A"], "is_default": True})
    assert first.status_code == 201
    second = test_client.post("/api/crm/pipelines", json={"name": "Second", "stages": ["B"]})
    assert second.status_code == 201
    third = test_client.post("/api/crm/pipelines", json={"name": "Third", "stages": ["C"], "is_default": True})
    assert third.status_code == 201

    set_actor("reader")
    listed = test_client.get("/api/crm/pipelines")

    assert listed.status_code == 200
    rows = listed.json()
    assert [row["name"] for row in rows] == ["Third", "First", "Second"]
    assert [row["is_default"] for row in rows] == [True, False, False]
    assert rows[1]["row_version"] == 2


def test_pipelines_are_scoped_to_company(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client

    created = test_client.post("/api/crm/pipelines", json={"name": "Mine", "stages": ["A"]})
    assert created.status_code == 201

    set_actor("other_company")
    blocked = test_client.get(f"/api/crm/pipelines/{created.json()['id']}")
    assert blocked.status_code == 404
    body = blocked.json()
    assert body["code"] == "crm_pipeline_get_failed"
    assert body["message"] == "pipeline not found"
    assert test_client.get("/api/crm/pipelines").json() == []


def test_pipeline_permissions_use_error_envelope(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client

    set_actor("reader")
    forbidden = test_client.post("/api/crm/pipelines", json={"name": "Nope", "stages": ["A"]})
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "crm_pipeline_create_failed"
    assert forbidden.json()["message"] == "Missing permission: crm.pipelines.manage"

    set_actor("no_company")
    no_company = test_client.get("/api/crm/pipelines")
    assert no_company.status_code == 403
    assert no_company.json()["message"] == "company context required"


def test_parse_stages_endpoint(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("reader")

    parsed = test_client.post("/api/crm/pipelines/stages/parse", json={"stages": '["A","B","C"]'})
    assert parsed.status_code == 200
    assert parsed.json() == [
        {"name": "A", "color": None, "probability": 34},
        {"name": "B", "color": None, "probability": 67},
        {"name": "C", "color": None, "probability": 100},
    ]

    broken = test_client.post("/api/crm/pipelines/stages/parse", json={"stages": "not json"})
    assert broken.status_code == 200
    assert broken.json() == []

    missing = test_client.post("/api/crm/pipelines/stages/parse", json={})
    assert missing.status_code == 200
    assert missing.json() == []


def test_parse_stages_uses_configured_name_template(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    monkeypatch.setenv("DEFAULT_STAGE_NAME_TEMPLATE", "Этап {number}")
    get_settings.cache_clear()

    parsed = test_client.post("/api/crm/pipelines/stages/parse", json={"stages": '[{"color":"red"},{"name":"Done"}]'})

    assert parsed.status_code == 200
    assert [stage["name"] for stage in parsed.json()] == ["Этап 1", "Done"]


def test_classify_stage_endpoint(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client

    won = test_client.post("/api/crm/stages/classify", json={"stage": "  Закрыто и реализованное "})
    assert won.status_code == 200
    assert won.json() == {
        "stage": "  Закрыто и реализованное ",
        "normalized": "закрыто и реализованное",
        "category": "closed_won",
        "is_closed": True,
        "is_closed_won": True,
        "is_closed_lost": False,
    }

    empty = test_client.post("/api/crm/stages/classify", json={"stage": None})
    assert empty.status_code == 200
    assert empty.json()["category"] == "open"
    assert empty.json()["is_closed"] is False

    set_actor("no_access")
    forbidden = test_client.post("/api/crm/stages/classify", json={"stage": "closed_lost"})
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "crm_stage_classify_failed"
