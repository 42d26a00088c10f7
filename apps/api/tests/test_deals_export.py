from __future__ import annotations

import csv
import io
import uuid
from collections.abc import Generator
from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.crm.import_export import (
    UTF8_BOM,
    convert_to_csv,
    format_date_for_export,
    format_datetime_for_export,
    get_nested_value,
)
from app.crm.models import CRMDeal, CRMPipeline
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
def reset_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def company_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def client(db_session: Session, company_id: uuid.UUID) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id="exporter", company_id=company_id, permissions={"crm.export.execute"})

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _rows(text: str) -> list[list[str]]:
    assert text.startswith(UTF8_BOM)
    return list(csv.reader(io.StringIO(text.removeprefix(UTF8_BOM))))


def test_convert_to_csv_quotes_only_when_needed() -> None:
    rows = [
        {"title": 'Acme, "Big" deal', "pipeline": {"name": "Sales"}, "amount": Decimal("10.50")},
        {"title": "Line\nbreak", "pipeline": None, "amount": None},
    ]

    text = convert_to_csv(rows, ["Title", "Pipeline", "Amount"], ["title", "pipeline.name", "amount"])

    assert text == UTF8_BOM + 'Title,Pipeline,Amount\n"Acme, ""Big"" deal",Sales,10.50\n"Line\nbreak",,'


def test_convert_to_csv_with_no_rows_is_header_only() -> None:
    assert convert_to_csv([], ["A", "B"], ["a", "b"]) == UTF8_BOM + "A,B"


def test_get_nested_value_reads_dicts_and_attributes() -> None:
    pipeline = CRMPipeline(name="Main")
    deal = CRMDeal(title="X", pipeline=pipeline)

    assert get_nested_value(deal, "pipeline.name") == "Main"
    assert get_nested_value({"a": {"b": 1}}, "a.b") == 1
    assert get_nested_value({"a": None}, "a.b") is None
    assert get_nested_value({}, "missing") is None


def test_export_date_formatting() -> None:
    assert format_date_for_export(date(2026, 3, 5)) == "05.03.2026"
    assert format_date_for_export("2026-03-05T10:30:00") == "05.03.2026"
    assert format_date_for_export(None) == ""
    assert format_date_for_export("") == ""
    assert format_date_for_export("someday") == ""
    assert format_datetime_for_export(datetime(2026, 3, 5, 9, 7)) == "05.03.2026, 09:07"
    assert format_datetime_for_export(date(2026, 3, 5)) == "05.03.2026"


def test_export_deals_csv_endpoint(client: TestClient, db_session: Session, company_id: uuid.UUID) -> None:
    pipeline = CRMPipeline(company_id=company_id, name="Продажи", stages='["Новый","Закрыто успешно"]')
    db_session.add(pipeline)
    db_session.flush()
    db_session.add_all(
        [
            CRMDeal(
                company_id=company_id,
                pipeline_id=pipeline.id,
                title="Поставка, этап 1",
                stage="Закрыто успешно",
                amount=Decimal("1500.00"),
                probability=100,
                owner_user_id="exporter",
                expected_close_date=date(2026, 11, 1),
                created_at=datetime(2024, 10, 1, 14, 45),
            ),
            CRMDeal(company_id=company_id, title="Без воронки", stage="", amount=Decimal("0")),
            CRMDeal(company_id=uuid.uuid4(), title="Чужая сделка", stage="Новый", amount=Decimal("5")),
        ]
    )
    db_session.commit()

    response = client.get("/api/crm/export/deals")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.headers["content-disposition"] == 'attachment; filename="deals.csv"'
    rows = _rows(response.content.decode("utf-8"))
    assert rows[0] == [
        "Title",
        "Stage",
        "Outcome",
        "Amount",
        "Probability",
        "Pipeline",
        "Owner",
        "Expected close",
        "Created",
    ]
    assert len(rows) == 3
    assert rows[1] == [
        "Поставка, этап 1",
        "Закрыто успешно",
        "closed_won",
        "1500.00",
        "100",
        "Продажи",
        "exporter",
        "01.11.2026",
        "01.10.2024, 14:45",
    ]
    assert rows[2][:3] == ["Без воронки", "", "open"]
    assert rows[2][5] == ""


def test_export_respects_row_limit(
    client: TestClient,
    db_session: Session,
    company_id: uuid.UUID,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("EXPORT_MAX_ROWS", "2")
    get_settings.cache_clear()
    db_session.add_all([CRMDeal(company_id=company_id, title=f"Deal {index}", amount=Decimal("1")) for index in range(5)])
    db_session.commit()

    response = client.get("/api/crm/export/deals")

    assert response.status_code == 200
    assert len(_rows(response.content.decode("utf-8"))) == 3


def test_export_requires_permission(client: TestClient, company_id: uuid.UUID) -> None:
    app.dependency_overrides[get_current_user] = lambda: ActorUser(user_id="reader", company_id=company_id)

    response = client.get("/api/crm/export/deals")

    assert response.status_code == 403
    assert response.json()["code"] == "crm_export_deals_failed"
