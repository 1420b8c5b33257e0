"""SqlRepository statement shape and transaction boundaries, without a database."""
import asyncio
import uuid
from contextlib import asynccontextmanager

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.sql.dml import Delete, Insert

from db import repository as repository_module
from db.repository import SqlRepository


class _Result:
    def __init__(self, row):
        self._row = row

    def one(self):
        return self._row


class _RecordingSession:
    """Records executed statements and whether each ran inside ``begin()``."""

    def __init__(self, fail_on_insert: bool = False, row=None) -> None:
        self.fail_on_insert = fail_on_insert
        self.row = row
        self.events: list[str] = []
        self.statements: list[tuple[object, bool]] = []
        self._in_transaction = False

    @asynccontextmanager
    async def begin(self):
        self.events.append("begin")
        self._in_transaction = True
        try:
            yield self
        except Exception:
            self.events.append("rollback")
            raise
        else:
            self.events.append("commit")
        finally:
            self._in_transaction = False

    async def execute(self, stmt):
        self.statements.append((stmt, self._in_transaction))
        if isinstance(stmt, Insert) and self.fail_on_insert:
            raise RuntimeError("unique violation")
        return _Result(self.row)

    async def commit(self) -> None:
        self.events.append("commit")


def _use_session(monkeypatch, session: _RecordingSession) -> None:
    @asynccontextmanager
    async def _get_session():
        yield session

    monkeypatch.setattr(repository_module, "get_session", _get_session)


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _line_item(item_id: str) -> dict:
    return {
        "hubspot_line_item_id": item_id,
        "name": f"Item {item_id}",
        "description": None,
        "quantity": 1.0,
        "price": 100.0,
        "amount": 100.0,
        "product_id": None,
    }


def test_deal_upsert_returns_inserted_flag_from_xmax(monkeypatch) -> None:
    deal_id = uuid.uuid4()
    session = _RecordingSession(row=(deal_id, True))
    _use_session(monkeypatch, session)

    result = asyncio.run(
        SqlRepository().upsert_deal(
            {"hubspot_id": "1", "region_id": uuid.uuid4(), "name": "Deal 1"}
        )
    )

    assert result.kind == "created"
    assert result.deal_id == deal_id
    (stmt, _), = session.statements
    sql = _sql(stmt)
    assert "ON CONFLICT ON CONSTRAINT uq_deals_hubspot_region DO UPDATE" in sql
    assert "RETURNING" in sql
    assert "xmax = 0" in sql.split("RETURNING", 1)[1]


def test_deal_upsert_of_existing_row_reports_updated(monkeypatch) -> None:
    session = _RecordingSession(row=(uuid.uuid4(), False))
    _use_session(monkeypatch, session)

    result = asyncio.run(
        SqlRepository().upsert_deal(
            {"hubspot_id": "1", "region_id": uuid.uuid4(), "name": "Deal 1"}
        )
    )

    assert result.kind == "updated"


def test_line_item_delete_and_upsert_share_one_transaction(monkeypatch) -> None:
    session = _RecordingSession()
    _use_session(monkeypatch, session)

    asyncio.run(SqlRepository().reconcile_line_items(uuid.uuid4(), [_line_item("A"), _line_item("B")]))

    assert session.events == ["begin", "commit"]
    assert [isinstance(stmt, Delete) for stmt, _ in session.statements] == [True, False]
    assert all(in_tx for _, in_tx in session.statements)
    delete_sql = _sql(session.statements[0][0])
    assert "NOT IN" in delete_sql
    assert "ON CONFLICT ON CONSTRAINT uq_line_items_deal_hubspot" in _sql(session.statements[1][0])


def test_failed_line_item_upsert_rolls_back_the_delete(monkeypatch) -> None:
    session = _RecordingSession(fail_on_insert=True)
    _use_session(monkeypatch, session)

    with pytest.raises(RuntimeError, match="unique violation"):
        asyncio.run(SqlRepository().reconcile_line_items(uuid.uuid4(), [_line_item("A")]))

    assert session.events == ["begin", "rollback"]
    assert isinstance(session.statements[0][0], Delete)
    assert all(in_tx for _, in_tx in session.statements)


def test_empty_line_item_set_deletes_everything_for_the_deal(monkeypatch) -> None:
    session = _RecordingSession()
    _use_session(monkeypatch, session)

    asyncio.run(SqlRepository().reconcile_line_items(uuid.uuid4(), []))

    (stmt, in_tx), = session.statements
    assert isinstance(stmt, Delete)
    assert in_tx is True
    assert "NOT IN" not in _sql(stmt)
    assert session.events == ["begin", "commit"]
