"""SqlExposureStore tests with a fake session factory and patched CRUD."""

import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from database import crud
from engine.chain import PrivacyLevel, TestStatus as Status
from engine.errors import ReportValidationError, TransientStoreError
from engine.memory_store import InMemoryExposureStore
from engine.propagation import ChainPropagationEngine
from engine.records import NotificationType
from engine.store import SqlExposureStore, create_exposure_store


class FakeTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    def __init__(self):
        self.transactions = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def begin(self):
        self.transactions += 1
        return FakeTransaction()


class FakeSessionFactory:
    def __init__(self):
        self.sessions = []

    def __call__(self):
        session = FakeSession()
        self.sessions.append(session)
        return session


@pytest.fixture
def factory():
    return FakeSessionFactory()


@pytest.fixture
def sql_store(factory):
    return SqlExposureStore(factory)


def user_row(**overrides):
    values = dict(
        uid="u1",
        graph_id="g" * 64,
        notification_id="n" * 64,
        display_name="Bee",
        push_token="token-1",
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestRowMapping:

    @pytest.mark.asyncio
    async def test_user_lookup_maps_row(self, sql_store, factory, monkeypatch):
        async def fake_get(db, uid):
            assert isinstance(db, FakeSession)
            return user_row(uid=uid)

        monkeypatch.setattr(crud, "get_user_by_uid", fake_get)

        entry = await sql_store.get_user_by_uid("u1")

        assert entry.uid == "u1"
        assert entry.graph_id == "g" * 64
        assert entry.push_token == "token-1"
        assert factory.sessions[0].transactions == 1

    @pytest.mark.asyncio
    async def test_missing_user(self, sql_store, monkeypatch):
        async def fake_get(db, uid):
            return None

        monkeypatch.setattr(crud, "get_user_by_uid", fake_get)

        assert await sql_store.get_user_by_uid("u1") is None

    @pytest.mark.asyncio
    async def test_batched_users_keyed_by_notification_id(self, sql_store, monkeypatch):
        async def fake_get(db, ids):
            return [user_row(notification_id=value) for value in ids]

        monkeypatch.setattr(crud, "get_users_by_notification_ids", fake_get)

        entries = await sql_store.get_users_by_notification_ids(["a" * 64, "b" * 64])

        assert set(entries) == {"a" * 64, "b" * 64}

    @pytest.mark.asyncio
    async def test_non_uuid_notification_id_short_circuits(self, sql_store, factory):
        assert await sql_store.get_notification("not-a-uuid") is None
        assert factory.sessions == []


class TestTransientErrors:

    @pytest.mark.asyncio
    async def test_operational_error_is_transient(self, sql_store, monkeypatch):
        async def broken(db, uid):
            raise OperationalError("SELECT", {}, Exception("server closed the connection"))

        monkeypatch.setattr(crud, "get_user_by_uid", broken)

        with pytest.raises(TransientStoreError):
            await sql_store.get_user_by_uid("u1")

    @pytest.mark.asyncio
    async def test_invalidated_connection_is_transient(self, sql_store, monkeypatch):
        async def broken(db, uid):
            raise DBAPIError("SELECT", {}, Exception("reset"), connection_invalidated=True)

        monkeypatch.setattr(crud, "get_user_by_uid", broken)

        with pytest.raises(TransientStoreError):
            await sql_store.get_user_by_uid("u1")

    @pytest.mark.asyncio
    async def test_integrity_error_is_not_transient(self, sql_store, monkeypatch):
        async def broken(db, **kwargs):
            raise IntegrityError("INSERT", {}, Exception("duplicate key"))

        monkeypatch.setattr(crud, "upsert_user", broken)

        with pytest.raises(IntegrityError):
            await sql_store.upsert_user(SimpleNamespace(
                uid="u1",
                graph_id="g" * 64,
                notification_id="n" * 64,
                display_name="Bee",
                push_token=None,
            ))

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, sql_store, monkeypatch):
        async def broken(db, key, limit, window_ms, now_ms):
            raise ConnectionError("refused")

        monkeypatch.setattr(crud, "hit_rate_limit", broken)

        with pytest.raises(TransientStoreError):
            await sql_store.hit_rate_limit("k", 5, 1000, 0)


class TestFactory:

    def test_in_memory(self):
        assert isinstance(create_exposure_store(use_postgres=False), InMemoryExposureStore)

    def test_postgres_with_factory(self, factory):
        store = create_exposure_store(use_postgres=True, session_factory=factory)
        assert isinstance(store, SqlExposureStore)


def notification_row(notification_id, **overrides):
    values = dict(
        id=uuid.UUID(notification_id),
        recipient_id="r" * 64,
        report_id=uuid.UUID("00000000-0000-4000-8000-000000000001"),
        type=NotificationType.EXPOSURE,
        hop_depth=1,
        chain_data={"nodes": [{"display_name": "A", "test_status": "POSITIVE"}], "paths": []},
        chain_path=["a" * 64],
        chain_paths=[["a" * 64]],
        condition_labels=["HIV"],
        exposure_at=1,
        is_read=False,
        received_at=1,
        updated_at=1,
        deleted_at=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


class TestChainRewrite:

    @pytest.mark.asyncio
    async def test_rewrites_locked_rows_in_one_transaction(self, sql_store, factory, monkeypatch):
        first = "00000000-0000-4000-8000-00000000000a"
        second = "00000000-0000-4000-8000-00000000000b"
        locked_with = []
        written = []

        async def fake_lock(db, keys):
            locked_with.append((db, list(keys)))
            return [notification_row(first), notification_row(second)]

        async def fake_update(db, key, values):
            written.append((db, key, values))
            return True

        monkeypatch.setattr(crud, "lock_notifications", fake_lock)
        monkeypatch.setattr(crud, "update_notification", fake_update)

        def rewrite(record):
            if record.id != first:
                return None
            chain = record.chain.copy()
            chain.nodes[0].test_status = Status.NEGATIVE
            return chain

        rewritten = await sql_store.rewrite_notifications([first, second, "not-a-uuid"], rewrite, 99)

        assert [record.id for record in rewritten] == [first]
        assert rewritten[0].updated_at == 99
        assert len(factory.sessions) == 1
        assert locked_with[0][1] == [uuid.UUID(first), uuid.UUID(second)]
        assert len(written) == 1
        db, key, values = written[0]
        assert db is locked_with[0][0]
        assert key == uuid.UUID(first)
        assert values["chain_data"]["nodes"][0]["test_status"] == "NEGATIVE"
        assert values["updated_at"] == 99

    @pytest.mark.asyncio
    async def test_no_valid_ids_opens_no_transaction(self, sql_store, factory):
        assert await sql_store.rewrite_notifications(["nope"], lambda record: None, 1) == []
        assert factory.sessions == []


class TestReportIdValidation:

    def test_sql_store_requires_uuid(self, sql_store):
        assert sql_store.accepts_report_id("00000000-0000-4000-8000-000000000001")
        assert not sql_store.accepts_report_id("report-1")

    @pytest.mark.asyncio
    async def test_propagation_rejects_bad_id_before_traversal(self, sql_store, factory, settings, sink, clock):
        engine = ChainPropagationEngine(sql_store, sink, settings, clock)

        with pytest.raises(ReportValidationError) as excinfo:
            await engine.propagate_exposure_chain(
                report_id="report-1",
                reporter_graph_id="g" * 64,
                reporter_display_name="A",
                condition_labels_json='["HIV"]',
                test_date_ms=clock(),
                privacy_level=PrivacyLevel.FULL,
            )

        assert excinfo.value.field == "report_id"
        assert factory.sessions == []
