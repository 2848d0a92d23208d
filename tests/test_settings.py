"""
Tests for configuration loading, backend factories and the schema migration.
"""
import pytest

from config.settings import get_settings, load_settings, override_settings


@pytest.fixture(autouse=True)
def _reset_settings():
    yield
    override_settings(None)


class TestLoadSettings:
    def test_bundled_file(self, monkeypatch):
        monkeypatch.delenv("OMSD_CONFIG", raising=False)
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = load_settings()
        assert settings.timezone == "Asia/Kolkata"
        assert settings.queue.throttle_max_sent == 3
        assert settings.queue.throttle_window_minutes == 20
        assert settings.queue.batch_size == 50
        assert settings.gateway.provider == "mock"

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.timezone == "UTC"
        assert settings.queue.default_max_attempts == 3

    def test_env_substitution_and_unknown_keys(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC999")
        monkeypatch.delenv("DATABASE_URL", raising=False)
        path = tmp_path / "settings.yaml"
        path.write_text(
            "timezone: Europe/Berlin\n"
            "queue:\n"
            "  batch_size: 10\n"
            "  retired_option: true\n"
            "gateway:\n"
            "  provider: twilio\n"
            "  credentials:\n"
            "    account_sid: ${TWILIO_ACCOUNT_SID}\n"
            "    auth_token: ${UNSET_TOKEN_FOR_TEST}\n"
        )
        settings = load_settings(str(path))
        assert settings.timezone == "Europe/Berlin"
        assert settings.queue.batch_size == 10
        assert settings.queue.throttle_max_sent == 3
        assert settings.gateway.credentials["account_sid"] == "AC999"
        assert settings.gateway.credentials["auth_token"] == "${UNSET_TOKEN_FOR_TEST}"

    def test_database_url_env_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/omsd")
        settings = load_settings(str(tmp_path / "absent.yaml"))
        assert settings.database.url == "postgresql://u:p@db:5432/omsd"

    def test_override(self):
        from config.settings import Settings
        custom = Settings(timezone="America/New_York")
        override_settings(custom)
        assert get_settings() is custom


class TestSessionUrls:
    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("postgres://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("mysql://u:p@h/db", "mysql+aiomysql://u:p@h/db"),
        ("mysql+pymysql://u:p@h/db", "mysql+aiomysql://u:p@h/db"),
        ("sqlite:///./omsd.db", "sqlite+aiosqlite:///./omsd.db"),
        ("sqlite+aiosqlite:///x.db", "sqlite+aiosqlite:///x.db"),
    ])
    def test_async_driver_mapping(self, url, expected):
        from database.session import _to_async_url
        assert _to_async_url(url) == expected

    def test_memory_sqlite_uses_static_pool(self):
        from sqlalchemy.pool import StaticPool
        from database.session import _engine_kwargs
        assert _engine_kwargs("sqlite+aiosqlite://", False)["poolclass"] is StaticPool
        assert "poolclass" not in _engine_kwargs("sqlite+aiosqlite:///file.db", False)
        assert _engine_kwargs("postgresql+asyncpg://h/db", False)["pool_pre_ping"] is True


class TestStoreFactory:
    @pytest.fixture(autouse=True)
    def _reset_store(self):
        from database.store_factory import reset_store
        reset_store()
        yield
        reset_store()

    def test_memory_backend(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryQueueStore
        store = create_store({"store_backend": "memory"})
        assert isinstance(store, InMemoryQueueStore)
        assert create_store({"store_backend": "sql"}) is store

    def test_sql_backend(self):
        from database.store import SqlQueueStore
        from database.store_factory import create_store
        assert isinstance(create_store({"store_backend": "sql"}), SqlQueueStore)

    def test_unknown_backend(self):
        from database.store_factory import create_store
        with pytest.raises(ValueError):
            create_store({"store_backend": "redis"})

    def test_get_store_follows_settings(self):
        from config.settings import DatabaseConfig, Settings
        from database.store_factory import get_store
        from database.store_memory import InMemoryQueueStore
        override_settings(Settings(database=DatabaseConfig(store_backend="memory")))
        assert isinstance(get_store(), InMemoryQueueStore)


class TestMigration:
    @pytest.mark.asyncio
    async def test_event_id_column_added_and_backfilled(self, tmp_path):
        from sqlalchemy import text
        from sqlalchemy.ext.asyncio import create_async_engine
        from scripts.migrate_db import add_event_id_column

        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'legacy.db'}")
        try:
            async with engine.begin() as conn:
                await conn.execute(text(
                    "CREATE TABLE message_queue (id INTEGER PRIMARY KEY, recipient VARCHAR(128), "
                    "kind VARCHAR(32), metadata JSON)"
                ))
                await conn.execute(text(
                    "INSERT INTO message_queue (id, recipient, kind, metadata) VALUES "
                    "(1, '+91u1', 'EVENT_BROADCAST', '{\"event_id\": 4}'), "
                    "(2, '+91u2', 'SYSTEM_UPDATE', '{\"event_id\": 4}')"
                ))
                assert await add_event_id_column(conn) is True
                assert await add_event_id_column(conn) is False

                rows = (await conn.execute(text("SELECT id, event_id FROM message_queue ORDER BY id"))).all()
            assert [tuple(r) for r in rows] == [(1, 4), (2, None)]
        finally:
            await engine.dispose()
