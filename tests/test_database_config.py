"""Tests for database URL handling."""

import pytest

from database.config import DatabaseSettings


def settings_for(url):
    return DatabaseSettings(_env_file=None, database_url=url)


class TestAsyncDatabaseUrl:

    def test_adds_asyncpg_driver(self):
        assert settings_for("postgresql://u:p@host/db").async_database_url == "postgresql+asyncpg://u:p@host/db"

    def test_heroku_style_scheme(self):
        assert settings_for("postgres://u:p@host/db").async_database_url == "postgresql+asyncpg://u:p@host/db"

    def test_keeps_explicit_driver(self):
        url = "postgresql+asyncpg://u:p@host/db"
        assert settings_for(url).async_database_url == url

    def test_strips_libpq_only_parameters(self):
        url = "postgresql://u:p@host/db?sslmode=require&channel_binding=require"
        assert settings_for(url).async_database_url == "postgresql+asyncpg://u:p@host/db"

    def test_keeps_other_parameters(self):
        url = "postgresql://u:p@host/db?sslmode=require&application_name=exposure"
        assert settings_for(url).async_database_url == "postgresql+asyncpg://u:p@host/db?application_name=exposure"

    def test_missing_url(self):
        with pytest.raises(ValueError):
            settings_for("").async_database_url
