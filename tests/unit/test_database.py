"""
Tests for database URL handling and logging setup.
"""

from loguru import logger

from aves.db.database import _get_async_url
from aves.logging_setup import configure_logging
from config import Settings


class TestAsyncUrl:
    """Tests for _get_async_url."""

    def test_postgresql_scheme(self):
        url = _get_async_url("postgresql://user:pw@localhost:5432/aves")
        assert url == "postgresql+asyncpg://user:pw@localhost:5432/aves"

    def test_postgres_scheme(self):
        url = _get_async_url("postgres://user:pw@db.example.com/aves")
        assert url == "postgresql+asyncpg://user:pw@db.example.com/aves"

    def test_asyncpg_url_unchanged(self):
        url = "postgresql+asyncpg://user:pw@localhost/aves"
        assert _get_async_url(url) == url


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_file_sink_creates_directory(self, tmp_path):
        log_file = tmp_path / "logs" / "aves.log"
        settings = Settings(_env_file=None, log_file=str(log_file), log_level="INFO")

        configure_logging(settings)
        logger.info("hello from the test")
        logger.remove()

        assert log_file.exists()
        assert "hello from the test" in log_file.read_text(encoding="utf-8")
