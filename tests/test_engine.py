"""Tests for engine wiring and startup."""

import pytest

from ipo_engine.core.engine import start, stop
from ipo_engine.database.engine import get_engine


@pytest.mark.asyncio
class TestStart:
    async def test_binds_configured_database(self, cfg, tmp_path, session_factory, fake_client, cache, broadcast):
        other = cfg.model_copy(update={"DATABASE_URL": f"sqlite:///{tmp_path / 'ipo_other.sqlite3'}"})
        handle = await start(other, client=fake_client, cache=cache, broadcast=broadcast)
        try:
            assert get_engine().url.database.endswith("ipo_other.sqlite3")
            assert handle.loops_started is False
            assert (tmp_path / "ipo_other.sqlite3").exists()
        finally:
            await stop(handle)
