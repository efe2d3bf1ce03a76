import json

import pytest
from typer.testing import CliRunner

from skyframe.cli import app
from skyframe.config import ConfigPaths, bootstrap
from skyframe.models import CacheEntry, PhotoRecord
from skyframe.state import JsonFileCacheStore
from skyframe.timers import SystemClock

runner = CliRunner()


@pytest.fixture
def config_dir(tmp_path):
    base = tmp_path / "skyframe"
    bootstrap(ConfigPaths.from_base_dir(base))
    return base


def test_init_creates_config(tmp_path):
    base = tmp_path / "fresh"

    result = runner.invoke(app, ["init", "--config-dir", str(base)])

    assert result.exit_code == 0
    assert "Global config created" in result.output
    assert (base / "config.yml").exists()

    again = runner.invoke(app, ["init", "--config-dir", str(base)])
    assert again.exit_code == 0
    assert "already exists" in again.output


def test_status_without_cache(config_dir):
    result = runner.invoke(app, ["status", "--config-dir", str(config_dir)])

    assert result.exit_code == 0
    assert "No cached photo." in result.output


def test_status_with_cached_photo(config_dir):
    store = JsonFileCacheStore(config_dir / "state" / "photo_cache.json")
    store.put(
        CacheEntry(
            photo=PhotoRecord(url="https://img.example/p", author="Imogen", author_url="https://unsplash.com/@imogen"),
            query="autumn",
            timestamp=SystemClock().now_ms(),
        )
    )

    result = runner.invoke(app, ["status", "--config-dir", str(config_dir)])

    assert result.exit_code == 0
    assert "Imogen" in result.output
    assert "autumn" in result.output
    assert "False" in result.output


def test_cache_clear_removes_file(config_dir):
    path = config_dir / "state" / "photo_cache.json"
    path.write_text(json.dumps({"photo": {}, "query": "x", "timestamp": 1}), encoding="utf-8")

    result = runner.invoke(app, ["cache", "clear", "--config-dir", str(config_dir)])

    assert result.exit_code == 0
    assert "Cleared photo cache" in result.output
    assert not path.exists()


def test_offline_query_uses_calendar(config_dir):
    result = runner.invoke(
        app,
        ["query", "--offline", "--at", "2025-12-10T12:00", "--config-dir", str(config_dir)],
    )

    assert result.exit_code == 0
    assert "christmas aesthetic" in result.output


def test_invalid_config_exits_with_error(tmp_path):
    base = tmp_path / "broken"
    base.mkdir()
    (base / "config.yml").write_text("display: [1, 2\n", encoding="utf-8")

    result = runner.invoke(app, ["status", "--config-dir", str(base)])

    assert result.exit_code == 1
    assert "Error loading configuration" in result.output
