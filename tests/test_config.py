"""Tests for config.ini parsing."""

import pytest

from tracker.config import (
    ChapterbellConfig,
    get_config,
    load_config,
    reset_config_cache,
    write_default_config,
)


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.ini")


def test_missing_sections_fall_back_to_defaults(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text("[scheduler]\nstaleness_minutes = 15\n")

    config = load_config(path)

    assert config.scheduler.staleness_minutes == 15
    assert config.scheduler.max_titles_per_run == 50
    assert config.retry.max_attempts == 5
    assert config.pipeline.notify_on_first_check is False
    assert not config.email.enabled


def test_values_are_parsed(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text(
        "[worker]\ncheck_concurrency = 2\nsend_deadline_seconds = 7.5\n"
        "[retry]\nmax_attempts = 3\nbase_delay_seconds = 1.5\n"
        "[sources]\nmangadex_base_url = http://localhost:9000/\n"
        "[pipeline]\nnotify_on_first_check = yes\n"
        "[email]\napi_key = re_123\nsender = Bell <bell@example.com>\n"
    )

    config = load_config(path)

    assert config.worker.check_concurrency == 2
    assert config.worker.send_deadline_seconds == 7.5
    assert config.retry.max_attempts == 3
    assert config.retry.base_delay_seconds == 1.5
    assert config.sources.mangadex_base_url == "http://localhost:9000"
    assert config.pipeline.notify_on_first_check is True
    assert config.email.enabled
    assert config.email.sender == "Bell <bell@example.com>"
    assert config.email.api_url == "https://api.resend.com/emails"


@pytest.mark.parametrize(
    "section,key,value",
    [
        ("retry", "max_attempts", "0"),
        ("worker", "notify_concurrency", "-1"),
        ("worker", "poll_seconds", "0"),
        ("scheduler", "max_titles_per_run", "0"),
    ],
)
def test_non_positive_values_are_rejected(tmp_path, section, key, value):
    path = tmp_path / "config.ini"
    path.write_text(f"[{section}]\n{key} = {value}\n")

    with pytest.raises(ValueError):
        load_config(path)


def test_written_defaults_load_back(tmp_path):
    path = write_default_config(tmp_path / "config.ini")

    loaded = load_config(path)

    assert loaded.scheduler == ChapterbellConfig().scheduler
    assert loaded.retry == ChapterbellConfig().retry
    assert loaded.server.port == 8282


def test_get_config_is_cached_until_reset(tmp_path, monkeypatch):
    path = tmp_path / "config.ini"
    path.write_text("[scheduler]\nstaleness_minutes = 15\n")
    monkeypatch.setattr("tracker.config.DEFAULT_CONFIG_PATH", path, raising=True)
    reset_config_cache()
    try:
        first = get_config()
        path.write_text("[scheduler]\nstaleness_minutes = 30\n")
        assert get_config() is first

        reset_config_cache()
        assert get_config().scheduler.staleness_minutes == 30
    finally:
        reset_config_cache()
