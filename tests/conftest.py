"""Shared fixtures."""

import pytest

from changetail.config.settings import CheckpointSettings, load_settings


@pytest.fixture
def mongo_env(monkeypatch, tmp_path):
    """Required MongoDB settings in the environment, cwd isolated from any .env file."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MONGODB_URI", "mongodb://localhost:27017")
    monkeypatch.setenv("MONGODB_DATABASE", "testdb")
    monkeypatch.setenv("MONGODB_COLLECTION", "test_collection")
    for name in ("WITH_RESUME", "OUTPUT_FILE", "CHECKPOINT_DIRECTORY", "CHECKPOINT_TOKEN_FILE",
                 "STREAM_MAX_AWAIT_TIME_MS", "STREAM_BATCH_SIZE", "LOG_LEVEL", "LOG_FORMAT",
                 "METRICS_PORT"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def settings(mongo_env, tmp_path):
    return load_settings(
        output_file=str(tmp_path / "change_events"),
        checkpoint=CheckpointSettings(directory=str(tmp_path))
    )
