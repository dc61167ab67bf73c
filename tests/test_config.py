from __future__ import annotations

import json
from pathlib import Path

import memories_core.config as cfg
from memories_core.config import ensure_runtime_config, read_config_snapshot


def _base_config() -> dict:
    return {
        "app": {"env": "dev"},
        "paths": {"data_root": "./data", "log_dir": "data/logs"},
        "backend": {
            "url": "https://base.example.co",
            "anon_key": "anon",
            "access_token": None,
            "user_id": None,
            "timeout_seconds": 15,
            "upload_timeout_seconds": 30,
        },
        "sync": {"interval_seconds": 30, "max_retries": 3},
        "feed": {"batch_size": 20, "preview_multiplier": 3},
        "connectivity": {"probe_url": "", "timeout_seconds": 3, "poll_seconds": 0},
        "logging": {"level": "info"},
    }


def _write_repo(tmp_path: Path, monkeypatch, config: dict, local: dict | None = None) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "dev.json").write_text(json.dumps(config), encoding="utf-8")
    if local is not None:
        (config_dir / "local.json").write_text(json.dumps(local), encoding="utf-8")
    monkeypatch.setattr(cfg, "_repo_root", lambda: tmp_path)
    for name in ("MEMORIES_BACKEND_URL", "MEMORIES_SYNC_INTERVAL", "MEMORIES_LOG_LEVEL", "MEMORIES_DATA_PATH"):
        monkeypatch.delenv(name, raising=False)


def test_invalid_config_snapshot_falls_back_to_bootstrap(tmp_path: Path, monkeypatch) -> None:
    _write_repo(tmp_path, monkeypatch, {"app": {"env": "dev"}})

    snapshot = read_config_snapshot("dev", {})

    assert snapshot.exists
    assert not snapshot.valid
    assert snapshot.effective_config is None
    assert any("Missing required section" in issue for issue in snapshot.issues)
    runtime_cfg = ensure_runtime_config(snapshot, env="dev")
    assert runtime_cfg.backend.url == ""
    assert runtime_cfg.sync.interval_seconds == 30
    assert runtime_cfg.sync.max_retries == 3
    assert runtime_cfg.feed.batch_size == 20


def test_missing_config_file(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cfg, "_repo_root", lambda: tmp_path)
    snapshot = read_config_snapshot("prod")
    assert not snapshot.exists
    assert not snapshot.valid


def test_local_config_is_merged_before_env_and_cli(tmp_path: Path, monkeypatch) -> None:
    _write_repo(
        tmp_path,
        monkeypatch,
        _base_config(),
        local={"backend": {"url": "https://local.example.co"}, "sync": {"interval_seconds": 5}},
    )
    monkeypatch.setenv("MEMORIES_SYNC_INTERVAL", "7")

    snapshot = read_config_snapshot("dev", {"feed.batch_size": "10"})

    assert snapshot.valid
    assert snapshot.effective_config is not None
    assert snapshot.effective_config.backend.url == "https://local.example.co"
    assert snapshot.effective_config.sync.interval_seconds == 7
    assert snapshot.effective_config.feed.batch_size == 10
    assert any("local config" in warning for warning in snapshot.warnings)

    overridden = read_config_snapshot("dev", {"sync.interval_seconds": "60"})
    assert overridden.effective_config is not None
    assert overridden.effective_config.sync.interval_seconds == 60


def test_validation_issues(tmp_path: Path, monkeypatch) -> None:
    config = _base_config()
    config["backend"]["url"] = "ftp://nope"
    config["sync"]["max_retries"] = 0
    config["logging"]["level"] = "loud"
    _write_repo(tmp_path, monkeypatch, config)

    snapshot = read_config_snapshot("dev")

    assert not snapshot.valid
    joined = " ".join(snapshot.issues)
    assert "backend.url" in joined
    assert "sync.max_retries" in joined
    assert "logging.level" in joined


def test_empty_backend_url_is_only_a_warning(tmp_path: Path, monkeypatch) -> None:
    config = _base_config()
    config["backend"]["url"] = ""
    _write_repo(tmp_path, monkeypatch, config)

    snapshot = read_config_snapshot("dev")

    assert snapshot.valid
    assert any("offline mode" in warning for warning in snapshot.warnings)


def test_shipped_dev_config_is_valid(monkeypatch) -> None:
    for name in ("MEMORIES_BACKEND_URL", "MEMORIES_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    snapshot = read_config_snapshot("dev")
    assert snapshot.valid, snapshot.issues
    assert snapshot.effective_config is not None
    assert snapshot.effective_config.logging.level == "debug"
