from __future__ import annotations

import os
from pathlib import Path

import pytest

from fashion_ai.config import AppConfig, ClassifierConfig, Limits, Settings


def _load_with_env(env: dict[str, str]) -> Settings:
    old = os.environ.copy()
    try:
        os.environ.clear()
        os.environ.update(env)
        return Settings.load()
    finally:
        os.environ.clear()
        os.environ.update(old)


def test_defaults_without_env_or_toml(tmp_path: Path) -> None:
    s = _load_with_env({"FASHION_CONFIG": (tmp_path / "missing.toml").as_posix()})
    c = s.classifier
    assert c.resize_policy == "bilinear"
    assert c.top_k == 3
    assert c.history_size == 5
    assert abs(c.share_threshold - 0.7) < 1e-9
    assert s.app.port == 8081
    assert s.security.api_key == ""


def test_env_overrides(tmp_path: Path) -> None:
    env = {
        "FASHION_CONFIG": (tmp_path / "missing.toml").as_posix(),
        "CLASSIFIER__MODEL_DIR": (tmp_path / "models").as_posix(),
        "CLASSIFIER__ACTIVE_MODEL": "resnet_v2",
        "CLASSIFIER__RESIZE_POLICY": "Nearest",
        "CLASSIFIER__TOP_K": "5",
        "CLASSIFIER__HISTORY_SIZE": "8",
        "CLASSIFIER__PREDICT_TIMEOUT_SECONDS": "1",
        "APP__THREADS": "2",
        "SECURITY__API_KEY": "k",
    }
    s = _load_with_env(env)
    assert s.classifier.model_dir.as_posix().endswith("models")
    assert s.classifier.active_model == "resnet_v2"
    assert s.classifier.resize_policy == "nearest"
    assert s.classifier.top_k == 5
    assert s.classifier.history_size == 8
    assert s.classifier.predict_timeout_seconds == 1
    assert s.app.threads == 2
    assert s.security.api_key == "k"


def test_toml_overrides_env(tmp_path: Path) -> None:
    p = tmp_path / "cfg.toml"
    p.write_text(
        """
[app]
port = 9000

[classifier]
top_k = 2
resize_policy = "nearest"
share_threshold = 0.9
max_image_mb = 4

[security]
api_key = "secret"
api_key_enabled = false
""".strip(),
        encoding="utf-8",
    )
    s = _load_with_env({"FASHION_CONFIG": p.as_posix(), "CLASSIFIER__TOP_K": "4"})
    assert s.app.port == 9000
    assert s.classifier.top_k == 2
    assert s.classifier.resize_policy == "nearest"
    assert abs(s.classifier.share_threshold - 0.9) < 1e-9
    assert s.security.api_key == ""
    assert Limits.from_settings(s).max_bytes == 4 * 1024 * 1024


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("APP__PORT", "70000"),
        ("CLASSIFIER__TOP_K", "0"),
        ("CLASSIFIER__TOP_K", "11"),
        ("CLASSIFIER__HISTORY_SIZE", "0"),
        ("CLASSIFIER__RESIZE_POLICY", "bicubic"),
        ("CLASSIFIER__PREDICT_TIMEOUT_SECONDS", "0"),
    ],
)
def test_invalid_env_values_raise(tmp_path: Path, key: str, value: str) -> None:
    env = {"FASHION_CONFIG": (tmp_path / "missing.toml").as_posix(), key: value}
    with pytest.raises(RuntimeError):
        _load_with_env(env)


def test_invalid_toml_raises(tmp_path: Path) -> None:
    p = tmp_path / "bad.toml"
    p.write_text("[classifier\ntop_k = ", encoding="utf-8")
    with pytest.raises(RuntimeError):
        _load_with_env({"FASHION_CONFIG": p.as_posix()})


def test_sections_validate_on_construction() -> None:
    with pytest.raises(RuntimeError):
        ClassifierConfig(share_threshold=1.5)
    with pytest.raises(RuntimeError):
        AppConfig(threads=-1)
    assert ClassifierConfig(top_k=10).top_k == 10
