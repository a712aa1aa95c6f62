from __future__ import annotations

import io
import json
import logging
from pathlib import Path

import pytest
import torch
from _fakes import make_manifest, make_settings

from fashion_ai.config import ClassifierConfig
from fashion_ai.errors import AppError, ErrorCode
from fashion_ai.inference.engine import InferenceEngine, load_model, write_model_artifacts
from fashion_ai.inference.model import build_fresh_state_dict
from fashion_ai.logging import _JsonFormatter, get_logger
from fashion_ai.preprocess import preprocess_signature


def _write_fresh(model_dir: Path, arch: str = "fashion_cnn") -> None:
    sd = build_fresh_state_dict(arch, 10)
    write_model_artifacts(model_dir, sd, make_manifest("m1", arch))


def test_load_model_round_trip_and_inference(tmp_path: Path) -> None:
    _write_fresh(tmp_path / "m1")
    loaded = load_model(tmp_path / "m1")
    assert loaded.manifest.model_id == "m1"
    probs = loaded.model(torch.zeros((1, 28, 28, 1), dtype=torch.float32))
    assert list(probs.shape) == [1, 10]
    assert float(probs.sum()) == pytest.approx(1.0, abs=1e-5)


def test_load_model_missing_artifacts(tmp_path: Path) -> None:
    with pytest.raises(AppError) as ei:
        load_model(tmp_path / "absent")
    assert ei.value.code is ErrorCode.model_load_failed


def test_load_model_rejects_bad_manifest_and_weights(tmp_path: Path) -> None:
    d = tmp_path / "m1"
    d.mkdir()
    (d / "manifest.json").write_text("not json", encoding="utf-8")
    (d / "model.pt").write_bytes(b"\x00\x01bad")
    with pytest.raises(AppError) as e1:
        load_model(d)
    assert "invalid manifest" in e1.value.message

    (d / "manifest.json").write_text(json.dumps(make_manifest("m1").to_dict()), encoding="utf-8")
    with pytest.raises(AppError) as e2:
        load_model(d)
    assert "unreadable weights" in e2.value.message


def test_load_model_rejects_signature_and_class_count(tmp_path: Path) -> None:
    _write_fresh(tmp_path / "m1")
    with pytest.raises(AppError) as e1:
        load_model(tmp_path / "m1", "nearest")
    assert "signature" in e1.value.message

    man = make_manifest("m1").to_dict()
    man["n_classes"] = 5
    (tmp_path / "m1" / "manifest.json").write_text(json.dumps(man), encoding="utf-8")
    with pytest.raises(AppError) as e2:
        load_model(tmp_path / "m1")
    assert e2.value.code is ErrorCode.model_load_failed


def test_load_model_rejects_mismatched_weights(tmp_path: Path) -> None:
    sd = build_fresh_state_dict("fashion_cnn", 10)
    sd["fc.weight"] = torch.zeros((10, 64))
    write_model_artifacts(tmp_path / "m1", sd, make_manifest("m1"))
    with pytest.raises(AppError) as ei:
        load_model(tmp_path / "m1")
    assert "invalid weights" in ei.value.message


def test_try_load_active_success_and_failure(tmp_path: Path) -> None:
    cfg = ClassifierConfig(model_dir=tmp_path, active_model="m1")
    missing = InferenceEngine(make_settings(cfg))
    buf = io.StringIO()
    handler = logging.StreamHandler(buf)
    handler.setFormatter(_JsonFormatter())
    logger = get_logger()
    logger.addHandler(handler)
    try:
        assert missing.try_load_active() is False
    finally:
        logger.removeHandler(handler)
    assert missing.ready is False
    assert "model_load_failed" in buf.getvalue()

    _write_fresh(tmp_path / "m1")
    eng = InferenceEngine(make_settings(cfg))
    assert eng.try_load_active() is True
    assert eng.ready is True and eng.model_id == "m1"
    out = eng.warmup()
    assert sum(out.probs) == pytest.approx(1.0, abs=1e-4)


def test_manifest_signature_helper_matches_default() -> None:
    assert make_manifest().preprocess_hash == preprocess_signature("bilinear")
