from __future__ import annotations

import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Final, Literal, TypeVar, cast

ResizePolicy = Literal["bilinear", "nearest"]

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/fashion.toml")
_RESIZE_POLICIES: Final[tuple[ResizePolicy, ...]] = ("bilinear", "nearest")
_N_CLASSES: Final[int] = 10


def _as_policy(v: object) -> ResizePolicy:
    m = str(v).strip().lower()
    if m not in _RESIZE_POLICIES:
        raise ValueError(f"resize_policy must be one of {', '.join(_RESIZE_POLICIES)}")
    return cast(ResizePolicy, m)


def _as_bool(v: object) -> bool:
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(v: object) -> int:
    return int(str(v).strip())


def _as_float(v: object) -> float:
    return float(str(v).strip())


def _as_str(v: object) -> str:
    return str(v)


def _as_path(v: object) -> Path:
    return Path(str(v))


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0
    port: int = 8081

    def __post_init__(self) -> None:
        if self.threads < 0:
            raise RuntimeError("threads must be >= 0")
        if not 1 <= self.port <= 65535:
            raise RuntimeError("port out of range")


@dataclass(frozen=True)
class ClassifierConfig:
    model_dir: Path = Path("/data/fashion/models")
    active_model: str = "fashion_cnn_v1"
    resize_policy: ResizePolicy = "bilinear"
    top_k: int = 3
    history_size: int = 5
    share_threshold: float = 0.70
    max_image_mb: int = 2
    max_image_side_px: int = 1024
    predict_timeout_seconds: int = 5
    visualize_max_kb: int = 16

    def __post_init__(self) -> None:
        if not 1 <= self.top_k <= _N_CLASSES:
            raise RuntimeError(f"top_k must be within [1, {_N_CLASSES}]")
        if self.history_size < 1:
            raise RuntimeError("history_size must be >= 1")
        if not 0.0 <= self.share_threshold <= 1.0:
            raise RuntimeError("share_threshold must be within [0, 1]")
        if self.max_image_mb < 1 or self.max_image_side_px < 1:
            raise RuntimeError("image limits must be positive")
        if self.predict_timeout_seconds < 1:
            raise RuntimeError("predict_timeout_seconds must be >= 1")


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the check
    api_key: str = ""


_Section = TypeVar("_Section", AppConfig, ClassifierConfig, SecurityConfig)

_CONVERTERS: Final[dict[str, Callable[[object], object]]] = {
    "threads": _as_int,
    "port": _as_int,
    "model_dir": _as_path,
    "active_model": _as_str,
    "resize_policy": _as_policy,
    "top_k": _as_int,
    "history_size": _as_int,
    "share_threshold": _as_float,
    "max_image_mb": _as_int,
    "max_image_side_px": _as_int,
    "predict_timeout_seconds": _as_int,
    "visualize_max_kb": _as_int,
    "api_key": _as_str,
}


def _apply(section: _Section, values: Mapping[str, object], origin: str) -> _Section:
    """Return ``section`` with every known key in ``values`` converted and replaced."""
    updates: dict[str, object] = {}
    for f in fields(section):
        if f.name not in values:
            continue
        try:
            updates[f.name] = _CONVERTERS[f.name](values[f.name])
        except ValueError as exc:
            raise RuntimeError(f"invalid {origin} value for {f.name}: {exc}") from exc
    return replace(section, **updates) if updates else section


def _env_values(prefix: str, section: _Section) -> dict[str, object]:
    out: dict[str, object] = {}
    for f in fields(section):
        raw = os.getenv(f"{prefix}__{f.name.upper()}")
        if raw is not None and raw.strip() != "":
            out[f.name] = raw
    return out


def _from_env(prefix: str, section: _Section) -> _Section:
    return _apply(section, _env_values(prefix, section), "env")


def _toml_table(raw: Mapping[str, object], key: str) -> dict[str, object]:
    tab = raw.get(key, {})
    return {str(k): v for k, v in tab.items()} if isinstance(tab, dict) else {}


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    classifier: ClassifierConfig
    security: SecurityConfig

    @staticmethod
    def config_path() -> Path:
        return Path(os.getenv("FASHION_CONFIG") or _DEFAULT_CONFIG_PATH)

    @classmethod
    def load(cls) -> Settings:
        """Build settings from ``APP__*``/``CLASSIFIER__*``/``SECURITY__*`` env vars.

        Values in the TOML file named by ``FASHION_CONFIG`` (default
        ``config/fashion.toml``) override the environment when the file exists.
        ``[security] api_key_enabled = false`` switches the key check off.
        """
        app = _from_env("APP", AppConfig())
        classifier = _from_env("CLASSIFIER", ClassifierConfig())
        security = _from_env("SECURITY", SecurityConfig())

        path = cls.config_path()
        if not path.exists():
            return cls(app=app, classifier=classifier, security=security)
        try:
            raw = tomllib.loads(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"failed to read config TOML: {path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"invalid TOML config: {path}") from exc

        sec_table = _toml_table(raw, "security")
        security = _apply(security, sec_table, "toml")
        if "api_key_enabled" in sec_table and not _as_bool(sec_table["api_key_enabled"]):
            security = replace(security, api_key="")
        return cls(
            app=_apply(app, _toml_table(raw, "app"), "toml"),
            classifier=_apply(classifier, _toml_table(raw, "classifier"), "toml"),
            security=security,
        )


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=s.classifier.max_image_mb * 1024 * 1024,
            max_side_px=s.classifier.max_image_side_px,
        )
