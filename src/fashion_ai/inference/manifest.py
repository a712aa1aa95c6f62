from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

SCHEMA_VERSION: Final[str] = "fashion/v1"
_REQUIRED_TEXT: Final[tuple[str, ...]] = (
    "schema_version",
    "model_id",
    "arch",
    "version",
    "preprocess_hash",
)


@dataclass(frozen=True)
class ModelManifest:
    """Metadata stored next to ``model.pt`` describing how the weights were built."""

    schema_version: str
    model_id: str
    arch: str
    n_classes: int
    version: str
    created_at: datetime
    preprocess_hash: str
    val_acc: float

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        return ModelManifest.from_dict({str(k): v for k, v in obj.items()})

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        text = {key: str(d.get(key, "")).strip() for key in _REQUIRED_TEXT}
        missing = [key for key, val in text.items() if not val]
        if missing:
            raise ValueError(f"manifest is missing required fields: {', '.join(missing)}")
        if text["schema_version"] != SCHEMA_VERSION:
            raise ValueError(f"unsupported manifest schema version: {text['schema_version']}")

        n_classes = int(str(d.get("n_classes", 10)))
        if n_classes < 2:
            raise ValueError("n_classes must be >= 2")
        val_acc = float(str(d.get("val_acc", 0.0)))
        if not 0.0 <= val_acc <= 1.0:
            raise ValueError("val_acc must be within [0,1]")

        raw_created = d.get("created_at")
        created = (
            datetime.fromisoformat(str(raw_created)) if raw_created else datetime.now(UTC)
        )
        return ModelManifest(
            schema_version=text["schema_version"],
            model_id=text["model_id"],
            arch=text["arch"],
            n_classes=n_classes,
            version=text["version"],
            created_at=created,
            preprocess_hash=text["preprocess_hash"],
            val_acc=val_acc,
        )

    def to_dict(self) -> dict[str, object]:
        out = asdict(self)
        out["created_at"] = self.created_at.isoformat()
        return out
