"""Write untrained weights and a matching manifest for smoke-testing a deployment.

The classifier itself is trained elsewhere; this only produces artifacts in the
layout ``InferenceEngine.try_load_active`` expects so the service can be
started end to end without a real model.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import torch

from fashion_ai.config import ResizePolicy
from fashion_ai.inference.engine import write_model_artifacts
from fashion_ai.inference.manifest import SCHEMA_VERSION, ModelManifest
from fashion_ai.inference.model import ARCHES, build_fresh_state_dict
from fashion_ai.inference.ranking import FASHION_CLASSES
from fashion_ai.logging import get_logger, init_logging
from fashion_ai.preprocess import preprocess_signature


@dataclass(frozen=True)
class InitArgs:
    model_id: str
    model_dir: Path
    arch: str
    resize_policy: ResizePolicy
    seed: int


def parse_args(argv: list[str] | None = None) -> InitArgs:
    ap = argparse.ArgumentParser(description="Write untrained model artifacts")
    ap.add_argument("--model-id", default="fashion_cnn_v1")
    ap.add_argument("--model-dir", default="./artifacts/fashion/models")
    ap.add_argument("--arch", choices=ARCHES, default="fashion_cnn")
    ap.add_argument("--resize-policy", choices=("bilinear", "nearest"), default="bilinear")
    ap.add_argument("--seed", type=int, default=0)
    a = ap.parse_args(argv)
    policy: ResizePolicy = "nearest" if a.resize_policy == "nearest" else "bilinear"
    return InitArgs(
        model_id=str(a.model_id),
        model_dir=Path(str(a.model_dir)),
        arch=str(a.arch),
        resize_policy=policy,
        seed=int(a.seed),
    )


def init_model(args: InitArgs) -> Path:
    torch.manual_seed(args.seed)
    sd = build_fresh_state_dict(args.arch, len(FASHION_CLASSES))
    manifest = ModelManifest(
        schema_version=SCHEMA_VERSION,
        model_id=args.model_id,
        arch=args.arch,
        n_classes=len(FASHION_CLASSES),
        version="0.0.0",
        created_at=datetime.now(UTC),
        preprocess_hash=preprocess_signature(args.resize_policy),
        val_acc=0.0,
    )
    dest = args.model_dir / args.model_id
    write_model_artifacts(dest, sd, manifest)
    get_logger().info(
        "init_model_written model_id=%s arch=%s dst=%s", args.model_id, args.arch, dest.as_posix()
    )
    return dest


def main(argv: list[str] | None = None) -> None:
    init_logging()
    init_model(parse_args(argv))


if __name__ == "__main__":
    main()
