from __future__ import annotations

import argparse
import shutil
from dataclasses import dataclass
from pathlib import Path

from fashion_ai.config import ResizePolicy
from fashion_ai.errors import AppError
from fashion_ai.inference.engine import load_model
from fashion_ai.logging import get_logger, init_logging


@dataclass(frozen=True)
class SeedArgs:
    model_id: str
    from_dir: Path
    to_dir: Path
    resize_policy: ResizePolicy = "bilinear"


def parse_args(argv: list[str] | None = None) -> SeedArgs:
    ap = argparse.ArgumentParser(description="Validate a model and copy it into the seed directory")
    ap.add_argument("--model-id", required=True, help="Model id folder name")
    ap.add_argument("--from-dir", default="./artifacts/fashion/models", help="Source models root")
    ap.add_argument("--to-dir", default="./seed/fashion/models", help="Destination seed root")
    ap.add_argument("--resize-policy", choices=("bilinear", "nearest"), default="bilinear")
    a = ap.parse_args(argv)
    policy: ResizePolicy = "nearest" if a.resize_policy == "nearest" else "bilinear"
    return SeedArgs(
        model_id=str(a.model_id),
        from_dir=Path(str(a.from_dir)),
        to_dir=Path(str(a.to_dir)),
        resize_policy=policy,
    )


def copy_model(args: SeedArgs) -> None:
    src = args.from_dir / args.model_id
    dst = args.to_dir / args.model_id
    try:
        loaded = load_model(src, args.resize_policy)
    except AppError as exc:
        raise SystemExit(f"Refusing to seed {src.as_posix()}: {exc.message}") from None
    dst.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src / "model.pt", dst / "model.pt")
    shutil.copy2(src / "manifest.json", dst / "manifest.json")
    get_logger().info(
        "seed_model_copied model_id=%s arch=%s src=%s dst=%s",
        loaded.manifest.model_id,
        loaded.manifest.arch,
        src.as_posix(),
        dst.as_posix(),
    )


def main(argv: list[str] | None = None) -> None:
    init_logging()
    copy_model(parse_args(argv))


if __name__ == "__main__":
    main()
