from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from importlib.metadata import PackageNotFoundError, version
from typing import Final

SERVICE_NAME: Final[str] = "fashion-ai"


@dataclass(frozen=True)
class VersionInfo:
    service: str
    version: str
    build: str | None
    commit: str | None

    def to_dict(self) -> dict[str, str | None]:
        return asdict(self)


def get_version() -> VersionInfo:
    """Describe the running build; ``BUILD_ID`` and ``GIT_COMMIT`` come from the deploy env."""
    try:
        installed = version(SERVICE_NAME)
    except PackageNotFoundError as exc:
        raise RuntimeError(f"{SERVICE_NAME} is not installed") from exc
    return VersionInfo(
        service=SERVICE_NAME,
        version=installed,
        build=os.getenv("BUILD_ID"),
        commit=os.getenv("GIT_COMMIT") or os.getenv("COMMIT_SHA"),
    )
