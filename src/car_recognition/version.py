from __future__ import annotations

import os
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version


@dataclass(frozen=True)
class VersionInfo:
    service: str
    version: str
    build: str | None
    commit: str | None


def get_version() -> VersionInfo:
    return VersionInfo(
        service="car-recognition",
        version=_pkg_version(),
        build=os.getenv("BUILD_ID"),
        commit=os.getenv("GIT_COMMIT") or os.getenv("COMMIT_SHA"),
    )


def _pkg_version() -> str:
    try:
        return version("car-recognition")
    except PackageNotFoundError as exc:
        from .logging import get_logger

        get_logger().warning("pkg_version_fallback error=%s", exc)
        # Source checkouts without an install still need to serve /version
        return "0.0.0+local"
