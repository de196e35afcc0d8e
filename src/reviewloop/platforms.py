from __future__ import annotations

from collections.abc import Iterable
from pathlib import PurePosixPath

from reviewloop.models import Platform


EXTENSION_PLATFORMS: dict[str, Platform] = {
    ".swift": "ios",
    ".kt": "android",
    ".kts": "android",
    ".go": "golang",
    ".tsx": "react",
    ".ts": "react",
    ".jsx": "react",
}


def detect_platform(changed_files: Iterable[str]) -> Platform | None:
    """Pick the platform with the most changed files; ties go to the first seen."""
    counts: dict[Platform, int] = {}
    for filename in changed_files:
        platform = EXTENSION_PLATFORMS.get(PurePosixPath(filename).suffix)
        if platform is not None:
            counts[platform] = counts.get(platform, 0) + 1

    best: Platform | None = None
    best_count = 0
    for platform, count in counts.items():
        if count > best_count:
            best = platform
            best_count = count
    return best
