from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable

from rookery_build.common.hashing import file_digest
from rookery_build.common.time_utils import utc_now
from rookery_build.integration.event_bus import EventBus
from rookery_build.integration.events import VerifyReported
from rookery_build.integrity.checksums import ChecksumDatabase


logger = logging.getLogger(__name__)

DEFAULT_MIN_SIZE = 1024


class VerificationFailed(RuntimeError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Verification failed for {path}: {reason}")
        self.path = path
        self.reason = reason


class ChecksumMismatch(VerificationFailed):
    def __init__(self, path: Path, expected: str, actual: str) -> None:
        super().__init__(path, f"checksum mismatch (expected {expected}, got {actual})")
        self.expected = expected
        self.actual = actual


class VerifyStatus(str, Enum):
    VERIFIED = "verified"
    MISMATCHED = "mismatched"
    UNKNOWN = "unknown"
    TOO_SMALL = "too_small"
    MISSING = "missing"


@dataclass(frozen=True)
class VerifyResult:
    path: Path
    status: VerifyStatus
    size: int = 0
    expected: str | None = None
    actual: str | None = None

    @property
    def ok(self) -> bool:
        """Verified, or unknown but plausibly complete."""
        return self.status in (VerifyStatus.VERIFIED, VerifyStatus.UNKNOWN)

    def describe(self) -> str:
        if self.status is VerifyStatus.MISMATCHED:
            return f"{self.path.name} (expected: {self.expected}, got: {self.actual})"
        if self.status is VerifyStatus.TOO_SMALL:
            return f"{self.path.name} ({self.size} bytes, no checksum, likely truncated)"
        if self.status is VerifyStatus.MISSING:
            return f"{self.path.name} (missing)"
        return f"{self.path.name} ({self.status.value})"

    def raise_for_status(self) -> None:
        if self.status is VerifyStatus.MISMATCHED:
            raise ChecksumMismatch(self.path, str(self.expected), str(self.actual))
        if not self.ok:
            raise VerificationFailed(self.path, self.describe())


def verify(path: Path, database: ChecksumDatabase, *, min_size: int = DEFAULT_MIN_SIZE) -> VerifyResult:
    """Check a local file against the checksum database.

    Files with an entry are hashed and compared. Files without one cannot
    be confirmed; they are accepted as UNKNOWN unless they are smaller than
    ``min_size``, which is the usual shape of a truncated download or an
    HTML error page saved under the artifact's name.
    """
    path = Path(path)
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return VerifyResult(path=path, status=VerifyStatus.MISSING)

    expected = database.expected(path.name)
    if expected is None:
        if size < min_size:
            return VerifyResult(path=path, status=VerifyStatus.TOO_SMALL, size=size)
        return VerifyResult(path=path, status=VerifyStatus.UNKNOWN, size=size)

    actual = file_digest(path, database.algorithm)
    if actual == expected:
        return VerifyResult(path=path, status=VerifyStatus.VERIFIED, size=size, expected=expected, actual=actual)
    return VerifyResult(path=path, status=VerifyStatus.MISMATCHED, size=size, expected=expected, actual=actual)


def report(bus: EventBus, result: VerifyResult) -> None:
    bus.publish(
        VerifyReported(
            occurred_at=utc_now(),
            path=str(result.path),
            status=result.status.value,
            expected=result.expected,
            actual=result.actual,
            size=result.size,
        )
    )


@dataclass
class VerificationSummary:
    verified: list[VerifyResult] = field(default_factory=list)
    unknown: list[VerifyResult] = field(default_factory=list)
    failed: list[VerifyResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.verified) + len(self.unknown) + len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed

    def add(self, result: VerifyResult) -> None:
        if result.status is VerifyStatus.VERIFIED:
            self.verified.append(result)
        elif result.status is VerifyStatus.UNKNOWN:
            self.unknown.append(result)
        else:
            self.failed.append(result)


def verify_directory(
    directory: Path,
    database: ChecksumDatabase,
    *,
    patterns: Iterable[str] = ("*.tar.*", "*.tgz", "*.zip", "*.patch"),
    min_size: int = DEFAULT_MIN_SIZE,
    bus: EventBus | None = None,
) -> VerificationSummary:
    """Verify every downloaded artifact in a directory.

    This is the final sweep after a download stage: it catches files that
    were already present from an earlier run as well as fresh ones.
    """
    seen: set[Path] = set()
    for pattern in patterns:
        for p in Path(directory).glob(pattern):
            # In-progress downloads are not artifacts yet
            if p.is_file() and not p.name.endswith(".part"):
                seen.add(p)

    summary = VerificationSummary()
    for p in sorted(seen):
        result = verify(p, database, min_size=min_size)
        summary.add(result)
        if bus is not None:
            report(bus, result)

    logger.info(
        "Checked %d files: %d verified, %d without checksum, %d failed",
        summary.total,
        len(summary.verified),
        len(summary.unknown),
        len(summary.failed),
    )
    if summary.unknown:
        logger.warning("%d files have no checksum (unable to fully verify)", len(summary.unknown))
    return summary
