from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class DomainEvent:
    """Base type for all reporting events."""

    occurred_at: datetime


# --- Checkpoint events -------------------------------------------------------


@dataclass(frozen=True)
class CheckpointSkipped(DomainEvent):
    unit: str
    stage: str
    input_hash: str


@dataclass(frozen=True)
class CheckpointCreated(DomainEvent):
    unit: str
    stage: str
    input_hash: str
    record_type: str


@dataclass(frozen=True)
class CheckpointInvalidated(DomainEvent):
    unit: str
    reason: str


@dataclass(frozen=True)
class CheckpointCorrupt(DomainEvent):
    unit: str
    path: str
    error: str


@dataclass(frozen=True)
class CheckpointsWiped(DomainEvent):
    root: str
    removed: int


# --- Stage events ------------------------------------------------------------


@dataclass(frozen=True)
class StageStarted(DomainEvent):
    unit: str
    stage: str


@dataclass(frozen=True)
class StageFailed(DomainEvent):
    unit: str
    stage: str
    error: str


# --- Fetch events ------------------------------------------------------------


@dataclass(frozen=True)
class FetchSkipped(DomainEvent):
    destination: str
    reason: str


@dataclass(frozen=True)
class FetchRetry(DomainEvent):
    url: str
    destination: str
    attempt: int
    max_attempts: int
    error: str


@dataclass(frozen=True)
class FetchCompleted(DomainEvent):
    url: str
    destination: str
    bytes_transferred: int
    resumed_from: int


@dataclass(frozen=True)
class FetchFailed(DomainEvent):
    destination: str
    error: str


@dataclass(frozen=True)
class BatchCancelled(DomainEvent):
    not_started: tuple[str, ...]


# --- Verification events -----------------------------------------------------


@dataclass(frozen=True)
class VerifyReported(DomainEvent):
    path: str
    status: str
    expected: str | None = None
    actual: str | None = None
    size: int | None = None
