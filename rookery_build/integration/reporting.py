from __future__ import annotations

import logging

from rookery_build.integration.event_bus import EventBus
from rookery_build.integration.events import (
    BatchCancelled,
    CheckpointCorrupt,
    CheckpointCreated,
    CheckpointInvalidated,
    CheckpointSkipped,
    CheckpointsWiped,
    FetchCompleted,
    FetchFailed,
    FetchRetry,
    FetchSkipped,
    StageFailed,
    StageStarted,
    VerifyReported,
)


logger = logging.getLogger("rookery_build.report")


def _on_skipped(e: CheckpointSkipped) -> None:
    logger.info("Skipping %s (stage: %s, checkpoint valid)", e.unit, e.stage)


def _on_created(e: CheckpointCreated) -> None:
    logger.info("Checkpoint created: %s (stage: %s, hash: %s)", e.unit, e.stage, e.input_hash)


def _on_invalidated(e: CheckpointInvalidated) -> None:
    logger.warning("Checkpoint removed: %s (%s)", e.unit, e.reason or "no reason given")


def _on_corrupt(e: CheckpointCorrupt) -> None:
    logger.warning("Unreadable checkpoint for %s at %s, treating as not done: %s", e.unit, e.path, e.error)


def _on_wiped(e: CheckpointsWiped) -> None:
    logger.warning("All checkpoints cleared under %s (%d removed)", e.root, e.removed)


def _on_stage_started(e: StageStarted) -> None:
    logger.info("Building %s (stage: %s)...", e.unit, e.stage)


def _on_stage_failed(e: StageFailed) -> None:
    logger.error("Build failed for %s (stage: %s), no checkpoint created: %s", e.unit, e.stage, e.error)


def _on_fetch_skipped(e: FetchSkipped) -> None:
    logger.info("[SKIP] %s (%s)", e.destination, e.reason)


def _on_fetch_retry(e: FetchRetry) -> None:
    logger.warning(
        "Download of %s from %s failed (attempt %d/%d): %s",
        e.destination,
        e.url,
        e.attempt,
        e.max_attempts,
        e.error,
    )


def _on_fetch_completed(e: FetchCompleted) -> None:
    if e.resumed_from:
        logger.info("[OK] %s (%d bytes, resumed at %d)", e.destination, e.bytes_transferred, e.resumed_from)
    else:
        logger.info("[OK] %s (%d bytes)", e.destination, e.bytes_transferred)


def _on_fetch_failed(e: FetchFailed) -> None:
    logger.error("[FAIL] %s: %s", e.destination, e.error)


def _on_batch_cancelled(e: BatchCancelled) -> None:
    logger.error("Batch aborted, %d downloads not started: %s", len(e.not_started), ", ".join(e.not_started))


def _on_verify(e: VerifyReported) -> None:
    if e.status == "verified":
        logger.debug("[VERIFIED] %s", e.path)
    elif e.status == "unknown":
        logger.info("[OK] %s (%s bytes, no checksum available)", e.path, e.size)
    elif e.status == "mismatched":
        logger.error("[FAIL] %s checksum mismatch: expected %s, got %s", e.path, e.expected, e.actual)
    else:
        logger.error("[FAIL] %s (%s, %s bytes)", e.path, e.status, e.size)


def log_events(bus: EventBus) -> None:
    """Subscribe operator-facing log lines for every core event."""
    bus.subscribe(CheckpointSkipped, _on_skipped)
    bus.subscribe(CheckpointCreated, _on_created)
    bus.subscribe(CheckpointInvalidated, _on_invalidated)
    bus.subscribe(CheckpointCorrupt, _on_corrupt)
    bus.subscribe(CheckpointsWiped, _on_wiped)
    bus.subscribe(StageStarted, _on_stage_started)
    bus.subscribe(StageFailed, _on_stage_failed)
    bus.subscribe(FetchSkipped, _on_fetch_skipped)
    bus.subscribe(FetchRetry, _on_fetch_retry)
    bus.subscribe(FetchCompleted, _on_fetch_completed)
    bus.subscribe(FetchFailed, _on_fetch_failed)
    bus.subscribe(BatchCancelled, _on_batch_cancelled)
    bus.subscribe(VerifyReported, _on_verify)
