from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping

from rookery_build.common.hashing import SENTINEL_HASH, file_digest
from rookery_build.common.time_utils import from_epoch, parse_iso8601, utc_now
from rookery_build.integration.event_bus import EventBus, InMemoryEventBus
from rookery_build.integration.events import (
    CheckpointCorrupt,
    CheckpointCreated,
    CheckpointInvalidated,
    CheckpointSkipped,
    CheckpointsWiped,
)
from rookery_build.pipeline.config import CheckpointConfig


logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = "1.0"
RECORD_SUFFIX = ".checkpoint"
METADATA_FILE = "metadata.txt"
HISTORY_FILE = "history.jsonl"

RECORD_TYPE_PACKAGE = "package"
RECORD_TYPE_GLOBAL = "global"

_UNIT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")

ArtifactResolver = Callable[[str], "Path | None"]


class RecordCorrupt(ValueError):
    """A checkpoint file exists but cannot be parsed."""


class ArtifactMissing(RuntimeError):
    def __init__(self, unit: str, path: Path) -> None:
        super().__init__(f"Input artifact for {unit} not found: {path}")
        self.unit = unit
        self.path = path


class WipeNotConfirmed(RuntimeError):
    pass


def validate_unit_name(unit: str) -> str:
    if not _UNIT_RE.match(unit or ""):
        raise ValueError(
            f"Invalid unit name {unit!r}: use letters, digits and '._+-', starting with a letter or digit"
        )
    return unit


def validate_stage_label(stage: str) -> str:
    if "\n" in stage or "\r" in stage:
        raise ValueError(f"Invalid stage label {stage!r}: must be a single line")
    if stage != stage.strip():
        raise ValueError(f"Invalid stage label {stage!r}: leading or trailing whitespace is not kept")
    return stage


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


def _parse_fields(text: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep or not key.strip():
            raise RecordCorrupt(f"Malformed line: {raw!r}")
        out[key.strip()] = value.strip()
    return out


@dataclass(frozen=True)
class CheckpointRecord:
    """The persisted fact that a unit of work completed against one input.

    On disk this is a flat KEY=VALUE file. Records written by the older
    shell tooling (PACKAGE=, SERVICE_NAME=) parse as well; unknown keys
    are carried in ``extra`` and written back unchanged.
    """

    unit: str
    stage: str
    input_hash: str
    timestamp: datetime
    producer: str = "unknown"
    version: str = CHECKPOINT_VERSION
    record_type: str = RECORD_TYPE_PACKAGE
    extra: Mapping[str, str] = field(default_factory=dict)

    @property
    def epoch(self) -> int:
        return int(self.timestamp.timestamp())

    @property
    def is_sentinel(self) -> bool:
        return self.input_hash == SENTINEL_HASH

    @property
    def is_global(self) -> bool:
        return self.record_type == RECORD_TYPE_GLOBAL

    def render(self) -> str:
        lines = [
            f"UNIT={self.unit}",
            f"BUILD_STAGE={self.stage}",
            f"SOURCE_HASH={self.input_hash}",
            f"TIMESTAMP={self.timestamp.isoformat()}",
            f"EPOCH={self.epoch}",
            f"PRODUCER={self.producer}",
            f"CHECKPOINT_VERSION={self.version}",
        ]
        if self.record_type != RECORD_TYPE_PACKAGE:
            lines.append(f"CHECKPOINT_TYPE={self.record_type}")
        for key, value in sorted(self.extra.items()):
            lines.append(f"{key}={value}")
        return "\n".join(lines) + "\n"

    @classmethod
    def parse(cls, text: str) -> "CheckpointRecord":
        fields = _parse_fields(text)
        unit = fields.pop("UNIT", "") or fields.pop("PACKAGE", "")
        fields.pop("PACKAGE", None)
        stage = fields.pop("BUILD_STAGE", None)
        input_hash = fields.pop("SOURCE_HASH", "")
        if not unit or stage is None or not input_hash:
            raise RecordCorrupt("Missing one of UNIT, BUILD_STAGE, SOURCE_HASH")

        epoch_raw = fields.pop("EPOCH", None)
        ts_raw = fields.pop("TIMESTAMP", None)
        if epoch_raw is not None:
            try:
                timestamp = from_epoch(int(epoch_raw))
            except (ValueError, OverflowError, OSError) as exc:
                raise RecordCorrupt(f"Bad EPOCH value: {epoch_raw!r}") from exc
        elif ts_raw:
            try:
                timestamp = parse_iso8601(ts_raw)
            except ValueError as exc:
                raise RecordCorrupt(f"Bad TIMESTAMP value: {ts_raw!r}") from exc
        else:
            raise RecordCorrupt("Missing EPOCH and TIMESTAMP")

        producer = fields.pop("PRODUCER", "") or fields.pop("SERVICE_NAME", "") or "unknown"
        version = fields.pop("CHECKPOINT_VERSION", CHECKPOINT_VERSION)
        record_type = fields.pop("CHECKPOINT_TYPE", RECORD_TYPE_PACKAGE)
        return cls(
            unit=unit,
            stage=stage,
            input_hash=input_hash,
            timestamp=timestamp,
            producer=producer,
            version=version,
            record_type=record_type,
            extra=fields,
        )


@dataclass(frozen=True)
class CheckpointStatus:
    unit: str
    stage: str
    valid_now: bool
    timestamp: datetime | None
    record_type: str | None = None
    corrupt: bool = False


@dataclass(frozen=True)
class StoreMetadata:
    version: str
    created: str


@dataclass
class CheckpointStore:
    """Directory-backed store of checkpoint records, one file per unit.

    Validity is a pure function of the stored record and the current bytes
    of the input artifact: there is no expiry. Unreadable records count as
    "not done" so the worst outcome of a damaged store is redoing work.

    Writes go through a temp file and ``os.replace`` so concurrent readers
    (status listings) never see a half-written record. Concurrent writers
    are not supported.
    """

    root: Path
    bus: EventBus = field(default_factory=InMemoryEventBus)
    hash_algorithm: str = "sha256"
    producer: str = "unknown"
    history: bool = False

    @classmethod
    def from_config(cls, cfg: CheckpointConfig, bus: EventBus | None = None) -> "CheckpointStore":
        return cls(
            root=cfg.resolve_root(),
            bus=bus if bus is not None else InMemoryEventBus(),
            hash_algorithm=cfg.hash_algorithm,
            producer=cfg.producer,
            history=cfg.history,
        )

    # ------------------------------------------------------------------
    # Paths and helpers
    # ------------------------------------------------------------------

    def record_path(self, unit: str) -> Path:
        return self.root / f"{validate_unit_name(unit)}{RECORD_SUFFIX}"

    @property
    def metadata_path(self) -> Path:
        return self.root / METADATA_FILE

    @property
    def history_path(self) -> Path:
        return self.root / HISTORY_FILE

    def init(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        if not self.metadata_path.exists():
            _atomic_write_text(
                self.metadata_path,
                f"CHECKPOINT_VERSION={CHECKPOINT_VERSION}\nCREATED={utc_now().isoformat()}\n",
            )

    def metadata(self) -> StoreMetadata | None:
        try:
            text = self.metadata_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        values: dict[str, str] = {}
        for line in text.splitlines():
            # Older stores used "Version: 1.0" style lines
            for sep in ("=", ":"):
                key, found, value = line.partition(sep)
                if found:
                    values[key.strip().upper()] = value.strip()
                    break
        return StoreMetadata(
            version=values.get("CHECKPOINT_VERSION") or values.get("VERSION", "unknown"),
            created=values.get("CREATED", "unknown"),
        )

    def hash_artifact(self, artifact: Path) -> str | None:
        try:
            return file_digest(artifact, self.hash_algorithm)
        except (FileNotFoundError, IsADirectoryError):
            return None
        except OSError as exc:
            logger.warning("Cannot read input artifact %s: %s", artifact, exc)
            return None

    def _append_history(self, action: str, unit: str, **details: Any) -> None:
        if not self.history:
            return
        entry = {"at": utc_now().isoformat(), "action": action, "unit": unit, **details}
        self.root.mkdir(parents=True, exist_ok=True)
        with self.history_path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry, sort_keys=True) + "\n")

    def _read(self, path: Path, unit: str) -> CheckpointRecord:
        try:
            record = CheckpointRecord.parse(path.read_text(encoding="utf-8"))
        except UnicodeDecodeError as exc:
            raise RecordCorrupt(f"Not a text file: {exc}") from exc
        if record.unit != unit:
            raise RecordCorrupt(f"File for {unit} holds a record for {record.unit}")
        return record

    def _load(self, unit: str) -> CheckpointRecord | None:
        path = self.record_path(unit)
        try:
            return self._read(path, unit)
        except FileNotFoundError:
            return None
        except (RecordCorrupt, OSError) as exc:
            logger.warning("Ignoring corrupt checkpoint %s: %s", path, exc)
            self.bus.publish(CheckpointCorrupt(occurred_at=utc_now(), unit=unit, path=str(path), error=str(exc)))
            return None

    def _valid_record(self, unit: str, input_artifact: Path | None) -> CheckpointRecord | None:
        record = self._load(unit)
        if record is None:
            return None
        if input_artifact is None:
            return record
        current = self.hash_artifact(Path(input_artifact))
        if current is None:
            logger.info("Checkpoint for %s is stale: input artifact %s is missing", unit, input_artifact)
            return None
        if current != record.input_hash:
            logger.info(
                "Checkpoint for %s is stale: input changed (recorded %s, now %s)",
                unit,
                record.input_hash,
                current,
            )
            return None
        return record

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get(self, unit: str) -> CheckpointRecord | None:
        return self._load(unit)

    def is_valid(self, unit: str, input_artifact: Path | None = None) -> bool:
        return self._valid_record(unit, input_artifact) is not None

    def should_skip(self, unit: str, input_artifact: Path | None = None, *, force: bool = False) -> bool:
        """Decide whether a unit's action can be skipped.

        With ``force`` the existing record is deleted first, so the unit is
        treated as not done for this run and a fresh ``create`` follows.
        """
        if force:
            self.invalidate(unit, reason="forced re-run")
            return False
        record = self._valid_record(unit, input_artifact)
        if record is None:
            return False
        self.bus.publish(
            CheckpointSkipped(
                occurred_at=utc_now(),
                unit=unit,
                stage=record.stage,
                input_hash=record.input_hash,
            )
        )
        return True

    def create(
        self,
        unit: str,
        stage: str = "default",
        input_artifact: Path | None = None,
        *,
        record_type: str | None = None,
    ) -> CheckpointRecord:
        path = self.record_path(unit)
        validate_stage_label(stage)
        if input_artifact is not None:
            digest = self.hash_artifact(Path(input_artifact))
            if digest is None:
                raise ArtifactMissing(unit, Path(input_artifact))
        else:
            digest = SENTINEL_HASH

        if record_type is None:
            record_type = RECORD_TYPE_PACKAGE if input_artifact is not None else RECORD_TYPE_GLOBAL

        record = CheckpointRecord(
            unit=unit,
            stage=stage,
            input_hash=digest,
            timestamp=utc_now(),
            producer=self.producer,
            record_type=record_type,
        )
        self.init()
        _atomic_write_text(path, record.render())
        self._append_history("created", unit, stage=stage, input_hash=digest, record_type=record_type)
        self.bus.publish(
            CheckpointCreated(
                occurred_at=utc_now(),
                unit=unit,
                stage=stage,
                input_hash=digest,
                record_type=record_type,
            )
        )
        return record

    def invalidate(self, unit: str, reason: str = "") -> bool:
        path = self.record_path(unit)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        self._append_history("invalidated", unit, reason=reason)
        self.bus.publish(CheckpointInvalidated(occurred_at=utc_now(), unit=unit, reason=reason))
        return True

    def invalidate_all(self, confirm: bool = False) -> int:
        """Remove every checkpoint and start a fresh store.

        Reserved for full pipeline resets; refuses to run unless
        ``confirm`` is true. Returns the number of records removed.
        """
        if not confirm:
            raise WipeNotConfirmed("Refusing to clear all checkpoints without confirmation")
        removed = 0
        if self.root.exists():
            removed = sum(1 for _ in self.root.glob(f"*{RECORD_SUFFIX}"))
            shutil.rmtree(self.root)
        self.init()
        self._append_history("wiped", "*", removed=removed)
        self.bus.publish(CheckpointsWiped(occurred_at=utc_now(), root=str(self.root), removed=removed))
        return removed

    def enumerate(self, resolve_artifact: ArtifactResolver | None = None) -> Iterator[CheckpointStatus]:
        """Yield the status of every record, sorted by unit name.

        Read-only and lazy; each call lists the directory afresh. When
        ``resolve_artifact`` returns a path the record is checked against it
        exactly as ``is_valid`` would. Otherwise only sentinel records (no
        input hash) are valid; a hashed record with no input to compare is not.
        """
        if not self.root.is_dir():
            return
        for path in sorted(self.root.glob(f"*{RECORD_SUFFIX}")):
            unit = path.name[: -len(RECORD_SUFFIX)]
            try:
                record = self._read(path, unit)
            except FileNotFoundError:
                continue
            except (RecordCorrupt, OSError) as exc:
                logger.warning("Ignoring corrupt checkpoint %s: %s", path, exc)
                yield CheckpointStatus(unit=unit, stage="?", valid_now=False, timestamp=None, corrupt=True)
                continue

            artifact = resolve_artifact(unit) if resolve_artifact is not None else None
            if artifact is not None:
                valid = self.hash_artifact(Path(artifact)) == record.input_hash
            else:
                valid = record.is_sentinel
            yield CheckpointStatus(
                unit=unit,
                stage=record.stage,
                valid_now=valid,
                timestamp=record.timestamp,
                record_type=record.record_type,
            )
