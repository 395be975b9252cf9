from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _expand(path: str) -> Path:
    return Path(os.path.expanduser(path)).resolve()


def _read_toml(path: Path) -> dict[str, Any]:
    """Read TOML into a dict, supporting Python 3.10+.

    Uses tomllib when available, falls back to tomli.
    """
    data = path.read_bytes()
    try:
        import tomllib  # type: ignore[attr-defined]

        return tomllib.loads(data.decode("utf-8"))
    except ModuleNotFoundError:
        import tomli  # type: ignore[import-not-found]

        return tomli.loads(data.decode("utf-8"))


class BatchPolicy(str, Enum):
    """How a batch of downloads reacts to one member failing."""

    FAIL_FAST = "fail_fast"
    BEST_EFFORT = "best_effort"


class CheckpointConfig(BaseModel):
    root: str = Field(
        default="~/rookery/.checkpoints",
        description="Directory holding one record file per unit plus metadata.txt.",
    )
    hash_algorithm: str = Field(default="sha256", description="hashlib name used for input artifacts.")
    producer: str = Field(default="unknown", description="Recorded as PRODUCER, e.g. the service name.")
    history: bool = Field(default=False, description="Append every transition to history.jsonl.")

    def resolve_root(self) -> Path:
        return _expand(self.root)


class FetchConfig(BaseModel):
    concurrency: int = Field(default=6, ge=1, description="Parallel downloads in a batch.")
    max_attempts: int = Field(default=3, ge=1, description="Attempts per URL before moving on.")
    retry_delay: float = Field(default=5.0, ge=0.0, description="Fixed delay between attempts (seconds).")
    connect_timeout: float = Field(default=20.0, gt=0.0)
    stall_timeout: float = Field(default=30.0, gt=0.0, description="Abort an attempt with no data for this long.")
    attempt_timeout: float = Field(default=1800.0, gt=0.0, description="Hard wall-clock cap per attempt.")
    chunk_size: int = Field(default=64 * 1024, ge=1024)
    user_agent: str = Field(default="rookery-build")
    policy: BatchPolicy = Field(default=BatchPolicy.FAIL_FAST)


class VerifyConfig(BaseModel):
    algorithm: str = Field(default="md5", description="Algorithm of the checksum manifest entries.")
    min_file_size: int = Field(
        default=1024,
        ge=0,
        description="Files without a checksum entry smaller than this are treated as truncated.",
    )
    supplementary_checksums: list[str] = Field(
        default_factory=list,
        description="Extra checksum files ('<hex>  <filename>' lines) for artifacts missing upstream.",
    )
    patterns: list[str] = Field(default_factory=lambda: ["*.tar.*", "*.tgz", "*.zip", "*.patch"])

    def supplementary_paths(self) -> list[Path]:
        return [_expand(p) for p in self.supplementary_checksums]


class SourcesConfig(BaseModel):
    sources_dir: str = Field(default="~/rookery/sources")
    manifest_url: str = Field(
        default="https://www.linuxfromscratch.org/lfs/downloads/12.4/wget-list",
        description="List of artifact URLs, one artifact per line.",
    )
    checksums_url: str = Field(
        default="https://www.linuxfromscratch.org/lfs/downloads/12.4/md5sums",
        description="Authoritative checksum manifest.",
    )
    manifest_name: str = Field(default="wget-list")
    checksums_name: str = Field(default="md5sums")
    mirrors: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Extra candidate URLs per artifact filename, tried after the manifest's own.",
    )

    def resolve_sources_dir(self) -> Path:
        return _expand(self.sources_dir)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    log_dir: str | None = Field(default=None)

    @field_validator("level")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.strip().upper()


class PipelineConfig(BaseModel):
    checkpoints: CheckpointConfig = Field(default_factory=CheckpointConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    verify: VerifyConfig = Field(default_factory=VerifyConfig)
    sources: SourcesConfig = Field(default_factory=SourcesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, path: Path) -> "PipelineConfig":
        raw = _read_toml(path)
        return cls.model_validate(raw)

    @classmethod
    def load_or_default(cls, path: Path | None) -> "PipelineConfig":
        if path is None or not path.exists():
            return cls()
        return cls.load(path)
