from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from rookery_build.adapters.http.fetcher import DownloadTarget, FetchError, Fetcher
from rookery_build.integration.event_bus import EventBus, InMemoryEventBus
from rookery_build.integrity.checksums import ChecksumDatabase
from rookery_build.integrity.verify import VerificationFailed, verify_directory
from rookery_build.pipeline.checkpointing import RECORD_TYPE_GLOBAL, CheckpointStore
from rookery_build.pipeline.config import PipelineConfig
from rookery_build.pipeline.executor import StageExecutor, StageOutcome
from rookery_build.pipeline.progress_ui import Ui, track_fetch_progress
from rookery_build.pipeline.sources import parse_manifest

logger = logging.getLogger(__name__)

DOWNLOAD_UNIT = "download-complete"
DOWNLOAD_STAGE = "download"


@dataclass
class SourceDownloadRunner:
    """The "fetch all sources" stage.

    Its single sentinel checkpoint is hashed over the checksum manifest,
    so a new upstream manifest (a package added or bumped) re-runs the
    stage while files that are already complete are skipped one by one.
    """

    config: PipelineConfig
    store: CheckpointStore
    fetcher: Fetcher
    sources_dir: Path
    ui: Ui | None = None

    @classmethod
    def from_config(
        cls,
        cfg: PipelineConfig,
        *,
        bus: EventBus | None = None,
        ui: Ui | None = None,
        **fetcher_overrides: Any,
    ) -> "SourceDownloadRunner":
        bus = bus if bus is not None else InMemoryEventBus()
        store = CheckpointStore.from_config(cfg.checkpoints, bus)
        fetcher = Fetcher.from_config(cfg.fetch, bus=bus, min_file_size=cfg.verify.min_file_size, **fetcher_overrides)
        return cls(
            config=cfg,
            store=store,
            fetcher=fetcher,
            sources_dir=cfg.sources.resolve_sources_dir(),
            ui=ui,
        )

    @property
    def manifest_path(self) -> Path:
        return self.sources_dir / self.config.sources.manifest_name

    @property
    def checksums_path(self) -> Path:
        return self.sources_dir / self.config.sources.checksums_name

    def _refresh_index(self) -> None:
        src = self.config.sources
        for url, path in ((src.manifest_url, self.manifest_path), (src.checksums_url, self.checksums_path)):
            try:
                self.fetcher.fetch_one(DownloadTarget(urls=(url,), destination=path), refresh=True)
            except FetchError:
                if not path.exists():
                    raise
                logger.warning("Could not refresh %s, using the local copy", path.name)

    def load_database(self) -> ChecksumDatabase:
        return ChecksumDatabase.from_sources(
            self.checksums_path,
            self.config.verify.supplementary_paths(),
            algorithm=self.config.verify.algorithm,
        )

    def load_targets(self, database: ChecksumDatabase) -> list[DownloadTarget]:
        return parse_manifest(
            self.manifest_path.read_text(encoding="utf-8"),
            self.sources_dir,
            mirrors=self.config.sources.mirrors,
            database=database,
        )

    def _download_and_verify(self, targets: list[DownloadTarget], database: ChecksumDatabase) -> None:
        if self.ui is not None:
            track_fetch_progress(self.ui, self.store.bus, total=len(targets))

        batch = self.fetcher.fetch_all(targets, policy=self.config.fetch.policy)
        batch.raise_for_failures()

        summary = verify_directory(
            self.sources_dir,
            database,
            patterns=self.config.verify.patterns,
            min_size=self.config.verify.min_file_size,
            bus=self.store.bus,
        )
        if not summary.ok:
            for result in summary.failed:
                # Never leave a known-bad file where the next run would reuse it
                result.path.unlink(missing_ok=True)
            raise VerificationFailed(
                self.sources_dir,
                "; ".join(r.describe() for r in summary.failed) + " (removed, re-run to fetch again)",
            )

    def run(self, *, force: bool = False) -> StageOutcome:
        self.sources_dir.mkdir(parents=True, exist_ok=True)
        logger.info("Target directory: %s", self.sources_dir)

        self._refresh_index()
        database = self.load_database()
        targets = self.load_targets(database)
        logger.info("Found %d artifacts to download", len(targets))

        missing = [t.name for t in targets if not t.destination.exists()]
        if missing and not force:
            self.store.invalidate(DOWNLOAD_UNIT, reason=f"{len(missing)} required sources missing")

        executor = StageExecutor(self.store)
        return executor.run(
            DOWNLOAD_UNIT,
            DOWNLOAD_STAGE,
            lambda: self._download_and_verify(targets, database),
            self.checksums_path,
            force=force,
            record_type=RECORD_TYPE_GLOBAL,
        )
