from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from rookery_build.adapters.http.fetcher import BatchFetchError
from rookery_build.integration.event_bus import RecordingEventBus
from rookery_build.integration.events import FetchSkipped
from rookery_build.integrity.verify import VerificationFailed
from rookery_build.pipeline.checkpointing import RECORD_TYPE_GLOBAL
from rookery_build.pipeline.config import CheckpointConfig, FetchConfig, PipelineConfig, SourcesConfig
from rookery_build.pipeline.executor import StageOutcome
from rookery_build.pipeline.runner import DOWNLOAD_UNIT, SourceDownloadRunner

from tests.fakes import FakeServer

MANIFEST_URL = "https://lfs.test/wget-list"
CHECKSUMS_URL = "https://lfs.test/md5sums"

FOO = b"foo source " * 200
BAR = b"bar source " * 200
BAZ = b"baz source " * 200


def _md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def _publish(server: FakeServer, packages: dict[str, bytes]) -> None:
    server.files[MANIFEST_URL] = "".join(f"https://ftp.test/{n}\n" for n in packages).encode()
    server.files[CHECKSUMS_URL] = "".join(f"{_md5(b)}  {n}\n" for n, b in packages.items()).encode()
    for name, body in packages.items():
        server.files[f"https://ftp.test/{name}"] = body


def _runner(tmp_path: Path, server: FakeServer) -> tuple[SourceDownloadRunner, RecordingEventBus]:
    cfg = PipelineConfig(
        checkpoints=CheckpointConfig(root=str(tmp_path / "checkpoints")),
        fetch=FetchConfig(max_attempts=2, retry_delay=0.0, concurrency=2),
        sources=SourcesConfig(
            sources_dir=str(tmp_path / "sources"),
            manifest_url=MANIFEST_URL,
            checksums_url=CHECKSUMS_URL,
        ),
    )
    bus = RecordingEventBus()
    runner = SourceDownloadRunner.from_config(cfg, bus=bus, session_factory=server, sleep=lambda _: None)
    return runner, bus


def _package_calls(server: FakeServer) -> list[str]:
    return [u for u in server.urls_called() if u.startswith("https://ftp.test/")]


def test_download_stage_completes_then_skips(tmp_path: Path) -> None:
    server = FakeServer()
    _publish(server, {"foo-1.0.tar.xz": FOO, "bar-2.0.tar.gz": BAR})
    runner, _ = _runner(tmp_path, server)

    assert runner.run() is StageOutcome.COMPLETED
    record = runner.store.get(DOWNLOAD_UNIT)
    assert record is not None and record.record_type == RECORD_TYPE_GLOBAL
    assert (runner.sources_dir / "foo-1.0.tar.xz").read_bytes() == FOO
    assert len(_package_calls(server)) == 2

    assert runner.run() is StageOutcome.SKIPPED
    assert len(_package_calls(server)) == 2


def test_new_checksum_manifest_reruns_only_missing_downloads(tmp_path: Path) -> None:
    server = FakeServer()
    _publish(server, {"foo-1.0.tar.xz": FOO, "bar-2.0.tar.gz": BAR})
    runner, bus = _runner(tmp_path, server)
    runner.run()
    assert runner.store.is_valid(DOWNLOAD_UNIT, runner.checksums_path)

    _publish(server, {"foo-1.0.tar.xz": FOO, "bar-2.0.tar.gz": BAR, "baz-3.0.tar.xz": BAZ})
    runner._refresh_index()
    assert not runner.store.is_valid(DOWNLOAD_UNIT, runner.checksums_path)

    assert runner.run() is StageOutcome.COMPLETED
    assert sorted(_package_calls(server)) == sorted(
        ["https://ftp.test/foo-1.0.tar.xz", "https://ftp.test/bar-2.0.tar.gz", "https://ftp.test/baz-3.0.tar.xz"]
    )
    skipped = {Path(e.destination).name for e in bus.of_type(FetchSkipped)}
    assert {"foo-1.0.tar.xz", "bar-2.0.tar.gz"} <= skipped
    assert runner.store.is_valid(DOWNLOAD_UNIT, runner.checksums_path)


def test_missing_source_invalidates_download_checkpoint(tmp_path: Path) -> None:
    server = FakeServer()
    _publish(server, {"foo-1.0.tar.xz": FOO})
    runner, _ = _runner(tmp_path, server)
    runner.run()

    (runner.sources_dir / "foo-1.0.tar.xz").unlink()

    assert runner.run() is StageOutcome.COMPLETED
    assert (runner.sources_dir / "foo-1.0.tar.xz").exists()
    assert _package_calls(server).count("https://ftp.test/foo-1.0.tar.xz") == 2


def test_failed_download_leaves_no_checkpoint(tmp_path: Path) -> None:
    server = FakeServer()
    _publish(server, {"foo-1.0.tar.xz": FOO, "bar-2.0.tar.gz": BAR})
    del server.files["https://ftp.test/bar-2.0.tar.gz"]
    runner, _ = _runner(tmp_path, server)

    with pytest.raises(BatchFetchError):
        runner.run()
    assert runner.store.get(DOWNLOAD_UNIT) is None


def test_verify_sweep_removes_truncated_strays(tmp_path: Path) -> None:
    server = FakeServer()
    _publish(server, {"foo-1.0.tar.xz": FOO})
    runner, _ = _runner(tmp_path, server)
    runner.sources_dir.mkdir(parents=True)
    stray = runner.sources_dir / "stray-0.1.tar.gz"
    stray.write_bytes(b"<html>")

    with pytest.raises(VerificationFailed):
        runner.run()
    assert not stray.exists()
    assert runner.store.get(DOWNLOAD_UNIT) is None

    assert runner.run() is StageOutcome.COMPLETED


def test_stale_index_is_used_when_refresh_fails(tmp_path: Path) -> None:
    server = FakeServer()
    _publish(server, {"foo-1.0.tar.xz": FOO})
    runner, _ = _runner(tmp_path, server)
    runner.run()

    del server.files[MANIFEST_URL]
    del server.files[CHECKSUMS_URL]

    assert runner.run() is StageOutcome.SKIPPED
