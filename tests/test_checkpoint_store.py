from __future__ import annotations

import json
from pathlib import Path

import pytest

from rookery_build.common.hashing import file_digest
from rookery_build.integration.event_bus import RecordingEventBus
from rookery_build.integration.events import (
    CheckpointCorrupt,
    CheckpointCreated,
    CheckpointInvalidated,
    CheckpointSkipped,
)
from rookery_build.pipeline.checkpointing import (
    RECORD_TYPE_GLOBAL,
    RECORD_TYPE_PACKAGE,
    ArtifactMissing,
    CheckpointRecord,
    CheckpointStore,
    RecordCorrupt,
    WipeNotConfirmed,
    validate_unit_name,
)


def _store(tmp_path: Path, **kwargs) -> tuple[CheckpointStore, RecordingEventBus]:
    bus = RecordingEventBus()
    return CheckpointStore(root=tmp_path / "checkpoints", bus=bus, **kwargs), bus


def _artifact(tmp_path: Path, name: str, data: bytes) -> Path:
    p = tmp_path / "sources" / name
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(data)
    return p


def test_create_then_valid_until_input_changes(tmp_path: Path) -> None:
    store, bus = _store(tmp_path)
    tarball = _artifact(tmp_path, "coreutils-9.7.tar.xz", b"coreutils v1")

    assert not store.is_valid("coreutils", tarball)
    record = store.create("coreutils", "chapter8", tarball)

    assert record.input_hash == file_digest(tarball, "sha256")
    assert record.record_type == RECORD_TYPE_PACKAGE
    assert store.is_valid("coreutils", tarball)
    assert store.should_skip("coreutils", tarball)

    tarball.write_bytes(b"coreutils v2")
    assert not store.is_valid("coreutils", tarball)
    assert not store.should_skip("coreutils", tarball)
    assert [e.unit for e in bus.of_type(CheckpointCreated)] == ["coreutils"]
    assert len(bus.of_type(CheckpointSkipped)) == 1


def test_create_is_idempotent_for_same_input(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    tarball = _artifact(tmp_path, "bash-5.3.tar.gz", b"bash")

    first = store.create("bash", "chapter8", tarball)
    second = store.create("bash", "chapter8", tarball)

    assert first.input_hash == second.input_hash
    assert store.is_valid("bash", tarball)
    assert len(list(store.root.glob("*.checkpoint"))) == 1


def test_record_without_input_uses_sentinel_and_is_global(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    record = store.create("setup-users")

    assert record.is_sentinel
    assert record.record_type == RECORD_TYPE_GLOBAL
    assert store.is_valid("setup-users")


def test_missing_artifact_is_invalid_and_cannot_be_recorded(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    tarball = _artifact(tmp_path, "gcc-15.2.0.tar.xz", b"gcc")
    store.create("gcc", "pass1", tarball)

    tarball.unlink()
    assert not store.is_valid("gcc", tarball)
    with pytest.raises(ArtifactMissing):
        store.create("gcc", "pass1", tarball)


def test_force_deletes_record_and_does_not_skip(tmp_path: Path) -> None:
    store, bus = _store(tmp_path)
    tarball = _artifact(tmp_path, "zlib-1.3.1.tar.gz", b"zlib")
    store.create("zlib", "chapter8", tarball)

    assert not store.should_skip("zlib", tarball, force=True)
    assert store.get("zlib") is None
    assert [e.reason for e in bus.of_type(CheckpointInvalidated)] == ["forced re-run"]


def test_invalidate_is_idempotent(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    store.create("m4")

    assert store.invalidate("m4")
    assert not store.invalidate("m4")
    assert not store.is_valid("m4")


def test_corrupt_record_counts_as_not_done(tmp_path: Path) -> None:
    store, bus = _store(tmp_path)
    store.init()
    store.record_path("perl").write_text("this is not a record\n")

    assert store.get("perl") is None
    assert not store.is_valid("perl")
    assert len(bus.of_type(CheckpointCorrupt)) == 1


def test_record_for_another_unit_is_corrupt(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    store.create("sed")
    text = store.record_path("sed").read_text()
    store.record_path("grep").write_text(text)

    assert store.get("grep") is None


def test_record_render_parse() -> None:
    text = (
        "UNIT=binutils\n"
        "BUILD_STAGE=pass1\n"
        "SOURCE_HASH=abc123\n"
        "TIMESTAMP=2026-01-02T03:04:05+00:00\n"
        "EPOCH=1767323045\n"
        "PRODUCER=build-basesystem\n"
        "CHECKPOINT_VERSION=1.0\n"
        "BUILD_HOST=builder01\n"
    )
    record = CheckpointRecord.parse(text)

    assert record.unit == "binutils"
    assert record.stage == "pass1"
    assert record.producer == "build-basesystem"
    assert record.epoch == 1767323045
    assert record.extra == {"BUILD_HOST": "builder01"}
    assert CheckpointRecord.parse(record.render()) == record


def test_parses_records_written_by_shell_tooling() -> None:
    text = (
        "PACKAGE=download-complete\n"
        "BUILD_STAGE=download\n"
        "SOURCE_HASH=d41d8cd98f00b204e9800998ecf8427e\n"
        "TIMESTAMP=2025-11-03T10:00:00Z\n"
        "SERVICE_NAME=download-sources\n"
        "CHECKPOINT_VERSION=1.0\n"
        "CHECKPOINT_TYPE=global\n"
    )
    record = CheckpointRecord.parse(text)

    assert record.unit == "download-complete"
    assert record.producer == "download-sources"
    assert record.is_global
    assert record.timestamp.year == 2025


def test_parse_rejects_incomplete_records() -> None:
    with pytest.raises(RecordCorrupt):
        CheckpointRecord.parse("UNIT=x\nBUILD_STAGE=y\n")
    with pytest.raises(RecordCorrupt):
        CheckpointRecord.parse("UNIT=x\nBUILD_STAGE=y\nSOURCE_HASH=z\nEPOCH=soon\n")


@pytest.mark.parametrize("name", ["", "../etc", "a/b", "-rf", "has space"])
def test_unit_names_are_validated(name: str) -> None:
    with pytest.raises(ValueError):
        validate_unit_name(name)


def test_writes_leave_no_temp_files(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    for unit in ("a", "b", "c"):
        store.create(unit)

    names = sorted(p.name for p in store.root.iterdir())
    assert names == ["a.checkpoint", "b.checkpoint", "c.checkpoint", "metadata.txt"]


def test_metadata_written_on_first_create(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    assert store.metadata() is None

    store.create("linux-headers")
    meta = store.metadata()
    assert meta is not None
    assert meta.version == "1.0"


def test_invalidate_all_requires_confirmation(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    store.create("a")
    store.create("b")

    with pytest.raises(WipeNotConfirmed):
        store.invalidate_all()
    assert store.is_valid("a")

    assert store.invalidate_all(confirm=True) == 2
    assert list(store.enumerate()) == []
    assert store.metadata() is not None


def test_enumerate_reports_validity_sorted(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    tar_a = _artifact(tmp_path, "acl-2.3.2.tar.xz", b"acl")
    tar_b = _artifact(tmp_path, "bc-7.0.3.tar.xz", b"bc")
    store.create("bc", "chapter8", tar_b)
    store.create("acl", "chapter8", tar_a)
    store.create("download-complete")
    store.record_path("broken").write_text("garbage\n")
    tar_b.write_bytes(b"bc changed")

    artifacts = {"acl": tar_a, "bc": tar_b}
    statuses = list(store.enumerate(artifacts.get))

    assert [s.unit for s in statuses] == ["acl", "bc", "broken", "download-complete"]
    by_unit = {s.unit: s for s in statuses}
    assert by_unit["acl"].valid_now
    assert not by_unit["bc"].valid_now
    assert by_unit["broken"].corrupt and not by_unit["broken"].valid_now
    assert by_unit["download-complete"].valid_now


def test_history_log_records_transitions(tmp_path: Path) -> None:
    store, _ = _store(tmp_path, history=True)
    store.create("xz")
    store.invalidate("xz", reason="source bumped")

    lines = [json.loads(line) for line in store.history_path.read_text().splitlines()]
    assert [(e["action"], e["unit"]) for e in lines] == [("created", "xz"), ("invalidated", "xz")]
    assert lines[1]["reason"] == "source bumped"


def test_changed_source_rebuilds_only_that_package(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    tarball = _artifact(tmp_path, "coreutils-9.7.tar.xz", b"original")
    store.create("coreutils", "chapter8", tarball)

    # Same filename, different bytes (e.g. a re-rolled tarball)
    tarball.write_bytes(b"patched")
    assert not store.should_skip("coreutils", tarball)
    store.create("coreutils", "chapter8", tarball)

    assert store.get("coreutils").input_hash == file_digest(tarball, "sha256")
    assert store.should_skip("coreutils", tarball)


@pytest.mark.parametrize("stage", ["pass1\nretry", "pass1\r", "  chapter8", "chapter8 "])
def test_stage_labels_must_survive_the_record_format(tmp_path: Path, stage: str) -> None:
    store, _ = _store(tmp_path)

    with pytest.raises(ValueError):
        store.create("gcc", stage)
    assert not store.record_path("gcc").exists()


def test_stage_label_with_inner_spaces_round_trips(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    store.create("gcc", "pass 1 (cross)")

    assert store.get("gcc").stage == "pass 1 (cross)"
    assert store.is_valid("gcc")


def test_enumerate_hashed_global_record_needs_its_input(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    manifest = _artifact(tmp_path, "md5sums", b"abc  foo-1.tar.xz\n")
    store.create("download-complete", "download", manifest, record_type=RECORD_TYPE_GLOBAL)
    manifest.unlink()

    assert not store.is_valid("download-complete", manifest)
    assert [s.valid_now for s in store.enumerate()] == [False]
    assert [s.valid_now for s in store.enumerate(lambda unit: manifest)] == [False]


def test_directory_as_input_artifact_is_invalid(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    tarball = _artifact(tmp_path, "perl-5.42.0.tar.xz", b"perl")
    store.create("perl", "chapter8", tarball)
    tarball.unlink()
    tarball.mkdir()

    assert not store.is_valid("perl", tarball)
    with pytest.raises(ArtifactMissing):
        store.create("perl", "chapter8", tarball)


def test_unreadable_input_artifact_is_invalid(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store, _ = _store(tmp_path)
    tarball = _artifact(tmp_path, "tar-1.35.tar.xz", b"tar")
    store.create("tar", "chapter8", tarball)

    def denied(path: Path, algorithm: str = "sha256") -> str:
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr("rookery_build.pipeline.checkpointing.file_digest", denied)

    assert store.hash_artifact(tarball) is None
    assert not store.is_valid("tar", tarball)
    assert not store.should_skip("tar", tarball)
