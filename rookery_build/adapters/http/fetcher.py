from __future__ import annotations

import contextlib
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

import requests

from rookery_build.common.hashing import file_digest
from rookery_build.common.time_utils import utc_now
from rookery_build.integration.event_bus import EventBus, InMemoryEventBus
from rookery_build.integration.events import (
    BatchCancelled,
    FetchCompleted,
    FetchFailed,
    FetchRetry,
    FetchSkipped,
)
from rookery_build.integrity.checksums import ChecksumDatabase
from rookery_build.integrity.verify import VerifyStatus, verify
from rookery_build.pipeline.config import BatchPolicy, FetchConfig


logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".part"


class FetchError(RuntimeError):
    def __init__(self, message: str, *, destination: Path, urls: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.destination = destination
        self.urls = tuple(urls)


class FetchExhausted(FetchError):
    """Every attempt against every candidate URL failed."""

    def __init__(self, destination: Path, urls: Sequence[str], errors: Sequence[str]) -> None:
        last = errors[-1] if errors else "no attempts made"
        super().__init__(
            f"Failed to download {destination.name} from {', '.join(urls)} "
            f"after {len(errors)} attempts (last error: {last})",
            destination=destination,
            urls=urls,
        )
        self.errors = list(errors)


class FetchCancelled(FetchError):
    pass


class BatchFetchError(RuntimeError):
    def __init__(self, failures: Sequence[FetchError], not_started: Sequence["DownloadTarget"] = ()) -> None:
        lines = [f"  - {f}" for f in failures]
        lines += [f"  - {t.name} (not started)" for t in not_started]
        super().__init__(
            f"{len(failures)} downloads failed, {len(not_started)} not started:\n" + "\n".join(lines)
        )
        self.failures = list(failures)
        self.not_started = list(not_started)


class _AttemptFailed(Exception):
    pass


@dataclass(frozen=True)
class DownloadTarget:
    """One logical artifact: candidate URLs in order, where it goes, its hash."""

    urls: tuple[str, ...]
    destination: Path
    expected_hash: str | None = None
    algorithm: str = "md5"

    def __post_init__(self) -> None:
        urls = tuple(u for u in self.urls if u)
        if not urls:
            raise ValueError(f"No candidate URLs for {self.destination}")
        object.__setattr__(self, "urls", urls)
        object.__setattr__(self, "destination", Path(self.destination))

    @property
    def name(self) -> str:
        return self.destination.name

    @property
    def partial_path(self) -> Path:
        return self.destination.with_name(self.destination.name + PARTIAL_SUFFIX)


@dataclass
class BatchResult:
    fetched: list[Path] = field(default_factory=list)
    failures: list[FetchError] = field(default_factory=list)
    not_started: list[DownloadTarget] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.not_started

    def raise_for_failures(self) -> None:
        if not self.ok:
            raise BatchFetchError(self.failures, self.not_started)


@dataclass
class Fetcher:
    """Downloads artifacts with bounded retries, mirrors and resume.

    Each URL gets ``max_attempts`` attempts with a fixed ``retry_delay``
    between them before the next candidate URL is tried. Bytes stream into
    ``<destination>.part`` and a retry continues from the partial's size
    with an HTTP Range request; only a complete (and, when a hash is known,
    verified) file is renamed onto the destination.
    """

    bus: EventBus = field(default_factory=InMemoryEventBus)
    max_attempts: int = 3
    retry_delay: float = 5.0
    connect_timeout: float = 20.0
    stall_timeout: float = 30.0
    attempt_timeout: float = 1800.0
    chunk_size: int = 64 * 1024
    concurrency: int = 6
    user_agent: str = "rookery-build"
    checksums: ChecksumDatabase | None = None
    min_file_size: int = 1024
    session_factory: Callable[[], Any] = requests.Session
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        self._local = threading.local()
        self._sessions: list[Any] = []
        self._sessions_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        cfg: FetchConfig,
        *,
        bus: EventBus | None = None,
        checksums: ChecksumDatabase | None = None,
        min_file_size: int = 1024,
        **overrides: Any,
    ) -> "Fetcher":
        return cls(
            bus=bus if bus is not None else InMemoryEventBus(),
            max_attempts=cfg.max_attempts,
            retry_delay=cfg.retry_delay,
            connect_timeout=cfg.connect_timeout,
            stall_timeout=cfg.stall_timeout,
            attempt_timeout=cfg.attempt_timeout,
            chunk_size=cfg.chunk_size,
            concurrency=cfg.concurrency,
            user_agent=cfg.user_agent,
            checksums=checksums,
            min_file_size=min_file_size,
            **overrides,
        )

    def __enter__(self) -> "Fetcher":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for s in sessions:
            close = getattr(s, "close", None)
            if callable(close):
                close()

    # requests.Session is not safe to share between threads; one per worker.
    def _session(self) -> Any:
        s = getattr(self._local, "session", None)
        if s is None:
            s = self.session_factory()
            self._local.session = s
            with self._sessions_lock:
                self._sessions.append(s)
        return s

    def _database_for(self, target: DownloadTarget) -> ChecksumDatabase:
        expected = target.expected_hash
        algorithm = target.algorithm
        if expected is None and self.checksums is not None:
            expected = self.checksums.expected(target.name)
            algorithm = self.checksums.algorithm
        if expected is None:
            return ChecksumDatabase(algorithm=algorithm)
        return ChecksumDatabase(entries={target.name: expected.lower()}, algorithm=algorithm)

    # ------------------------------------------------------------------
    # Single target
    # ------------------------------------------------------------------

    def _reuse_existing(self, target: DownloadTarget) -> bool:
        dest = target.destination
        if not dest.exists():
            return False
        result = verify(dest, self._database_for(target), min_size=max(1, self.min_file_size))
        if result.status is VerifyStatus.VERIFIED:
            self.bus.publish(FetchSkipped(occurred_at=utc_now(), destination=str(dest), reason="checksum verified"))
            return True
        if result.status is VerifyStatus.UNKNOWN:
            self.bus.publish(
                FetchSkipped(
                    occurred_at=utc_now(),
                    destination=str(dest),
                    reason=f"exists, {result.size} bytes, no checksum available",
                )
            )
            return True
        logger.warning("Removing invalid/incomplete %s: %s", dest, result.describe())
        dest.unlink(missing_ok=True)
        return False

    def _attempt(self, url: str, part: Path) -> tuple[int, int]:
        offset = part.stat().st_size if part.exists() else 0
        headers = {"User-Agent": self.user_agent, "Accept-Encoding": "identity"}
        if offset:
            headers["Range"] = f"bytes={offset}-"

        started = self.clock()
        try:
            resp = self._session().get(
                url,
                headers=headers,
                stream=True,
                timeout=(self.connect_timeout, self.stall_timeout),
            )
        except requests.RequestException as exc:
            raise _AttemptFailed(f"{type(exc).__name__}: {exc}") from exc

        with contextlib.closing(resp):
            if offset and resp.status_code == 416:
                part.unlink(missing_ok=True)
                raise _AttemptFailed("server rejected resume range (HTTP 416), partial discarded")
            if resp.status_code >= 400:
                raise _AttemptFailed(f"HTTP {resp.status_code}")

            resumed_from = offset if offset and resp.status_code == 206 else 0
            length_header = resp.headers.get("Content-Length")
            expected_len = int(length_header) if length_header and length_header.isdigit() else None

            written = 0
            try:
                with part.open("ab" if resumed_from else "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=self.chunk_size):
                        if chunk:
                            fh.write(chunk)
                            written += len(chunk)
                        if self.clock() - started > self.attempt_timeout:
                            raise _AttemptFailed(f"attempt exceeded {self.attempt_timeout:.0f}s")
            except requests.RequestException as exc:
                raise _AttemptFailed(f"transfer interrupted after {written} bytes: {exc}") from exc

        if expected_len is not None and written < expected_len:
            raise _AttemptFailed(f"short read: {written} of {expected_len} bytes")
        if resumed_from + written == 0:
            raise _AttemptFailed("empty response")
        return written, resumed_from

    def _check_complete(self, target: DownloadTarget, part: Path, *, min_size: int = 0) -> None:
        db = self._database_for(target)
        expected = db.expected(target.name)
        if expected is None:
            size = part.stat().st_size
            if size < min_size:
                part.unlink(missing_ok=True)
                raise _AttemptFailed(f"only {size} bytes and no checksum to confirm it, file deleted")
            return
        actual = file_digest(part, db.algorithm)
        if actual != expected:
            part.unlink(missing_ok=True)
            raise _AttemptFailed(f"checksum mismatch (expected {expected}, got {actual}), file deleted")

    def fetch_one(
        self,
        target: DownloadTarget,
        *,
        cancel: threading.Event | None = None,
        refresh: bool = False,
    ) -> Path:
        """Fetch one target, returning its destination path.

        An existing destination that verifies (or has no checksum and a
        plausible size) is kept without touching the network unless
        ``refresh`` is set, in which case it is replaced only once a new
        copy has arrived. Raises FetchExhausted once every URL has used up
        its attempts and FetchCancelled when ``cancel`` is set between
        attempts.
        """
        dest = target.destination
        if not refresh and self._reuse_existing(target):
            return dest

        dest.parent.mkdir(parents=True, exist_ok=True)
        part = target.partial_path
        known_hash = self._database_for(target).expected(target.name) is not None
        if part.exists() and (refresh or not known_hash):
            # Bytes left by an earlier run cannot be checked against the current upstream file
            logger.debug("Discarding stale partial %s", part)
            part.unlink(missing_ok=True)
        # Index files are accepted at any size
        min_size = 0 if refresh else self.min_file_size
        errors: list[str] = []
        for url in target.urls:
            for attempt in range(1, self.max_attempts + 1):
                if cancel is not None and cancel.is_set():
                    raise FetchCancelled(f"Download of {dest.name} cancelled", destination=dest, urls=target.urls)
                logger.debug("Downloading %s from %s (attempt %d/%d)", dest.name, url, attempt, self.max_attempts)
                try:
                    written, resumed_from = self._attempt(url, part)
                    self._check_complete(target, part, min_size=min_size)
                except _AttemptFailed as exc:
                    errors.append(f"{url}: {exc}")
                    self.bus.publish(
                        FetchRetry(
                            occurred_at=utc_now(),
                            url=url,
                            destination=str(dest),
                            attempt=attempt,
                            max_attempts=self.max_attempts,
                            error=str(exc),
                        )
                    )
                    if attempt < self.max_attempts:
                        self.sleep(self.retry_delay)
                    continue

                os.replace(part, dest)
                self.bus.publish(
                    FetchCompleted(
                        occurred_at=utc_now(),
                        url=url,
                        destination=str(dest),
                        bytes_transferred=written,
                        resumed_from=resumed_from,
                    )
                )
                return dest

            logger.warning("Giving up on %s after %d attempts", url, self.max_attempts)
            # Another server's bytes cannot be assumed to line up with this partial.
            part.unlink(missing_ok=True)

        error = FetchExhausted(dest, target.urls, errors)
        self.bus.publish(FetchFailed(occurred_at=utc_now(), destination=str(dest), error=str(error)))
        raise error

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def fetch_all(
        self,
        targets: Iterable[DownloadTarget],
        *,
        policy: BatchPolicy = BatchPolicy.FAIL_FAST,
        concurrency: int | None = None,
    ) -> BatchResult:
        """Fetch many targets on a bounded worker pool.

        FAIL_FAST: the first exhausted target stops the batch. Targets not
        yet started are never attempted and in-flight ones stop before
        their next attempt; both end up in ``not_started``.
        BEST_EFFORT: every target runs and failures are collected.
        No ordering is guaranteed between targets.
        """
        policy = BatchPolicy(policy)
        items = list(targets)
        workers = max(1, concurrency or self.concurrency)
        cancel = threading.Event()
        fail_fast = policy is BatchPolicy.FAIL_FAST
        result = BatchResult()

        def run(target: DownloadTarget) -> Path | None:
            if fail_fast and cancel.is_set():
                return None
            try:
                return self.fetch_one(target, cancel=cancel if fail_fast else None)
            except FetchCancelled:
                raise
            except BaseException:
                if fail_fast:
                    cancel.set()
                raise

        logger.info("Fetching %d artifacts with %d workers (%s)", len(items), workers, policy.value)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as ex:
            futures = {ex.submit(run, t): t for t in items}
            for fut in as_completed(futures):
                target = futures[fut]
                if fut.cancelled():
                    result.not_started.append(target)
                    continue
                try:
                    path = fut.result()
                except FetchCancelled:
                    result.not_started.append(target)
                    continue
                except FetchError as exc:
                    result.failures.append(exc)
                    if fail_fast:
                        for other in futures:
                            other.cancel()
                    continue
                except BaseException:
                    cancel.set()
                    for other in futures:
                        other.cancel()
                    raise
                if path is None:
                    result.not_started.append(target)
                else:
                    result.fetched.append(path)

        if result.not_started:
            result.not_started.sort(key=lambda t: t.name)
            self.bus.publish(
                BatchCancelled(occurred_at=utc_now(), not_started=tuple(t.name for t in result.not_started))
            )
        logger.info(
            "Fetched %d/%d artifacts (%d failed, %d not started)",
            len(result.fetched),
            len(items),
            len(result.failures),
            len(result.not_started),
        )
        return result
