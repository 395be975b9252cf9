from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Mapping


logger = logging.getLogger(__name__)

_LINE_RE = re.compile(r"^([0-9a-fA-F]+)\s+\*?(\S+)$")


def parse_checksum_lines(text: str) -> Iterator[tuple[str, str]]:
    """Yield (filename, hex digest) pairs from an md5sums-style listing.

    Lines look like ``<hex>  <filename>``; blank lines and ``#`` comments
    are ignored, as are lines that do not match (logged at debug level).
    """
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        m = _LINE_RE.match(line)
        if m is None:
            logger.debug("Ignoring malformed checksum line: %r", raw)
            continue
        yield m.group(2), m.group(1).lower()


@dataclass(frozen=True)
class ChecksumDatabase:
    """Filename -> expected digest, looked up by exact filename.

    Built from one authoritative listing plus supplementary ones; when a
    filename appears in several, the authoritative entry wins, then the
    earliest supplementary one.
    """

    entries: Mapping[str, str] = field(default_factory=dict)
    algorithm: str = "md5"
    source: Path | None = None

    def __contains__(self, filename: object) -> bool:
        return filename in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def expected(self, filename: str) -> str | None:
        return self.entries.get(filename)

    @classmethod
    def from_lines(cls, chunks: Iterable[str], *, algorithm: str = "md5", source: Path | None = None) -> "ChecksumDatabase":
        entries: dict[str, str] = {}
        for text in chunks:
            for filename, digest in parse_checksum_lines(text):
                entries.setdefault(filename, digest)
        return cls(entries=entries, algorithm=algorithm, source=source)

    @classmethod
    def from_sources(
        cls,
        authoritative: Path | None,
        supplementary: Iterable[Path] = (),
        *,
        algorithm: str = "md5",
    ) -> "ChecksumDatabase":
        chunks: list[str] = []
        if authoritative is not None:
            chunks.append(Path(authoritative).read_text(encoding="utf-8"))
        for extra in supplementary:
            try:
                chunks.append(Path(extra).read_text(encoding="utf-8"))
            except FileNotFoundError:
                logger.warning("Supplementary checksum file not found: %s", extra)
        db = cls.from_lines(chunks, algorithm=algorithm, source=authoritative)
        logger.info("Loaded %d checksum entries (%s)", len(db), algorithm)
        return db
