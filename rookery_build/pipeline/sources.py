from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Sequence
from urllib.parse import unquote, urlsplit

from rookery_build.adapters.http.fetcher import PARTIAL_SUFFIX, DownloadTarget
from rookery_build.integrity.checksums import ChecksumDatabase


logger = logging.getLogger(__name__)

SOURCE_PATTERNS: tuple[str, ...] = ("{name}-*.tar.*", "{name}-*.tgz")


def filename_from_url(url: str) -> str:
    name = unquote(urlsplit(url).path.rsplit("/", 1)[-1])
    if not name:
        raise ValueError(f"Cannot derive a filename from URL: {url}")
    return name


def parse_manifest(
    text: str,
    sources_dir: Path,
    *,
    mirrors: Mapping[str, Sequence[str]] | None = None,
    database: ChecksumDatabase | None = None,
) -> list[DownloadTarget]:
    """Turn a wget-list style manifest into download targets.

    One artifact per line; extra whitespace-separated URLs on a line are
    alternates for the same file. Configured mirrors for a filename are
    tried after the manifest's own URLs. A filename listed twice keeps its
    first position and collects the URLs of both lines.
    """
    mirrors = mirrors or {}
    order: list[str] = []
    urls_by_name: dict[str, list[str]] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        urls = line.split()
        name = filename_from_url(urls[0])
        if name not in urls_by_name:
            order.append(name)
            urls_by_name[name] = []
        for u in urls:
            if u not in urls_by_name[name]:
                urls_by_name[name].append(u)

    targets: list[DownloadTarget] = []
    for name in order:
        urls = urls_by_name[name] + [m for m in mirrors.get(name, ()) if m not in urls_by_name[name]]
        expected = database.expected(name) if database is not None else None
        targets.append(
            DownloadTarget(
                urls=tuple(urls),
                destination=Path(sources_dir) / name,
                expected_hash=expected,
                algorithm=database.algorithm if database is not None else "md5",
            )
        )
    return targets


def find_source_artifact(package: str, sources_dir: Path) -> Path | None:
    """Locate the source tarball for a package, e.g. binutils-2.45.tar.xz.

    Returns the first match in sorted order, or None when nothing matches.
    """
    root = Path(sources_dir)
    if not root.is_dir():
        return None
    matches: list[Path] = []
    for pattern in SOURCE_PATTERNS:
        matches.extend(
            p
            for p in root.glob(pattern.format(name=package))
            if p.is_file() and not p.name.endswith(PARTIAL_SUFFIX)
        )
    if not matches:
        return None
    return sorted(matches)[0]
