from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from amre.errors import ConstraintViolation
from amre.ingest.chunker import chunk_text
from amre.ingest.loaders import (
    DEFAULT_EXCLUDE_DIRS,
    DEFAULT_TEXT_EXTS,
    SourceFile,
    discover_files,
    load_text_file,
    normalize_exts,
)
from amre.models import KnowledgeEntry, SourceType
from amre.storage.base import KnowledgeStore

logger = logging.getLogger(__name__)

_STALE_SCAN_LIMIT = 10_000


@dataclass
class IngestResult:
    files_seen: int = 0
    files_ingested: int = 0
    entries_written: int = 0
    unchanged: int = 0
    superseded: int = 0
    skipped: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    duration_sec: float = 0.0


def entry_id_for(source: SourceFile, index: int) -> str:
    """Deterministic id so re-ingesting an unchanged file is a no-op."""
    return f"{source.source_id}:{source.metadata['sha1'][:12]}:{index}"


class IngestPipeline:
    """Writes text files into the store as un-embedded knowledge entries.

    Entries are created with ``embedding=None``; the backfill job embeds
    them later.  When a file's content changes, entries from the previous
    version are deactivated rather than deleted.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        user_id: str,
        allowed_exts: Optional[Iterable[str]] = None,
        exclude_dirs: Optional[Iterable[str]] = None,
        chunk_size: int = 1200,
        chunk_overlap: int = 200,
        max_bytes: int = 2_000_000,
        include_hidden: bool = False,
        category: str = "document",
        importance: float = 0.5,
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        if not 0.0 <= importance <= 1.0:
            raise ValueError("importance must be within [0, 1]")
        self._store = store
        self.user_id = user_id
        self.allowed_exts = normalize_exts(allowed_exts if allowed_exts is not None else DEFAULT_TEXT_EXTS)
        self.exclude_dirs: Set[str] = {
            d.lower() for d in (exclude_dirs if exclude_dirs is not None else DEFAULT_EXCLUDE_DIRS)
        }
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.max_bytes = max_bytes
        self.include_hidden = include_hidden
        self.category = category
        self.importance = importance
        self.tags = {t.strip().lower() for t in (tags or ()) if t.strip()}

    def discover(self, paths: Iterable[str]) -> list:
        return discover_files(
            paths,
            allowed_exts=self.allowed_exts,
            exclude_dirs=self.exclude_dirs,
            include_hidden=self.include_hidden,
        )

    def ingest_paths(self, paths: Iterable[str]) -> IngestResult:
        start = time.monotonic()
        result = IngestResult()
        files = self.discover(paths)
        result.files_seen = len(files)

        for path in files:
            try:
                source = load_text_file(path, max_bytes=self.max_bytes or None)
                if source is None:
                    result.skipped += 1
                    continue
                written, unchanged = self._write_source(source)
                result.superseded += self._retire_previous_versions(source)
                result.entries_written += written
                result.unchanged += unchanged
                result.files_ingested += 1
            except Exception as exc:
                result.errors.append({"path": str(path), "error": str(exc)})
                logger.warning("Ingest failed for %s: %s", path, exc)

        result.duration_sec = time.monotonic() - start
        logger.info(
            "Ingested %d/%d files: %d new entries, %d unchanged, %d superseded, %d errors.",
            result.files_ingested, result.files_seen, result.entries_written,
            result.unchanged, result.superseded, len(result.errors),
        )
        return result

    def _write_source(self, source: SourceFile) -> tuple[int, int]:
        pieces = chunk_text(source.text, chunk_size=self.chunk_size, overlap=self.chunk_overlap)
        written = unchanged = 0
        for index, piece in enumerate(pieces):
            metadata = dict(source.metadata)
            metadata.update({"chunk_index": index, "chunk_total": len(pieces)})
            title = source.title if len(pieces) == 1 else f"{source.title} ({index + 1}/{len(pieces)})"
            entry = KnowledgeEntry(
                id=entry_id_for(source, index),
                user_id=self.user_id,
                content=piece,
                source_type=SourceType.FILE,
                source_id=source.source_id,
                category=self.category,
                title=title,
                importance=self.importance,
                tags=self.tags | {"file", source.metadata["extension"].lstrip(".") or "text"},
                metadata=metadata,
            )
            try:
                self._store.add_entry(entry)
                written += 1
            except ConstraintViolation:
                unchanged += 1
        return written, unchanged

    def _retire_previous_versions(self, source: SourceFile) -> int:
        current = source.metadata["sha1"]
        retired = 0
        for entry in self._store.list_entries(
            self.user_id, source_type=SourceType.FILE, limit=_STALE_SCAN_LIMIT,
        ):
            if entry.source_id == source.source_id and entry.metadata.get("sha1") != current:
                self._store.set_active(entry.id, False)
                retired += 1
        return retired
