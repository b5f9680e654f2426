from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)

DEFAULT_TEXT_EXTS = frozenset({
    ".csv", ".htm", ".html", ".json", ".log", ".md", ".markdown",
    ".org", ".rst", ".text", ".txt", ".yaml", ".yml",
})

DEFAULT_EXCLUDE_DIRS = frozenset({
    ".git", ".hg", ".svn", ".venv", "__pycache__", "node_modules", "venv",
})


@dataclass
class SourceFile:
    """A decoded text file ready for chunking."""

    path: Path
    source_id: str
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return self.path.stem.replace("_", " ").replace("-", " ").strip() or self.path.name


def normalize_exts(exts: Iterable[str]) -> Set[str]:
    """``["md", ".TXT", ""]`` -> ``{".md", ".txt"}``."""
    out: Set[str] = set()
    for ext in exts:
        ext = ext.strip().lower()
        if ext:
            out.add(ext if ext.startswith(".") else f".{ext}")
    return out


def make_source_id(path: Path) -> str:
    """Stable id for a file, derived from its resolved path."""
    digest = hashlib.sha1(str(path.resolve()).encode("utf-8")).hexdigest()
    return f"file:{digest[:20]}"


def discover_files(
    paths: Iterable[str | Path],
    allowed_exts: Optional[Iterable[str]] = None,
    exclude_dirs: Optional[Iterable[str]] = None,
    include_hidden: bool = False,
) -> List[Path]:
    """Expand files and directories into a sorted, de-duplicated file list."""
    exts = normalize_exts(allowed_exts if allowed_exts is not None else DEFAULT_TEXT_EXTS)
    excludes = {d.lower() for d in (exclude_dirs if exclude_dirs is not None else DEFAULT_EXCLUDE_DIRS)}
    found: Set[Path] = set()
    for raw in paths:
        root = Path(raw).expanduser()
        if root.is_file():
            if _accepted(root, exts, excludes, include_hidden, relative_to=root.parent):
                found.add(root)
            continue
        if not root.is_dir():
            logger.warning("Ingest path %s does not exist; skipping.", root)
            continue
        for candidate in root.rglob("*"):
            if candidate.is_symlink() or not candidate.is_file():
                continue
            if _accepted(candidate, exts, excludes, include_hidden, relative_to=root):
                found.add(candidate)
    return sorted(found, key=str)


def load_text_file(path: Path, max_bytes: Optional[int] = None) -> Optional[SourceFile]:
    """Read and decode *path*; ``None`` for binary, empty or oversized files."""
    try:
        size = path.stat().st_size
        if max_bytes and size > max_bytes:
            logger.info("Skipping %s: %d bytes exceeds limit.", path, size)
            return None
        raw = path.read_bytes()
    except OSError as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return None
    if b"\x00" in raw[:8192]:
        return None
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = raw.decode("latin-1")
    text = text.strip()
    if not text:
        return None
    return SourceFile(
        path=path,
        source_id=make_source_id(path),
        text=text,
        metadata={
            "path": str(path),
            "file_name": path.name,
            "extension": path.suffix.lower(),
            "bytes": size,
            "sha1": hashlib.sha1(raw).hexdigest(),
        },
    )


def _accepted(path: Path, exts: Set[str], excludes: Set[str], include_hidden: bool,
              relative_to: Path) -> bool:
    if exts and path.suffix.lower() not in exts:
        return False
    try:
        parts = path.relative_to(relative_to).parts
    except ValueError:
        parts = path.parts
    for part in parts:
        if part.lower() in excludes:
            return False
        if not include_hidden and part.startswith("."):
            return False
    return True
