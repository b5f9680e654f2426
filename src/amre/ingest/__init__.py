"""File ingestion: text files become un-embedded knowledge entries."""

from amre.ingest.chunker import chunk_text
from amre.ingest.loaders import (
    DEFAULT_EXCLUDE_DIRS,
    DEFAULT_TEXT_EXTS,
    SourceFile,
    discover_files,
    load_text_file,
    make_source_id,
)
from amre.ingest.pipeline import IngestPipeline, IngestResult

__all__ = [
    "chunk_text",
    "DEFAULT_EXCLUDE_DIRS",
    "DEFAULT_TEXT_EXTS",
    "SourceFile",
    "discover_files",
    "load_text_file",
    "make_source_id",
    "IngestPipeline",
    "IngestResult",
]
