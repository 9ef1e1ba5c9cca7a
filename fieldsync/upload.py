# fieldsync/upload.py
"""
Upload pipeline: read -> normalize -> match -> map -> announce -> persist.

Files in a batch are handled one at a time in the order given. A failure in
one file is recorded and the batch moves on, except a cancelled attribute
mapping, which stops the batch.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Set, Tuple

from .errors import (
    EmptyResultError,
    FieldSyncError,
    InvalidInput,
    MappingCancelled,
    ParseError,
    RemoteError,
    UnsupportedFileType,
)
from .normalize import normalize
from .readers import filename_stem, read_upload
from .schemas import IngestSummary

logger = logging.getLogger(__name__)

NAME_CANDIDATES = ("grower_name", "Grower", "grower", "client", "farm_name", "Farm")

ProgressCallback = Callable[[int, int, int], None]


@dataclass
class DatasetEvent:
    name: str
    geojson: dict
    source_filename: str
    matched_dataset_id: Optional[str] = None
    match_reason: Optional[str] = None


@dataclass
class FileResult:
    filename: str
    success: bool = False
    dataset_name: Optional[str] = None
    features: int = 0
    dropped: int = 0
    cloud_stored: bool = False
    updated_existing: bool = False
    matched_dataset_id: Optional[str] = None
    match_reason: Optional[str] = None
    error: Optional[str] = None
    ingest_summary: Optional[IngestSummary] = None


@dataclass
class BatchSummary:
    total: int
    processed: int = 0
    succeeded: int = 0
    cloud_stored: int = 0
    created: Set[str] = field(default_factory=set)
    updated: Set[str] = field(default_factory=set)
    halted: bool = False
    files: List[FileResult] = field(default_factory=list)
    cancellation: Optional[MappingCancelled] = None

    @property
    def message(self) -> str:
        word = "file" if self.total == 1 else "files"
        parts = [
            f"Processed {self.succeeded}/{self.total} {word}",
            f"Cloud stored {self.cloud_stored}/{self.total}",
        ]
        if self.updated:
            n = len(self.updated)
            parts.append(f"Updated {n} dataset{'' if n == 1 else 's'}")
        if self.created:
            n = len(self.created)
            parts.append(f"Created {n} new dataset{'' if n == 1 else 's'}")
        if self.halted:
            parts.append("Stopped: attribute mapping cancelled")
        return " | ".join(parts)


def infer_dataset_name(fc: dict, fallback: Optional[str]) -> str:
    default = fallback.strip() if isinstance(fallback, str) and fallback.strip() else "dataset"
    features = fc.get("features") or []
    if not features:
        return default
    props = (features[0] or {}).get("properties") or {}
    for key in NAME_CANDIDATES:
        candidate = props.get(key)
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return default


class UploadPipeline:

    def __init__(self, context, reconciler, matcher, mapper, ingestor, cache):
        self.context = context
        self.reconciler = reconciler
        self.matcher = matcher
        self.mapper = mapper
        self.ingestor = ingestor
        self.cache = cache
        self.listeners: List[Callable[[DatasetEvent], None]] = [self.save_locally]

    def add_listener(self, listener: Callable[[DatasetEvent], None]):
        self.listeners.append(listener)

    def save_locally(self, event: DatasetEvent):
        """Anonymous uploads are kept in the local cache until the next login."""
        if self.context.authenticated:
            return
        self.cache.put_anonymous(event.name, event.geojson)

    def _announce(self, event: DatasetEvent):
        # only the latest upload stays on the map
        self.context.rendered_layers = [event]
        for listener in self.listeners:
            try:
                listener(event)
            except FieldSyncError as e:
                logger.warning("Dataset listener %s failed: %s", getattr(listener, "__name__", listener), e)

    def handle_file(self, filename: str, data: bytes) -> FileResult:
        stem = filename_stem(filename)
        result = FileResult(filename=filename, dataset_name=stem)

        try:
            fc = normalize(read_upload(filename, data))
            if not fc["features"]:
                raise EmptyResultError("No features found in the uploaded file.")
        except UnsupportedFileType as e:
            result.error = str(e)
            return result
        except (ParseError, InvalidInput, EmptyResultError) as e:
            logger.warning("Upload %s rejected: %s", filename, e)
            result.error = str(e)
            return result

        result.dataset_name = infer_dataset_name(fc, stem)
        match = self.matcher.match(fc, result.dataset_name)

        # MappingCancelled propagates: it stops the whole batch
        try:
            mapped = self.mapper.map_collection(fc)
        except EmptyResultError as e:
            logger.warning("Upload %s rejected: %s", filename, e)
            result.error = str(e)
            return result
        result.dropped = mapped.dropped
        if not mapped.collection["features"]:
            result.error = str(EmptyResultError("No features have grower, farm and field values."))
            return result
        result.features = len(mapped.collection["features"])

        if match is not None:
            result.dataset_name = match.dataset.name or result.dataset_name
            result.matched_dataset_id = match.dataset.id
            result.match_reason = match.match_reason
            result.updated_existing = True

        self._announce(DatasetEvent(
            name=result.dataset_name,
            geojson=mapped.collection,
            source_filename=filename,
            matched_dataset_id=result.matched_dataset_id,
            match_reason=result.match_reason,
        ))
        result.success = True

        if self.context.authenticated:
            try:
                ingest = self.ingestor.ingest(mapped.collection, self.context.owner_id)
            except RemoteError as e:
                # already rendered and announced; cloud failure does not undo that
                logger.error("Cloud ingest failed for %s: %s", filename, e)
                result.error = f"Saved locally only (cloud save failed): {e}"
            else:
                result.cloud_stored = True
                result.ingest_summary = ingest.summary

        self.context.invalidate()
        return result

    def process_files(self, files: Iterable[Tuple[str, bytes]],
                      on_progress: Optional[ProgressCallback] = None) -> BatchSummary:
        files = list(files)
        summary = BatchSummary(total=len(files))

        for filename, data in files:
            try:
                result = self.handle_file(filename, data)
            except MappingCancelled as e:
                logger.info("Attribute mapping cancelled for %s; skipping remaining files", filename)
                summary.processed += 1
                summary.halted = True
                summary.cancellation = e
                summary.files.append(FileResult(filename=filename, dataset_name=filename_stem(filename),
                                                error=str(e)))
                if on_progress:
                    on_progress(summary.processed, summary.total, summary.cloud_stored)
                break
            except Exception as e:
                logger.exception("Unexpected error handling upload %s", filename)
                result = FileResult(filename=filename, dataset_name=filename_stem(filename),
                                    error=f"Unexpected error: {e}")
            summary.processed += 1
            summary.files.append(result)
            if result.cloud_stored:
                summary.cloud_stored += 1
            if result.success:
                summary.succeeded += 1
                name = result.dataset_name or filename_stem(filename)
                if result.updated_existing:
                    summary.updated.add(name)
                else:
                    summary.created.add(name)
            if on_progress:
                on_progress(summary.processed, summary.total, summary.cloud_stored)

        if summary.cloud_stored and self.context.authenticated:
            try:
                self.reconciler.refresh()
            except RemoteError as e:
                logger.warning("Uploaded, but could not refresh the cloud snapshot: %s", e)

        logger.info(summary.message)
        return summary
