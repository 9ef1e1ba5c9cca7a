# fieldsync/ingest.py
"""
Chunked delivery of feature collections to the remote store.

Large collections are cut into slices of at most `chunk_size` features and
sent one at a time. When the server cancels a slice on statement timeout the
slice is split at its midpoint and the ceiling for both halves is halved, down
to `min_chunk_size`. Work is kept on an explicit stack so halves run
depth-first, left before right, with a single batch in flight.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .errors import RemoteFatalError, RemoteTransientError
from .normalize import feature_collection
from .schemas import IngestSummary

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 250
MIN_CHUNK_SIZE = 50

Sender = Callable[[dict], int]


@dataclass
class BatchTask:
    start: int
    end: int
    ceiling: int

    @property
    def size(self) -> int:
        return self.end - self.start


class ChunkedDispatcher:

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE, min_chunk_size: int = MIN_CHUNK_SIZE):
        self.min_chunk_size = max(1, min_chunk_size)
        self.chunk_size = max(self.min_chunk_size, chunk_size)

    def fits_one_batch(self, fc: dict) -> bool:
        return len(fc.get("features") or []) <= self.chunk_size

    def dispatch(self, fc: dict, send: Sender) -> int:
        """
        Send every feature through `send`, returning the summed counts it reports.

        Raises RemoteFatalError on a non-timeout failure or on a timeout that
        cannot be split further; its `inserted` holds what earlier batches
        already stored.
        """
        features = fc.get("features") or []
        if not features:
            return 0

        stack: List[BatchTask] = [BatchTask(0, len(features), self.chunk_size)]
        total = 0
        while stack:
            task = stack.pop()
            if task.size > task.ceiling:
                slices = [BatchTask(s, min(s + task.ceiling, task.end), task.ceiling)
                          for s in range(task.start, task.end, task.ceiling)]
                stack.extend(reversed(slices))
                continue

            batch = feature_collection(features[task.start:task.end])
            try:
                total += send(batch)
            except RemoteTransientError as e:
                if task.ceiling <= self.min_chunk_size or task.size < 2:
                    raise RemoteFatalError(
                        f"Statement timeout at batch size {task.size}: {e}",
                        code=e.code, status_code=e.status_code, response_data=e.response_data,
                        inserted=total,
                    ) from e
                next_ceiling = max(self.min_chunk_size, (task.ceiling + 1) // 2)
                midpoint = task.start + (task.size + 1) // 2
                logger.warning("Statement timeout on %d features; retrying as halves with ceiling %d",
                               task.size, next_ceiling)
                stack.append(BatchTask(midpoint, task.end, next_ceiling))
                stack.append(BatchTask(task.start, midpoint, next_ceiling))
            except RemoteFatalError as e:
                e.inserted = total
                raise
        return total


@dataclass
class HierarchyIngestResult:
    summary: IngestSummary = field(default_factory=IngestSummary)
    inserted: int = 0
    batches: int = 0


class HierarchyIngestor:
    """Grower/farm/field ingestion through the remote hierarchy procedure."""

    def __init__(self, remote, dispatcher: Optional[ChunkedDispatcher] = None, replace_missing: bool = True):
        self.remote = remote
        self.dispatcher = dispatcher or ChunkedDispatcher()
        self.replace_missing = replace_missing

    def ingest(self, fc: dict, owner_id: str) -> HierarchyIngestResult:
        result = HierarchyIngestResult()
        total_features = len(fc.get("features") or [])
        # removing missing fields from a partial batch would delete rows sent by the other batches
        replace = self.replace_missing and self.dispatcher.fits_one_batch(fc)
        if self.replace_missing and not replace:
            logger.info("Collection of %d features spans several batches; not removing missing fields",
                        total_features)

        def send(batch: dict) -> int:
            whole = len(batch["features"]) == total_features
            summary = self.remote.ingest_grower_hierarchy(batch, owner_id, replace and whole)
            result.summary = result.summary.merge(summary)
            result.batches += 1
            return summary.fields_written

        result.inserted = self.dispatcher.dispatch(fc, send)
        logger.info("Hierarchy ingest for %s: %s", owner_id, result.summary.model_dump())
        return result


class LayerIngestor:
    """Older dataset/layer ingestion path returning inserted row counts."""

    def __init__(self, remote, dispatcher: Optional[ChunkedDispatcher] = None, layer_name: str = "uploaded"):
        self.remote = remote
        self.dispatcher = dispatcher or ChunkedDispatcher()
        self.layer_name = layer_name

    def ingest(self, fc: dict, owner_id: str, dataset_name: str, source_filename: Optional[str] = None) -> int:
        dataset = self.remote.ensure_dataset(owner_id, dataset_name, source_filename)
        layer = self.remote.ensure_layer(dataset["id"], self.layer_name)
        return self.dispatcher.dispatch(
            fc, lambda batch: self.remote.ingest_feature_collection(dataset["id"], layer["id"], batch)
        )
