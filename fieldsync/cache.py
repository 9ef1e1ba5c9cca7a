# fieldsync/cache.py
"""
Local offline cache.

Two namespaces share one table: anonymous datasets keyed by name, and the last
cloud snapshot keyed by owner and dataset id. A snapshot is always replaced as
a whole inside one transaction. Read failures are logged and reported as an
empty cache; write failures raise CacheError.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from .errors import CacheError
from .mapping import AttributeMapping
from .models import SCOPE_ANON, SCOPE_CLOUD, CacheEntry, MappingRecord

logger = logging.getLogger(__name__)


@dataclass
class CachedDataset:
    id: str
    name: str
    geojson: dict
    feature_count: int = 0
    updated_at: Optional[datetime] = None
    source: str = "local"


def _feature_count(geojson):
    return len((geojson or {}).get("features") or [])


def _to_dataset(row):
    try:
        geojson = json.loads(row.geojson) if row.geojson else None
    except ValueError:
        logger.warning("Discarding unreadable cached geojson for %s/%s", row.scope, row.key)
        geojson = None
    return CachedDataset(
        id=row.key,
        name=row.name,
        geojson=geojson,
        feature_count=row.feature_count or 0,
        updated_at=row.updated_at,
        source="local" if row.scope == SCOPE_ANON else "cache",
    )


class LocalCache:

    def __init__(self, session_factory):
        self.session_factory = session_factory

    # --- anonymous scope ---

    def put_anonymous(self, name: str, geojson: dict) -> CachedDataset:
        now = datetime.utcnow()
        try:
            with self.session_factory() as db, db.begin():
                row = db.query(CacheEntry).filter_by(scope=SCOPE_ANON, owner="", key=name).first()
                if row is None:
                    row = CacheEntry(scope=SCOPE_ANON, owner="", key=name)
                    db.add(row)
                row.name = name
                row.geojson = json.dumps(geojson)
                row.feature_count = _feature_count(geojson)
                row.updated_at = now
        except SQLAlchemyError as e:
            raise CacheError(f"Could not save local dataset {name}: {e}") from e
        return CachedDataset(id=name, name=name, geojson=geojson,
                             feature_count=_feature_count(geojson), updated_at=now)

    def get_anonymous(self, name: str) -> Optional[CachedDataset]:
        try:
            with self.session_factory() as db:
                row = db.query(CacheEntry).filter_by(scope=SCOPE_ANON, owner="", key=name).first()
                return _to_dataset(row) if row else None
        except SQLAlchemyError as e:
            logger.error("Local cache read failed: %s", e)
            return None

    def list_anonymous(self) -> List[CachedDataset]:
        return self._list(SCOPE_ANON, "")

    def delete_anonymous(self, name: str) -> bool:
        try:
            with self.session_factory() as db, db.begin():
                deleted = db.query(CacheEntry).filter_by(scope=SCOPE_ANON, owner="", key=name).delete()
        except SQLAlchemyError as e:
            raise CacheError(f"Could not delete local dataset {name}: {e}") from e
        return bool(deleted)

    # --- cloud snapshot scope ---

    def replace_cloud_snapshot(self, owner: str, datasets: Iterable[CachedDataset]) -> int:
        now = datetime.utcnow()
        rows = [
            CacheEntry(
                scope=SCOPE_CLOUD, owner=owner, key=str(d.id), name=d.name,
                geojson=json.dumps(d.geojson), feature_count=_feature_count(d.geojson),
                updated_at=d.updated_at or now,
            )
            for d in datasets
        ]
        try:
            with self.session_factory() as db, db.begin():
                db.query(CacheEntry).filter_by(scope=SCOPE_CLOUD, owner=owner).delete()
                db.add_all(rows)
        except SQLAlchemyError as e:
            raise CacheError(f"Could not write cloud snapshot for {owner}: {e}") from e
        return len(rows)

    def list_cloud(self, owner: str) -> List[CachedDataset]:
        return self._list(SCOPE_CLOUD, owner)

    def clear_cloud(self, owner: str) -> int:
        try:
            with self.session_factory() as db, db.begin():
                return db.query(CacheEntry).filter_by(scope=SCOPE_CLOUD, owner=owner).delete()
        except SQLAlchemyError as e:
            raise CacheError(f"Could not clear cloud snapshot for {owner}: {e}") from e

    def _list(self, scope: str, owner: str) -> List[CachedDataset]:
        try:
            with self.session_factory() as db:
                rows = (db.query(CacheEntry)
                        .filter_by(scope=scope, owner=owner)
                        .order_by(CacheEntry.updated_at.desc())
                        .all())
                return [_to_dataset(r) for r in rows]
        except SQLAlchemyError as e:
            logger.error("Local cache read failed (%s/%s): %s", scope, owner, e)
            return []

    # --- remembered attribute mapping ---

    def load_mapping(self) -> Optional[AttributeMapping]:
        try:
            with self.session_factory() as db:
                row = db.query(MappingRecord).filter_by(remember=True).order_by(MappingRecord.id.desc()).first()
                if row is None:
                    return None
                return AttributeMapping.from_dict(json.loads(row.mapping))
        except (SQLAlchemyError, ValueError) as e:
            logger.error("Could not read remembered mapping: %s", e)
            return None

    def save_mapping(self, mapping: AttributeMapping, remember: bool = True):
        if not remember:
            return
        try:
            with self.session_factory() as db, db.begin():
                db.query(MappingRecord).delete()
                db.add(MappingRecord(mapping=json.dumps(mapping.to_dict()), remember=True,
                                     updated_at=datetime.utcnow()))
        except SQLAlchemyError as e:
            raise CacheError(f"Could not save attribute mapping: {e}") from e

    def clear_mapping(self):
        try:
            with self.session_factory() as db, db.begin():
                db.query(MappingRecord).delete()
        except SQLAlchemyError as e:
            raise CacheError(f"Could not clear attribute mapping: {e}") from e
