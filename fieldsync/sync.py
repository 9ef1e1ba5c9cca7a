# fieldsync/sync.py
"""
Session state and local/cloud reconciliation.

Anonymous sessions only see the anonymous cache. Logging in pushes every
anonymous dataset through hierarchy ingestion (deleting each local copy once
the server accepted it), then pulls the owner's grower/farm/field rows and
rewrites the cloud snapshot. Logging out drops that snapshot.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .cache import CachedDataset, LocalCache
from .errors import CacheError, RemoteError
from .fingerprint import DatasetFingerprint, FingerprintIndex, fingerprint_dataset
from .schemas import GrowerRow, HierarchyRows

logger = logging.getLogger(__name__)

SOURCE_CLOUD = "cloud"
SOURCE_CACHE = "cache"
SOURCE_ERROR = "error"
SOURCE_LOCAL = "local"


class SessionContext:
    """Everything that lives for one user session and is dropped at login/logout."""

    def __init__(self):
        self.owner_id: Optional[str] = None
        self.access_token: Optional[str] = None
        self.fingerprints = FingerprintIndex()
        self.rendered_layers: List[Any] = []
        self.session_mapping = None

    @property
    def authenticated(self) -> bool:
        return self.owner_id is not None

    def invalidate(self):
        self.fingerprints.invalidate()

    def reset(self):
        self.owner_id = None
        self.access_token = None
        self.fingerprints.invalidate()
        self.rendered_layers = []
        self.session_mapping = None


@dataclass
class DatasetListing:
    source: str
    datasets: List[CachedDataset] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class MigrationReport:
    migrated: int = 0
    failed: List[str] = field(default_factory=list)


@dataclass
class LoginReport:
    owner_id: str
    migration: MigrationReport
    listing: DatasetListing


@dataclass
class GrowerDatasets:
    grower: Optional[GrowerRow]
    datasets: List[CachedDataset]
    field_count: int


GrowerCallback = Callable[[GrowerRow, List[CachedDataset], int, int, int], None]


def _field_feature(f, farm, grower):
    properties = dict(f.properties)
    properties.update({
        "field_id": f.id,
        "field_name": f.name or properties.get("field_name") or "",
        "farm_name": (farm.name if farm else None) or properties.get("farm_name") or "",
        "grower_name": (grower.name if grower else None) or properties.get("grower_name") or "",
        "mnet": bool(grower.mnet) if grower else False,
    })
    if f.crop_type:
        properties["crop_type"] = f.crop_type
    if f.area is not None:
        properties["area"] = f.area
    if f.perimeter is not None:
        properties["perimeter"] = f.perimeter
    return {"type": "Feature", "id": f.id, "properties": properties, "geometry": f.boundary}


def group_hierarchy(rows: HierarchyRows) -> List[GrowerDatasets]:
    growers = {g.id: g for g in rows.growers}
    farms = {f.id: f for f in rows.farms}

    groups: Dict[str, Dict[str, Any]] = {}
    order: List[str] = [g.id for g in rows.growers]
    for f in rows.fields:
        if not f.boundary:
            continue
        farm = farms.get(f.farm_id)
        grower = growers.get(farm.grower_id) if farm else None
        if grower is not None:
            key, name = grower.id, grower.name or grower.id
        elif farm is not None:
            key, name = f"farm:{farm.id}", farm.name or farm.id
        else:
            continue
        if key not in groups:
            groups[key] = {"name": name, "grower": grower, "features": [], "updated_at": None}
            if key not in order:
                order.append(key)
        group = groups[key]
        group["features"].append(_field_feature(f, farm, grower))
        if f.updated_at and (group["updated_at"] is None or f.updated_at > group["updated_at"]):
            group["updated_at"] = f.updated_at

    out = []
    for key in order:
        group = groups.get(key)
        if group is None:
            out.append(GrowerDatasets(grower=growers.get(key), datasets=[], field_count=0))
            continue
        dataset = CachedDataset(
            id=key,
            name=group["name"],
            geojson={"type": "FeatureCollection", "features": group["features"]},
            feature_count=len(group["features"]),
            updated_at=group["updated_at"] or datetime.utcnow(),
            source=SOURCE_CLOUD,
        )
        out.append(GrowerDatasets(grower=group["grower"], datasets=[dataset], field_count=len(group["features"])))
    return out


class SyncReconciler:

    def __init__(self, context: SessionContext, cache: LocalCache, remote, ingestor):
        self.context = context
        self.cache = cache
        self.remote = remote
        self.ingestor = ingestor
        context.fingerprints.set_loader(self.known_fingerprints)

    def known_fingerprints(self) -> List[DatasetFingerprint]:
        listing = self.list_datasets()
        return [fingerprint_dataset(d.id, d.name, d.geojson) for d in listing.datasets]

    def login(self, owner_id: str, access_token: Optional[str] = None,
              on_grower: Optional[GrowerCallback] = None) -> LoginReport:
        self.context.reset()
        self.context.owner_id = owner_id
        self.context.access_token = access_token
        self.remote.set_token(access_token)

        migration = self.migrate_local()
        if migration.migrated:
            logger.info("Saved %d local dataset(s) to account %s", migration.migrated, owner_id)
        listing = self.list_datasets(on_grower=on_grower)
        return LoginReport(owner_id=owner_id, migration=migration, listing=listing)

    def migrate_local(self) -> MigrationReport:
        report = MigrationReport()
        owner_id = self.context.owner_id
        if owner_id is None:
            return report
        for entry in self.cache.list_anonymous():
            try:
                self.ingestor.ingest(entry.geojson or {"type": "FeatureCollection", "features": []}, owner_id)
            except RemoteError as e:
                logger.error("Could not migrate local dataset %s: %s", entry.name, e)
                report.failed.append(entry.name)
                continue
            try:
                self.cache.delete_anonymous(entry.name)
            except CacheError as e:
                logger.error("Migrated %s but could not remove the local copy: %s", entry.name, e)
            report.migrated += 1
        if report.migrated:
            self.context.invalidate()
        return report

    def refresh(self, on_grower: Optional[GrowerCallback] = None) -> DatasetListing:
        """Live fetch of the owner's rows; rewrites the cloud snapshot. Raises RemoteError."""
        owner_id = self.context.owner_id
        rows = self.remote.fetch_hierarchy(owner_id)
        groups = group_hierarchy(rows)
        datasets = []
        total = len(groups)
        for index, group in enumerate(groups, start=1):
            datasets.extend(group.datasets)
            if on_grower and group.grower is not None:
                on_grower(group.grower, group.datasets, group.field_count, index, total)
        try:
            self.cache.replace_cloud_snapshot(owner_id, datasets)
        except CacheError as e:
            logger.error("Cloud snapshot not cached: %s", e)
        return DatasetListing(source=SOURCE_CLOUD, datasets=datasets)

    def list_datasets(self, on_grower: Optional[GrowerCallback] = None) -> DatasetListing:
        if not self.context.authenticated:
            return DatasetListing(source=SOURCE_LOCAL, datasets=self.cache.list_anonymous())
        try:
            return self.refresh(on_grower=on_grower)
        except RemoteError as e:
            logger.warning("Could not load datasets from the cloud: %s", e)
            cached = self.cache.list_cloud(self.context.owner_id)
            if cached:
                return DatasetListing(source=SOURCE_CACHE, datasets=cached, error=str(e))
            return DatasetListing(source=SOURCE_ERROR, error=str(e))

    def load_dataset(self, key: str) -> Optional[CachedDataset]:
        if not self.context.authenticated:
            return self.cache.get_anonymous(key)
        for dataset in self.list_datasets().datasets:
            if dataset.id == key or dataset.name == key:
                return dataset
        return None

    def logout(self):
        owner_id = self.context.owner_id
        if owner_id is not None:
            try:
                self.cache.clear_cloud(owner_id)
            except CacheError as e:
                logger.error("Could not clear cloud snapshot for %s: %s", owner_id, e)
        self.context.reset()
        self.remote.set_token(None)
