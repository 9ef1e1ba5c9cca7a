import pytest

from fieldsync.cache import LocalCache
from fieldsync.database import make_engine, make_session_factory
from fieldsync.errors import RemoteFatalError, RemoteTransientError
from fieldsync.schemas import FarmRow, FieldRow, GrowerRow, HierarchyRows, IngestSummary


def square(x=0.0, y=0.0, size=1.0):
    return {
        "type": "Polygon",
        "coordinates": [[[x, y], [x + size, y], [x + size, y + size], [x, y + size], [x, y]]],
    }


def make_feature(grower="Acme", farm="North", field="A1", **extra):
    props = {"Grower": grower, "Farm": farm, "Field": field}
    props.update(extra)
    return {"type": "Feature", "properties": props, "geometry": square()}


def make_fc(features):
    return {"type": "FeatureCollection", "features": list(features)}


class FakeRemote:
    """In-memory stand-in for the remote store, keyed on grower/farm/field names."""

    def __init__(self, timeout_above=None):
        self.timeout_above = timeout_above
        self.token = None
        self.calls = []
        self.accepted = 0
        self.fail_ingest = None
        self.fail_fetch = None
        self.growers = {}
        self.farms = {}
        self.fields = {}

    def set_token(self, token):
        self.token = token

    def ingest_grower_hierarchy(self, fc, owner_id, replace_missing=True):
        n = len(fc["features"])
        self.calls.append((n, replace_missing))
        if self.fail_ingest is not None:
            raise self.fail_ingest
        if self.timeout_above is not None and n > self.timeout_above:
            raise RemoteTransientError("canceling statement due to statement timeout", code="57014")
        inserted = updated = 0
        for feature in fc["features"]:
            p = feature["properties"]
            grower_id = p["grower_name"].lower()
            farm_id = f"{grower_id}/{p['farm_name'].lower()}"
            field_id = f"{farm_id}/{p['field_name'].lower()}"
            self.growers[grower_id] = GrowerRow(id=grower_id, name=p["grower_name"], mnet=p.get("mnet", False))
            self.farms[farm_id] = FarmRow(id=farm_id, name=p["farm_name"], grower_id=grower_id)
            if field_id in self.fields:
                updated += 1
            else:
                inserted += 1
            self.fields[field_id] = FieldRow(id=field_id, name=p["field_name"], farm_id=farm_id,
                                             boundary=feature["geometry"], properties=p)
        self.accepted += n
        return IngestSummary(fields_inserted=inserted, fields_updated=updated)

    def fetch_hierarchy(self, owner_id):
        if self.fail_fetch is not None:
            raise self.fail_fetch
        return HierarchyRows(growers=list(self.growers.values()), farms=list(self.farms.values()),
                             fields=list(self.fields.values()))


@pytest.fixture
def session_factory():
    return make_session_factory(make_engine("sqlite://"))


@pytest.fixture
def cache(session_factory):
    return LocalCache(session_factory)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def unreachable():
    return RemoteFatalError("connection refused")
