import pytest

from fieldsync.errors import RemoteFatalError, RemoteTransientError
from fieldsync.ingest import ChunkedDispatcher, HierarchyIngestor, LayerIngestor

from conftest import FakeRemote, make_fc, square


def features(n):
    return make_fc([{"type": "Feature", "geometry": square(i, 0),
                     "properties": {"grower_name": "Acme", "farm_name": "North", "field_name": f"F{i}"}}
                    for i in range(n)])


class Endpoint:
    """Counts what it accepts; times out on batches larger than `limit`."""

    def __init__(self, limit=None, fail_on=None):
        self.limit = limit
        self.fail_on = fail_on
        self.sizes = []
        self.accepted = 0

    def __call__(self, batch):
        n = len(batch["features"])
        self.sizes.append(n)
        if self.fail_on is not None and len(self.sizes) == self.fail_on:
            raise RemoteFatalError("permission denied", code="42501")
        if self.limit is not None and n > self.limit:
            raise RemoteTransientError("canceling statement due to statement timeout", code="57014")
        self.accepted += n
        return n


def test_small_collection_is_one_call():
    endpoint = Endpoint()
    assert ChunkedDispatcher(250, 50).dispatch(features(40), endpoint) == 40
    assert endpoint.sizes == [40]


def test_large_collection_is_sliced_in_order():
    endpoint = Endpoint()
    total = ChunkedDispatcher(250, 50).dispatch(features(600), endpoint)
    assert total == 600
    assert endpoint.sizes == [250, 250, 100]


def test_empty_collection_sends_nothing():
    endpoint = Endpoint()
    assert ChunkedDispatcher().dispatch(make_fc([]), endpoint) == 0
    assert endpoint.sizes == []


@pytest.mark.parametrize("count,chunk,floor,limit", [
    (1000, 250, 50, 60),
    (777, 300, 20, 25),
    (251, 250, 50, 100),
    (90, 250, 10, 11),
])
def test_timeouts_halve_until_accepted(count, chunk, floor, limit):
    endpoint = Endpoint(limit=limit)
    total = ChunkedDispatcher(chunk, floor).dispatch(features(count), endpoint)
    assert total == endpoint.accepted == count


def test_halves_are_sent_left_first():
    endpoint = Endpoint(limit=100)
    ChunkedDispatcher(250, 50).dispatch(features(250), endpoint)
    assert endpoint.sizes == [250, 125, 63, 62, 125, 63, 62]


def test_timeout_at_floor_is_fatal_and_keeps_earlier_count():
    endpoint = Endpoint(limit=10)
    with pytest.raises(RemoteFatalError) as info:
        ChunkedDispatcher(100, 50).dispatch(features(120), endpoint)
    assert isinstance(info.value.__cause__, RemoteTransientError)
    assert info.value.inserted == 0


def test_fatal_error_is_not_retried_and_reports_partial_success():
    endpoint = Endpoint(fail_on=3)
    with pytest.raises(RemoteFatalError) as info:
        ChunkedDispatcher(100, 50).dispatch(features(450), endpoint)
    assert endpoint.sizes == [100, 100, 100]
    assert info.value.inserted == 200


def test_single_feature_timeout_cannot_split():
    endpoint = Endpoint(limit=0)
    with pytest.raises(RemoteFatalError):
        ChunkedDispatcher(250, 1).dispatch(features(1), endpoint)
    assert endpoint.sizes == [1]


def test_hierarchy_ingest_merges_summaries():
    remote = FakeRemote()
    result = HierarchyIngestor(remote, ChunkedDispatcher(4, 2)).ingest(features(10), "owner-1")
    assert result.inserted == 10
    assert result.summary.fields_inserted == 10
    assert result.batches == 3


def test_replace_missing_only_for_single_batch():
    remote = FakeRemote()
    HierarchyIngestor(remote, ChunkedDispatcher(4, 2)).ingest(features(3), "o")
    HierarchyIngestor(remote, ChunkedDispatcher(4, 2)).ingest(features(10), "o")
    assert remote.calls[0] == (3, True)
    assert all(replace is False for _, replace in remote.calls[1:])


def test_replace_missing_dropped_once_batch_is_halved():
    remote = FakeRemote(timeout_above=2)
    HierarchyIngestor(remote, ChunkedDispatcher(4, 1)).ingest(features(4), "o")
    assert remote.calls == [(4, True), (2, False), (2, False)]


class LayerRemote:
    def __init__(self):
        self.batches = []

    def ensure_dataset(self, owner_id, name, source_filename=None):
        return {"id": "ds-1", "name": name}

    def ensure_layer(self, dataset_id, name="uploaded"):
        return {"id": "ly-1", "dataset_id": dataset_id}

    def ingest_feature_collection(self, dataset_id, layer_id, fc):
        self.batches.append((dataset_id, layer_id, len(fc["features"])))
        return len(fc["features"])


def test_layer_ingest_uses_dataset_and_layer_ids():
    remote = LayerRemote()
    count = LayerIngestor(remote, ChunkedDispatcher(5, 2)).ingest(features(12), "o", "Acme", "acme.zip")
    assert count == 12
    assert remote.batches == [("ds-1", "ly-1", 5), ("ds-1", "ly-1", 5), ("ds-1", "ly-1", 2)]
