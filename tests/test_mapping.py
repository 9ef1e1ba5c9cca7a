import pytest

from fieldsync.errors import EmptyResultError, MappingCancelled
from fieldsync.mapping import (
    AttributeMapper,
    AttributeMapping,
    MappingDecision,
    StaticMappingProvider,
    apply_mapping,
    detect_mapping,
    sample_properties,
)
from fieldsync.sync import SessionContext

from conftest import make_fc, square

CUSTOM = AttributeMapping(grower="col_a", farm="col_b", field="col_c", crop="col_d")


def custom_feature(a="Acme", b="North", c="A1", d="Corn"):
    return {"type": "Feature", "geometry": square(),
            "properties": {"col_a": a, "col_b": b, "col_c": c, "col_d": d}}


def mapper(cache, decision=None, context=None, **kwargs):
    provider = StaticMappingProvider(decision)
    return AttributeMapper(context or SessionContext(), cache, provider, **kwargs), provider


def test_incomplete_features_are_filtered_and_counted():
    complete = [custom_feature(c=f"F{i}") for i in range(7)]
    incomplete = [custom_feature(a=""), custom_feature(b=None), custom_feature(c="   ")]
    result = apply_mapping(make_fc(complete + incomplete), CUSTOM)
    assert len(result.collection["features"]) == 7
    assert result.dropped == 3


def test_mapping_writes_canonical_names_as_trimmed_strings():
    fc = make_fc([custom_feature(a=" Acme ", c=12, d=None)])
    props = apply_mapping(fc, CUSTOM).collection["features"][0]["properties"]
    assert props["grower_name"] == "Acme"
    assert props["field_name"] == "12"
    assert props["crop_type"] == ""
    assert props["col_a"] == " Acme "


def test_known_key_names_need_no_prompt(cache):
    fc = make_fc([{"type": "Feature", "geometry": square(),
                   "properties": {"GROWER": "Acme", "Farm_Name": "North", "field": "A1", "Crop": "Soy"}}])
    m, provider = mapper(cache)
    mapping = m.resolve(fc)
    assert mapping == AttributeMapping(grower="GROWER", farm="Farm_Name", field="field", crop="Crop")
    assert provider.requests == 0
    assert detect_mapping(["a", "b"]) is None


def test_cancel_raises_with_observed_keys(cache):
    m, provider = mapper(cache, decision=None)
    with pytest.raises(MappingCancelled) as info:
        m.resolve(make_fc([custom_feature()]))
    assert info.value.observed_keys == ["col_a", "col_b", "col_c", "col_d"]
    assert info.value.samples["col_a"] == ["Acme"]
    assert provider.requests == 1


def test_mapping_to_missing_column_is_rejected(cache):
    bad = AttributeMapping(grower="col_a", farm="col_b", field="nope")
    m, _ = mapper(cache, MappingDecision(bad))
    with pytest.raises(MappingCancelled):
        m.resolve(make_fc([custom_feature()]))


def test_remembered_mapping_is_persisted_and_reused(cache):
    m, provider = mapper(cache, MappingDecision(CUSTOM, remember=True))
    assert m.resolve(make_fc([custom_feature()])) == CUSTOM
    assert cache.load_mapping() == CUSTOM

    fresh, fresh_provider = mapper(cache, decision=None)
    assert fresh.resolve(make_fc([custom_feature()])) == CUSTOM
    assert fresh_provider.requests == 0


def test_remember_replaces_previous_mapping(cache):
    cache.save_mapping(AttributeMapping(grower="x", farm="y", field="z"))
    m, provider = mapper(cache, MappingDecision(CUSTOM, remember=True))
    m.resolve(make_fc([custom_feature()]))
    assert provider.requests == 1
    assert cache.load_mapping() == CUSTOM


def test_unremembered_mapping_lives_for_the_session_only(cache):
    context = SessionContext()
    m, provider = mapper(cache, MappingDecision(CUSTOM, remember=False), context=context)
    m.resolve(make_fc([custom_feature()]))
    assert cache.load_mapping() is None
    assert context.session_mapping == CUSTOM

    m.provider = StaticMappingProvider(None)
    assert m.resolve(make_fc([custom_feature()])) == CUSTOM

    context.reset()
    with pytest.raises(MappingCancelled):
        m.resolve(make_fc([custom_feature()]))


def test_sampling_caps_features_and_examples():
    features = [custom_feature(c=f"F{i}") for i in range(300)]
    features[250]["properties"]["late_key"] = "x"
    keys, samples = sample_properties(make_fc(features), sample_limit=200, example_limit=5)
    assert "late_key" not in keys
    assert samples["col_c"] == ["F0", "F1", "F2", "F3", "F4"]
    assert samples["col_a"] == ["Acme"]


def test_explicit_decision_beats_remembered_and_session_mappings(cache):
    context = SessionContext()
    cache.save_mapping(CUSTOM)
    context.session_mapping = CUSTOM
    other = AttributeMapping(grower="col_d", farm="col_b", field="col_c")
    m, provider = mapper(cache, context=context)
    m.explicit = MappingDecision(other, remember=True)

    assert m.resolve(make_fc([custom_feature()])) == other
    assert provider.requests == 0
    assert cache.load_mapping() == other
    assert context.session_mapping == other


def test_explicit_decision_that_does_not_fit_is_skipped(cache):
    m, _ = mapper(cache)
    m.explicit = MappingDecision(AttributeMapping(grower="x", farm="y", field="z"))
    fc = make_fc([{"type": "Feature", "geometry": square(),
                   "properties": {"Grower": "Acme", "Farm": "North", "Field": "A1"}}])
    assert m.resolve(fc) == AttributeMapping(grower="Grower", farm="Farm", field="Field")


def test_features_without_attributes_are_rejected_not_prompted(cache):
    m, provider = mapper(cache)
    with pytest.raises(EmptyResultError):
        m.resolve(make_fc([{"type": "Feature", "geometry": square(), "properties": {}}]))
    assert provider.requests == 0
