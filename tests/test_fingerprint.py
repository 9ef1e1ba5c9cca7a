from fieldsync.fingerprint import (
    MATCH_BY_ATTRIBUTES,
    MATCH_BY_NAME,
    DatasetFingerprint,
    FingerprintIndex,
    Matcher,
    build_signature,
    feature_token,
    fingerprint_dataset,
    normalize_name,
    similarity,
)

from conftest import make_fc, make_feature


def fp(dataset_id, name, tokens):
    return DatasetFingerprint(id=dataset_id, name=name, signature=frozenset(tokens), feature_count=len(tokens))


def matcher_for(*datasets, **kwargs):
    return Matcher(FingerprintIndex(lambda: list(datasets)), **kwargs)


def test_feature_token_needs_two_groups():
    assert feature_token({"Grower": " Acme ", "Farm": "North", "Field": "A1"}) == "0:acme|1:north|2:a1"
    assert feature_token({"grower_name": "Acme", "field": "A1"}) == "0:acme|2:a1"
    assert feature_token({"Grower": "Acme", "Name": "Block 7"}) == "3:block 7"
    assert feature_token({"Grower": "Acme"}) is None
    assert feature_token({}) is None


def test_signature_collapses_duplicates():
    fc = make_fc([make_feature(field="A1")] * 5 + [make_feature(field="A2")] * 5)
    assert build_signature(fc) == {"0:acme|1:north|2:a1", "0:acme|1:north|2:a2"}


def test_normalize_name_strips_punctuation():
    assert normalize_name(" Smith-Farm 2024! ") == "smithfarm2024"


def test_overlap_is_symmetric():
    a = frozenset({"t1", "t2", "t3", "t4"})
    b = frozenset({"t1", "t2"})
    overlap_ab, score_ab = similarity(a, b)
    overlap_ba, score_ba = similarity(b, a)
    assert overlap_ab == overlap_ba == 2
    # precision 0.5 / recall 1.0 one way, the reverse the other way
    assert score_ab == score_ba == 0.75


def test_empty_signature_never_matches():
    m = matcher_for(fp("1", "anything", ["0:x|1:y"]))
    fc = make_fc([{"type": "Feature", "properties": {"colour": "red"}, "geometry": None}])
    assert m.match(fc, "anything") is None


def test_exact_name_beats_attribute_score():
    upload = make_fc([make_feature(field=f"F{i}") for i in range(6)])
    tokens = build_signature(upload)
    smith = fp("smith", "Smith Farm", ["0:other|1:thing"])
    twin = fp("twin", "Twin", tokens)
    result = matcher_for(twin, smith).match(upload, "smith farm")
    assert result.dataset.id == "smith"
    assert result.match_reason == MATCH_BY_NAME


def test_overlap_of_two_and_half_score_is_no_match():
    candidate = make_fc([make_feature(field=f"F{i}") for i in range(4)])
    shared = ["0:acme|1:north|2:f0", "0:acme|1:north|2:f1"]
    other = fp("o", "Other", shared + ["0:acme|1:north|2:x", "0:acme|1:north|2:y"])
    result = matcher_for(other).match(candidate, "unrelated")
    assert result is None


def test_overlap_of_three_matches_despite_low_score():
    candidate = make_fc([make_feature(field=f"F{i}") for i in range(10)])
    existing = ["0:acme|1:north|2:f0", "0:acme|1:north|2:f1", "0:acme|1:north|2:f2"]
    existing += [f"0:zed|1:south|2:{i}" for i in range(20)]
    result = matcher_for(fp("z", "Zed", existing)).match(candidate, "unrelated")
    assert result.match_reason == MATCH_BY_ATTRIBUTES
    assert result.overlap == 3
    assert result.score < 0.58


def test_best_score_wins_and_ties_keep_first():
    candidate = make_fc([make_feature(field=f"F{i}") for i in range(4)])
    tokens = build_signature(candidate)
    first = fp("first", "First", tokens)
    second = fp("second", "Second", tokens)
    weaker = fp("weak", "Weak", list(tokens)[:3] + ["0:q|1:r"])
    result = matcher_for(weaker, first, second).match(candidate, "new upload")
    assert result.dataset.id == "first"
    assert result.score == 1.0


def test_thresholds_are_configurable():
    candidate = make_fc([make_feature(field=f"F{i}") for i in range(4)])
    existing = fp("e", "E", ["0:acme|1:north|2:f0", "0:acme|1:north|2:f1", "0:x|1:y", "0:z|1:w"])
    assert matcher_for(existing).match(candidate, "n") is None
    assert matcher_for(existing, min_overlap=2).match(candidate, "n").dataset.id == "e"


def test_index_loads_once_until_invalidated():
    loads = []

    def loader():
        loads.append(1)
        return [fingerprint_dataset("1", "One", make_fc([make_feature()]))]

    index = FingerprintIndex(loader)
    index.get()
    index.get()
    assert len(loads) == 1
    index.invalidate()
    assert not index.loaded
    index.get()
    assert len(loads) == 2
