# fieldsync/fingerprint.py
"""
Content fingerprints for uploaded datasets.

A fingerprint is the set of grower/farm/field tokens found in a collection's
attributes. Re-exports of the same field set tend to keep those values while
the property keys drift, so two uploads are considered the same dataset when
their token sets overlap enough.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List, Optional, Tuple

logger = logging.getLogger(__name__)

GROWER_KEYS = ("grower_name", "grower", "growername", "client", "client_name", "customer", "owner")
FARM_KEYS = ("farm_name", "farm", "farmname", "ranch", "ranch_name")
FIELD_KEYS = ("field_name", "field", "fieldname", "block", "block_name", "paddock")
FALLBACK_KEYS = ("name", "title", "label", "id")

KEY_GROUPS = (GROWER_KEYS, FARM_KEYS, FIELD_KEYS)
FALLBACK_GROUP = len(KEY_GROUPS)

MATCH_BY_NAME = "name"
MATCH_BY_ATTRIBUTES = "attributes"


@dataclass(frozen=True)
class DatasetFingerprint:
    id: str
    name: str
    signature: FrozenSet[str]
    feature_count: int = 0


@dataclass
class MatchResult:
    dataset: DatasetFingerprint
    match_reason: str
    score: float = 1.0
    overlap: int = 0


def normalize_value(value):
    if value is None:
        return ""
    return str(value).strip().lower()


def normalize_name(name):
    return re.sub(r"[^a-z0-9]", "", (name or "").lower())


def _first_value(lowered, keys):
    for key in keys:
        value = normalize_value(lowered.get(key))
        if value:
            return value
    return ""


def feature_token(properties: Optional[dict]) -> Optional[str]:
    """Token for one feature; None when nothing recognisable is present."""
    lowered = {str(k).strip().lower(): v for k, v in (properties or {}).items()}
    resolved = []
    for index, keys in enumerate(KEY_GROUPS):
        value = _first_value(lowered, keys)
        if value:
            resolved.append(f"{index}:{value}")
    if len(resolved) >= 2:
        return "|".join(resolved)
    fallback = _first_value(lowered, FALLBACK_KEYS)
    if fallback:
        return f"{FALLBACK_GROUP}:{fallback}"
    return None


def build_signature(fc):
    tokens = set()
    for feature in (fc or {}).get("features") or []:
        token = feature_token((feature or {}).get("properties"))
        if token:
            tokens.add(token)
    return frozenset(tokens)


def fingerprint_dataset(dataset_id: str, name: str, fc: Optional[dict]) -> DatasetFingerprint:
    features = (fc or {}).get("features") or []
    return DatasetFingerprint(id=str(dataset_id), name=name or "", signature=build_signature(fc),
                              feature_count=len(features))


def similarity(candidate: FrozenSet[str], existing: FrozenSet[str]) -> Tuple[int, float]:
    """Return (overlap, score) where score averages precision and recall of candidate against existing."""
    if not candidate or not existing:
        return 0, 0.0
    overlap = len(candidate & existing)
    precision = overlap / len(candidate)
    recall = overlap / len(existing)
    return overlap, (precision + recall) / 2


class FingerprintIndex:
    """
    Lazily loaded list of the current user's dataset fingerprints.

    Stale as soon as anything is ingested; callers invalidate it explicitly.
    """

    def __init__(self, loader: Optional[Callable[[], List[DatasetFingerprint]]] = None):
        self._loader = loader
        self._fingerprints: Optional[List[DatasetFingerprint]] = None

    def set_loader(self, loader: Callable[[], List[DatasetFingerprint]]):
        self._loader = loader
        self._fingerprints = None

    def get(self) -> List[DatasetFingerprint]:
        if self._fingerprints is None:
            self._fingerprints = list(self._loader()) if self._loader else []
            logger.debug("Loaded %d dataset fingerprints", len(self._fingerprints))
        return self._fingerprints

    def invalidate(self):
        self._fingerprints = None

    @property
    def loaded(self) -> bool:
        return self._fingerprints is not None


@dataclass
class Matcher:
    index: FingerprintIndex
    min_overlap: int = 3
    min_score: float = 0.58
    last_signature: FrozenSet[str] = field(default=frozenset(), repr=False)

    def match(self, fc: dict, fallback_name: Optional[str]) -> Optional[MatchResult]:
        signature = build_signature(fc)
        self.last_signature = signature
        if not signature:
            return None

        existing = self.index.get()

        wanted = normalize_name(fallback_name)
        if wanted:
            for dataset in existing:
                if normalize_name(dataset.name) == wanted:
                    return MatchResult(dataset=dataset, match_reason=MATCH_BY_NAME)

        best: Optional[MatchResult] = None
        for dataset in existing:
            if not dataset.signature:
                continue
            overlap, score = similarity(signature, dataset.signature)
            if overlap < self.min_overlap and score < self.min_score:
                continue
            if best is None or score > best.score:
                best = MatchResult(dataset=dataset, match_reason=MATCH_BY_ATTRIBUTES, score=score, overlap=overlap)

        if best:
            logger.info("Matched upload to %s (score=%.2f, overlap=%d)", best.dataset.name, best.score, best.overlap)
        return best
