# fieldsync/mapping.py
"""
Map arbitrary source property keys onto grower/farm/field/crop.

A mapping supplied with the upload is used whenever it fits the file. Known
key names are picked up automatically. Otherwise a session or remembered
mapping is reused if it still fits the file, and failing that the injected
`MappingProvider` is asked to decide. A provider returning None cancels the
file (and the rest of its batch).
"""
import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Protocol, Tuple

from .errors import CacheError, EmptyResultError, MappingCancelled
from .fingerprint import FARM_KEYS, FIELD_KEYS, GROWER_KEYS

logger = logging.getLogger(__name__)

CROP_KEYS = ("crop_type", "crop", "croptype", "crop_name", "commodity")

CANONICAL_FIELDS = {
    "grower": "grower_name",
    "farm": "farm_name",
    "field": "field_name",
    "crop": "crop_type",
}
REQUIRED = ("grower", "farm", "field")


@dataclass
class AttributeMapping:
    grower: str
    farm: str
    field: str
    crop: Optional[str] = None

    def is_usable(self, observed_keys) -> bool:
        observed = set(observed_keys)
        return all(getattr(self, role) and getattr(self, role) in observed for role in REQUIRED)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["AttributeMapping"]:
        if not data:
            return None
        return cls(
            grower=data.get("grower") or "",
            farm=data.get("farm") or "",
            field=data.get("field") or "",
            crop=data.get("crop") or None,
        )


@dataclass
class MappingDecision:
    mapping: AttributeMapping
    remember: bool = False


@dataclass
class MappedCollection:
    collection: dict
    dropped: int
    mapping: AttributeMapping


class MappingProvider(Protocol):
    def request_mapping(self, observed_keys: List[str], samples: Dict[str, List[str]],
                        remembered: Optional[AttributeMapping]) -> Optional[MappingDecision]:
        ...


class StaticMappingProvider:
    """Answers every request with the same decision (None cancels)."""

    def __init__(self, decision: Optional[MappingDecision] = None):
        self.decision = decision
        self.requests = 0

    def request_mapping(self, observed_keys, samples, remembered):
        self.requests += 1
        return self.decision


def sample_properties(fc: dict, sample_limit: int = 200, example_limit: int = 5) -> Tuple[List[str], Dict[str, List[str]]]:
    keys: List[str] = []
    samples: Dict[str, List[str]] = {}
    for feature in (fc.get("features") or [])[:sample_limit]:
        for key, value in ((feature or {}).get("properties") or {}).items():
            if key not in samples:
                keys.append(key)
                samples[key] = []
            text = "" if value is None else str(value).strip()
            if text and text not in samples[key] and len(samples[key]) < example_limit:
                samples[key].append(text)
    return keys, samples


def detect_mapping(observed_keys: List[str]) -> Optional[AttributeMapping]:
    """Mapping from well-known key names, or None if a required role has no match."""
    by_lower = {}
    for key in observed_keys:
        by_lower.setdefault(str(key).strip().lower(), key)

    def pick(aliases):
        return next((by_lower[a] for a in aliases if a in by_lower), None)

    grower, farm, field = pick(GROWER_KEYS), pick(FARM_KEYS), pick(FIELD_KEYS)
    if not (grower and farm and field):
        return None
    return AttributeMapping(grower=grower, farm=farm, field=field, crop=pick(CROP_KEYS))


def _text(value) -> str:
    return "" if value is None else str(value).strip()


def apply_mapping(fc: dict, mapping: AttributeMapping) -> MappedCollection:
    kept = []
    dropped = 0
    for feature in fc.get("features") or []:
        source = feature.get("properties") or {}
        properties = dict(source)
        for role, canonical in CANONICAL_FIELDS.items():
            key = getattr(mapping, role)
            if key:
                properties[canonical] = _text(source.get(key))
        if not all(properties.get(CANONICAL_FIELDS[role]) for role in REQUIRED):
            dropped += 1
            continue
        mapped = dict(feature)
        mapped["properties"] = properties
        kept.append(mapped)
    if dropped:
        logger.info("Dropped %d feature(s) missing grower/farm/field values", dropped)
    return MappedCollection(collection={"type": "FeatureCollection", "features": kept},
                            dropped=dropped, mapping=mapping)


class AttributeMapper:

    def __init__(self, context, store, provider: Optional[MappingProvider] = None,
                 sample_limit: int = 200, example_limit: int = 5):
        self.context = context
        self.store = store
        self.provider = provider
        # a decision supplied up front with the upload; wins whenever it fits the file
        self.explicit: Optional[MappingDecision] = None
        self.sample_limit = sample_limit
        self.example_limit = example_limit

    def resolve(self, fc: dict) -> AttributeMapping:
        observed, samples = sample_properties(fc, self.sample_limit, self.example_limit)
        if not observed:
            raise EmptyResultError("Features carry no attributes to map to grower, farm and field.")

        if self.explicit and self.explicit.mapping.is_usable(observed):
            return self._accept(self.explicit)

        detected = detect_mapping(observed)
        if detected:
            return detected

        session_mapping = self.context.session_mapping
        if session_mapping and session_mapping.is_usable(observed):
            return session_mapping

        remembered = self.store.load_mapping()
        if remembered and remembered.is_usable(observed):
            logger.debug("Reusing remembered attribute mapping %s", remembered.to_dict())
            return remembered

        decision = self.provider.request_mapping(observed, samples, remembered) if self.provider else None
        if decision is None:
            raise MappingCancelled(observed_keys=observed, samples=samples)
        if not decision.mapping.is_usable(observed):
            raise MappingCancelled("Mapping must assign grower, farm and field to columns in this file",
                                   observed_keys=observed, samples=samples)
        return self._accept(decision)

    def _accept(self, decision: MappingDecision) -> AttributeMapping:
        if decision.remember:
            try:
                self.store.save_mapping(decision.mapping, remember=True)
            except CacheError as e:
                logger.warning("Mapping applied but not remembered: %s", e)
        self.context.session_mapping = decision.mapping
        return decision.mapping

    def map_collection(self, fc: dict) -> MappedCollection:
        return apply_mapping(fc, self.resolve(fc))
