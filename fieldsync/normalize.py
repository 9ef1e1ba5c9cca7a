# fieldsync/normalize.py
"""
Turn whatever a vector reader produced into a flat GeoJSON FeatureCollection.

Readers disagree about the top-level shape: some hand back a FeatureCollection,
some a single Feature, a bare geometry or a list of Features. Each recognised
shape has a small parser returning a FeatureCollection or None; the first one
that succeeds wins. GeometryCollections are then expanded into sibling
Features and anything without a geometry is dropped.
"""
from typing import Any, Callable, List, Optional

from .errors import InvalidInput

FeatureCollection = dict


def feature_collection(features: List[dict]) -> FeatureCollection:
    return {"type": "FeatureCollection", "features": list(features)}


def _as_collection(obj: Any) -> Optional[FeatureCollection]:
    if isinstance(obj, dict) and obj.get("type") == "FeatureCollection":
        features = obj.get("features")
        return feature_collection(features if isinstance(features, list) else [])
    return None


def _as_feature(obj: Any) -> Optional[FeatureCollection]:
    if isinstance(obj, dict) and obj.get("type") == "Feature":
        return feature_collection([obj])
    return None


def _as_geometry(obj: Any) -> Optional[FeatureCollection]:
    if not isinstance(obj, dict) or not obj.get("type"):
        return None
    if "coordinates" in obj or (obj["type"] == "GeometryCollection" and "geometries" in obj):
        return feature_collection([{"type": "Feature", "properties": {}, "geometry": obj}])
    return None


def _as_feature_list(obj: Any) -> Optional[FeatureCollection]:
    if not isinstance(obj, list) or not obj:
        return None
    first = obj[0]
    if isinstance(first, dict) and first.get("type") == "Feature":
        return feature_collection(obj)
    # zipped archives holding several shapefiles come back as one collection per layer
    if all(isinstance(item, dict) and item.get("type") == "FeatureCollection" for item in obj):
        features = []
        for item in obj:
            features.extend(item.get("features") or [])
        return feature_collection(features)
    return None


SHAPE_PARSERS: List[Callable[[Any], Optional[FeatureCollection]]] = [
    _as_collection,
    _as_feature,
    _as_geometry,
    _as_feature_list,
]


def to_feature_collection(obj: Any) -> FeatureCollection:
    """Wrap a parsed object into a FeatureCollection, or raise InvalidInput."""
    for parser in SHAPE_PARSERS:
        fc = parser(obj)
        if fc is not None:
            return fc
    raise InvalidInput(f"Unrecognised GeoJSON shape: {type(obj).__name__}")


def _expand(geometry: Any) -> List[dict]:
    if not geometry or not isinstance(geometry, dict):
        return []
    if geometry.get("type") == "GeometryCollection" and isinstance(geometry.get("geometries"), list):
        out = []
        for child in geometry["geometries"]:
            out.extend(_expand(child))
        return out
    return [geometry]


def flatten(fc: FeatureCollection) -> FeatureCollection:
    out = []
    for feature in fc.get("features") or []:
        if not isinstance(feature, dict) or not isinstance(feature.get("geometry"), dict):
            continue
        if not feature["geometry"]:
            continue
        properties = feature.get("properties")
        if not isinstance(properties, dict):
            properties = {}
        geometry = feature["geometry"]
        if geometry.get("type") == "GeometryCollection":
            for child in _expand(geometry):
                out.append({"type": "Feature", "properties": dict(properties), "geometry": child})
        else:
            normalised = dict(feature)
            normalised["type"] = "Feature"
            normalised["properties"] = properties
            out.append(normalised)
    return feature_collection(out)


def normalize(obj: Any) -> FeatureCollection:
    return flatten(to_feature_collection(obj))
