# fieldsync/readers.py
"""
File readers for the accepted upload formats.

Each reader returns the raw object graph it parsed; `normalize()` decides
what shape that is. Dispatch is by extension only.
"""
import io
import json
import logging
import re
import xml.etree.ElementTree as ET
import zipfile
from typing import Any, Dict, List, Optional

import shapefile  # pyshp

from .errors import ParseError, UnsupportedFileType

logger = logging.getLogger(__name__)

ACCEPTED = re.compile(r"\.(zip|kml|kmz|geojson|json)$", re.IGNORECASE)
DBF_ENCODINGS = ["utf-8", "cp1252", "latin1"]


def is_accepted(filename: str) -> bool:
    return bool(filename) and bool(ACCEPTED.search(filename))


def filename_stem(filename: Optional[str]) -> str:
    return ACCEPTED.sub("", filename or "dataset") or "dataset"


def read_upload(filename: str, data: bytes) -> Any:
    if not is_accepted(filename):
        raise UnsupportedFileType(
            "Unsupported file type. Please upload .zip (SHP), .kml/.kmz, or .geojson/.json"
        )
    ext = filename.rsplit(".", 1)[-1].lower()
    try:
        if ext == "zip":
            return read_zipped_shapefile(data)
        if ext == "kml":
            return read_kml(data)
        if ext == "kmz":
            return read_kmz(data)
        return read_geojson(data)
    except ParseError:
        raise
    except (zipfile.BadZipFile, shapefile.ShapefileException, ET.ParseError, UnicodeDecodeError, ValueError) as e:
        raise ParseError(f"Failed to parse {filename}: {e}") from e


# --- GeoJSON ---

def read_geojson(data: bytes) -> Any:
    try:
        return json.loads(data.decode("utf-8-sig"))
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON: {e}") from e


# --- Shapefile (zipped) ---

def _open_reader(shp: bytes, dbf: bytes, shx: Optional[bytes]) -> shapefile.Reader:
    last_error = None
    for enc in DBF_ENCODINGS:
        try:
            reader = shapefile.Reader(
                shp=io.BytesIO(shp),
                dbf=io.BytesIO(dbf),
                shx=io.BytesIO(shx) if shx else None,
                encoding=enc,
            )
            # force a decode so a wrong encoding fails here, not mid-iteration
            reader.records()
            return reader
        except UnicodeDecodeError as e:
            logger.debug("DBF decode failed with %s: %s", enc, e)
            last_error = e
    raise ParseError(f"Could not decode shapefile attributes with {DBF_ENCODINGS}: {last_error}")


def _shapefile_features(reader: shapefile.Reader) -> List[dict]:
    features = []
    for shape_record in reader.iterShapeRecords():
        shape = shape_record.shape
        geometry = None
        if shape.shapeType != shapefile.NULL and shape.points:
            geometry = shape.__geo_interface__
        features.append({
            "type": "Feature",
            "properties": shape_record.record.as_dict(date_strings=True),
            "geometry": geometry,
        })
    return features


def read_zipped_shapefile(data: bytes) -> List[dict]:
    """One FeatureCollection per .shp member found in the archive."""
    with zipfile.ZipFile(io.BytesIO(data)) as z:
        members = {name.lower(): name for name in z.namelist()}
        layers = []
        for lower, name in members.items():
            if not lower.endswith(".shp") or lower.startswith("__macosx/"):
                continue
            base = lower[:-4]
            dbf = members.get(base + ".dbf")
            if dbf is None:
                raise ParseError(f"{name} has no matching .dbf")
            shx = members.get(base + ".shx")
            reader = _open_reader(z.read(name), z.read(dbf), z.read(shx) if shx else None)
            layers.append({"type": "FeatureCollection", "features": _shapefile_features(reader)})
    if not layers:
        raise ParseError("Zip file must contain a .shp and .dbf pair.")
    return layers


# --- KML / KMZ ---

def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(el: ET.Element, name: str) -> Optional[ET.Element]:
    for c in el:
        if _local(c.tag) == name:
            return c
    return None


def _children(el: ET.Element, name: str) -> List[ET.Element]:
    return [c for c in el if _local(c.tag) == name]


def _parse_coordinates(text: Optional[str]) -> List[List[float]]:
    coords = []
    for token in (text or "").split():
        parts = token.split(",")
        if len(parts) < 2:
            continue
        coords.append([float(p) for p in parts[:3]])
    return coords


def _ring(boundary: Optional[ET.Element]) -> Optional[List[List[float]]]:
    if boundary is None:
        return None
    lr = _child(boundary, "LinearRing")
    coord_el = _child(lr, "coordinates") if lr is not None else None
    ring = _parse_coordinates(coord_el.text if coord_el is not None else None)
    return ring or None


def _geometry(el: ET.Element) -> Optional[dict]:
    name = _local(el.tag)
    if name == "Point":
        coords = _parse_coordinates(getattr(_child(el, "coordinates"), "text", None))
        return {"type": "Point", "coordinates": coords[0]} if coords else None
    if name == "LineString":
        coords = _parse_coordinates(getattr(_child(el, "coordinates"), "text", None))
        return {"type": "LineString", "coordinates": coords} if coords else None
    if name == "Polygon":
        rings = []
        outer = _ring(_child(el, "outerBoundaryIs"))
        if outer:
            rings.append(outer)
            for inner in _children(el, "innerBoundaryIs"):
                ring = _ring(inner)
                if ring:
                    rings.append(ring)
        return {"type": "Polygon", "coordinates": rings} if rings else None
    if name == "MultiGeometry":
        geometries = [g for g in (_geometry(c) for c in el) if g]
        return {"type": "GeometryCollection", "geometries": geometries} if geometries else None
    return None


def _placemark_properties(pm: ET.Element) -> Dict[str, Any]:
    props: Dict[str, Any] = {}
    for el in pm.iter():
        tag = _local(el.tag)
        if tag == "SimpleData" and el.get("name"):
            props[el.get("name")] = (el.text or "").strip()
        elif tag == "Data" and el.get("name"):
            value = _child(el, "value")
            props[el.get("name")] = (value.text or "").strip() if value is not None else ""
    for tag in ("name", "description"):
        el = _child(pm, tag)
        if el is not None and el.text and el.text.strip():
            props.setdefault(tag, el.text.strip())
    return props


def read_kml(data: Any) -> dict:
    text = data.decode("utf-8-sig") if isinstance(data, bytes) else data
    root = ET.fromstring(text)
    features = []
    for pm in root.iter():
        if _local(pm.tag) != "Placemark":
            continue
        geometry = None
        for c in pm:
            geometry = _geometry(c)
            if geometry:
                break
        features.append({"type": "Feature", "properties": _placemark_properties(pm), "geometry": geometry})
    return {"type": "FeatureCollection", "features": features}


def read_kmz(data: bytes) -> dict:
    with zipfile.ZipFile(io.BytesIO(data)) as z:
        kml_name = next((n for n in z.namelist() if n.lower().endswith(".kml")), None)
        if kml_name is None:
            raise ParseError("No KML file found inside KMZ.")
        return read_kml(z.read(kml_name))
