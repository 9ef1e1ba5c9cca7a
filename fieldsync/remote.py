# fieldsync/remote.py
"""
HTTP client for the remote grower/farm/field store.

The store speaks PostgREST: tables under /rest/v1/<table>, stored procedures
under /rest/v1/rpc/<name>. Errors come back as {"code", "message", ...};
statement timeouts are raised as RemoteTransientError so callers can split
the batch, everything else as RemoteFatalError.
"""
import logging
from typing import Any, Dict, Optional

import requests

from .errors import RemoteFatalError, classify_remote_error
from .schemas import HierarchyRows, IngestSummary

logger = logging.getLogger(__name__)

HIERARCHY_RPC = "ingest_grower_hierarchy"
FEATURE_COLLECTION_RPC = "ingest_featurecollection"


class RemoteStore:

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 60,
                 session: Optional[requests.Session] = None, token: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.token = token
        self.session = session or requests.Session()

    def set_token(self, token: Optional[str]):
        self.token = token

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        bearer = self.token or self.api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, path: str, json: Any = None, params: Optional[dict] = None,
                 headers: Optional[dict] = None) -> Any:
        url = f"{self.base_url}/rest/v1/{path}"
        logger.debug("%s %s", method, url)
        try:
            r = self.session.request(method, url, json=json, params=params,
                                     headers=self._headers(headers), timeout=self.timeout)
        except requests.RequestException as e:
            raise RemoteFatalError(f"Request to {url} failed: {e}") from e

        try:
            body = r.json() if r.content else None
        except ValueError:
            body = None

        if r.status_code >= 400:
            data = body if isinstance(body, dict) else {}
            message = data.get("message") or data.get("error") or r.text or f"HTTP {r.status_code}"
            raise classify_remote_error(message, code=data.get("code"), status_code=r.status_code,
                                        response_data=data)
        return body

    def rpc(self, name: str, params: Dict[str, Any]) -> Any:
        return self._request("POST", f"rpc/{name}", json=params)

    def ingest_grower_hierarchy(self, fc: dict, owner_id: str, replace_missing: bool = True) -> IngestSummary:
        data = self.rpc(HIERARCHY_RPC, {
            "p_fc": fc,
            "p_owner_id": owner_id,
            "p_replace_missing": replace_missing,
        })
        if isinstance(data, list):
            data = data[0] if data else {}
        return IngestSummary.model_validate(data or {})

    def ingest_feature_collection(self, dataset_id: str, layer_id: str, fc: dict) -> int:
        data = self.rpc(FEATURE_COLLECTION_RPC, {
            "p_dataset_id": dataset_id,
            "p_layer_id": layer_id,
            "p_fc": fc,
        })
        return int(data or 0)

    def _upsert_one(self, table: str, row: dict, on_conflict: str) -> dict:
        data = self._request(
            "POST", table, json=row, params={"on_conflict": on_conflict},
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        if isinstance(data, list):
            data = data[0] if data else None
        if not data:
            raise RemoteFatalError(f"Upsert into {table} returned no row")
        return data

    def ensure_dataset(self, owner_id: str, name: str, source_filename: Optional[str] = None) -> dict:
        return self._upsert_one("datasets", {
            "user_id": owner_id,
            "name": name,
            "source_filename": source_filename or name,
        }, on_conflict="user_id,name")

    def ensure_layer(self, dataset_id: str, name: str = "uploaded") -> dict:
        return self._upsert_one("layers", {"dataset_id": dataset_id, "name": name},
                                on_conflict="dataset_id,name")

    def fetch_hierarchy(self, owner_id: str) -> HierarchyRows:
        owner = {"owner_id": f"eq.{owner_id}"}
        growers = self._request("GET", "growers", params={**owner, "select": "id,name,mnet", "order": "name"})
        farms = self._request("GET", "farms", params={**owner, "select": "id,name,grower_id"})
        fields = self._request("GET", "fields", params={
            **owner,
            "select": "id,name,farm_id,boundary,area,perimeter,crop_type,properties,updated_at",
        })
        return HierarchyRows.model_validate({
            "growers": growers or [],
            "farms": farms or [],
            "fields": fields or [],
        })
