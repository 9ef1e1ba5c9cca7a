# fieldsync/schemas.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

MNET_TRUE = ("yes", "true", "1", "y")


def is_mnet(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in MNET_TRUE
    return False


def _stringify(value):
    return None if value is None else str(value)


# --- remote store ---

class IngestSummary(BaseModel):
    growers_inserted: int = 0
    growers_updated: int = 0
    farms_inserted: int = 0
    farms_updated: int = 0
    fields_inserted: int = 0
    fields_updated: int = 0
    fields_removed: int = 0

    @field_validator("*", mode="before")
    @classmethod
    def _none_is_zero(cls, v):
        return 0 if v is None else v

    @property
    def fields_written(self) -> int:
        return self.fields_inserted + self.fields_updated

    def merge(self, other: "IngestSummary") -> "IngestSummary":
        return IngestSummary(**{k: getattr(self, k) + getattr(other, k) for k in IngestSummary.model_fields})


class GrowerRow(BaseModel):
    id: str
    name: Optional[str] = Field(None, validation_alias=AliasChoices("name", "grower_name"))
    mnet: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _str_id(cls, v):
        return _stringify(v)

    @field_validator("mnet", mode="before")
    @classmethod
    def _parse_mnet(cls, v):
        return is_mnet(v)


class FarmRow(BaseModel):
    id: str
    name: Optional[str] = Field(None, validation_alias=AliasChoices("name", "farm_name"))
    grower_id: Optional[str] = None

    @field_validator("id", "grower_id", mode="before")
    @classmethod
    def _str_ids(cls, v):
        return _stringify(v)


class FieldRow(BaseModel):
    id: str
    name: Optional[str] = Field(None, validation_alias=AliasChoices("name", "field_name"))
    farm_id: Optional[str] = None
    boundary: Optional[Dict[str, Any]] = None
    area: Optional[float] = None
    perimeter: Optional[float] = None
    crop_type: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @field_validator("id", "farm_id", mode="before")
    @classmethod
    def _str_ids(cls, v):
        return _stringify(v)

    @field_validator("properties", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return v or {}


class HierarchyRows(BaseModel):
    growers: List[GrowerRow] = Field(default_factory=list)
    farms: List[FarmRow] = Field(default_factory=list)
    fields: List[FieldRow] = Field(default_factory=list)


# --- HTTP surface ---

class LoginIn(BaseModel):
    owner_id: str
    access_token: Optional[str] = None


class DatasetOut(BaseModel):
    id: str
    name: str
    featureCount: int = 0
    updated_at: Optional[datetime] = None
    source: str


class DatasetListOut(BaseModel):
    source: str
    datasets: List[DatasetOut]
    error: Optional[str] = None


class FileResultOut(BaseModel):
    filename: str
    success: bool
    dataset_name: Optional[str] = None
    features: int = 0
    dropped: int = 0
    cloud_stored: bool = False
    updated_existing: bool = False
    matched_dataset_id: Optional[str] = None
    match_reason: Optional[str] = None
    error: Optional[str] = None
    ingest_summary: Optional[IngestSummary] = None


class BatchSummaryOut(BaseModel):
    total: int
    processed: int
    succeeded: int
    cloud_stored: int
    created: List[str]
    updated: List[str]
    halted: bool
    message: str
    files: List[FileResultOut]
