# fieldsync/models.py
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint
from datetime import datetime
from .database import Base

SCOPE_ANON = "anon"
SCOPE_CLOUD = "cloud"


class CacheEntry(Base):
    __tablename__ = "cache_entries"
    __table_args__ = (UniqueConstraint("scope", "owner", "key", name="uq_cache_scope_owner_key"),)

    id = Column(Integer, primary_key=True, index=True)
    scope = Column(String, index=True)        # anon | cloud
    owner = Column(String, index=True, default="")
    key = Column(String)                      # dataset name (anon) or dataset id (cloud)
    name = Column(String)
    geojson = Column(Text)                    # FeatureCollection as JSON string
    feature_count = Column(Integer, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow)


class MappingRecord(Base):
    __tablename__ = "attribute_mappings"

    id = Column(Integer, primary_key=True, index=True)
    mapping = Column(Text)                    # {"grower": ..., "farm": ..., "field": ..., "crop": ...}
    remember = Column(Boolean, default=True)
    updated_at = Column(DateTime, default=datetime.utcnow)
