# =============================================
# File: giftfinder/db/models.py
# Purpose: SQLModel definition of the query_cache table (tier-2 search cache).
# =============================================

import os
import uuid
from datetime import datetime
from typing import List, Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import Column, DateTime, Float, Index, Integer, Text, text
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlmodel import Field, SQLModel

EMBEDDING_DIMENSIONS = int(os.getenv("EMBEDDING_DIMENSIONS", "1536"))


class QueryCacheEntry(SQLModel, table=True):
    __tablename__ = "query_cache"
    __table_args__ = (
        Index("idx_query_cache_expires_at", "expires_at"),
        Index("idx_query_cache_hit_count", "hit_count"),
        Index("idx_query_cache_result_ids", "result_ids", postgresql_using="gin"),
    )

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        sa_column=Column(UUID(as_uuid=True), primary_key=True, server_default=text("gen_random_uuid()")),
    )
    cache_key: str = Field(sa_column=Column(Text, unique=True, nullable=False))
    query_text: str = Field(sa_column=Column(Text, nullable=False))
    query_embedding: Optional[List[float]] = Field(default=None, sa_column=Column(Vector(EMBEDDING_DIMENSIONS)))
    result_ids: List[str] = Field(sa_column=Column(ARRAY(Text), nullable=False))
    result_scores: List[float] = Field(sa_column=Column(ARRAY(Float), nullable=False))
    # only set for fused (hybrid) result lists
    result_similarities: Optional[List[float]] = Field(default=None, sa_column=Column(ARRAY(Float)))
    result_keyword_scores: Optional[List[float]] = Field(default=None, sa_column=Column(ARRAY(Float)))
    hit_count: int = Field(default=1, sa_column=Column(Integer, nullable=False, server_default=text("1")))
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=text("NOW()"))
    )
    last_hit_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, server_default=text("NOW()"))
    )
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
