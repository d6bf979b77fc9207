# =============================================
# File: giftfinder/services/schemas.py
# Purpose: Shared pydantic types for search & recommendations
# =============================================
from __future__ import annotations
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def _clamp01(v: float) -> float:
    return max(0.0, min(1.0, float(v)))


class SearchResult(BaseModel):
    id: str
    title: str = ""
    description: Optional[str] = None
    price: float = 0.0
    category: Optional[str] = None
    similarity: float = 0.0
    keyword_score: Optional[float] = None
    combined_score: Optional[float] = None

    @field_validator("similarity")
    @classmethod
    def _similarity_in_range(cls, v: float) -> float:
        return _clamp01(v)


class SimilarityOptions(BaseModel):
    match_count: int = Field(10, ge=1, le=200)
    match_threshold: float = Field(0.7, ge=0.0, le=1.0)
    category: Optional[str] = None
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)


class HybridOptions(BaseModel):
    keyword_weight: float = Field(0.3, ge=0.0)
    semantic_weight: float = Field(0.7, ge=0.0)
    match_count: int = Field(20, ge=1, le=200)
    mode: Literal["weighted", "rrf"] = "weighted"
    rrf_k: int = Field(60, ge=1)


class GiftRequest(BaseModel):
    occasion: str = Field(..., min_length=1, max_length=200)
    relationship: str = Field(..., min_length=1, max_length=200)
    age_range: str = Field(..., min_length=1, max_length=50)
    gender: Optional[str] = Field(None, max_length=50)
    budget_min: float = Field(..., ge=0)
    budget_max: float = Field(..., ge=0)
    interests: List[str] = Field(default_factory=list)
    recipient_name: Optional[str] = Field(None, max_length=100)
    exclude_products: List[str] = Field(default_factory=list)

    @field_validator("interests", "exclude_products")
    @classmethod
    def _strip_items(cls, v: List[str]) -> List[str]:
        return [s.strip() for s in v if s and s.strip()]

    @model_validator(mode="after")
    def _budget_order(self) -> "GiftRequest":
        if self.budget_max < self.budget_min:
            raise ValueError("budget_max must be >= budget_min")
        return self


class Recommendation(BaseModel):
    product_name: str
    description: str = ""
    price: float = 0.0
    currency: str = "USD"
    category: str = "Other"
    tags: List[str] = Field(default_factory=list)
    match_reason: str = ""
    relevance_score: float = Field(0.0, ge=0.0, le=100.0)


class GenerationCost(BaseModel):
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0


class GiftSearchResponse(BaseModel):
    recommendations: List[Recommendation]
    model_used: str
    fallback_used: bool = False
    cost: GenerationCost
    latency_ms: int
    total_results: int
