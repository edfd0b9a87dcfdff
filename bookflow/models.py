from __future__ import annotations

import uuid

from pydantic import BaseModel, ConfigDict, Field


def new_book_id() -> str:
    return str(uuid.uuid4())


class Book(BaseModel):
    """One discovered book. Enrichment fields stay None until their stage fills them."""

    book_id: str = Field(default_factory=new_book_id)
    request_id: str
    title: str
    url: str
    current_price: float | None = None
    original_price: float | None = None

    # enrich-item-batch
    description: str | None = None
    # aggregate-and-score
    author: str | None = None
    summary: str | None = None
    discount_amount: float | None = None
    discount_percentage: float | None = None
    relevance_score: float | None = None
    value_score: float | None = None


class ScoreEntry(BaseModel):
    """One scorer response entry, matched back to a Book by `id`."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    authors: str | None = None
    discount_amount: float | None = Field(default=None, alias="discountAmount")
    discount_percentage: float | None = Field(default=None, alias="discountPercentage")
    relevance_score: float | None = Field(default=None, alias="relevanceScore")
    summary: str | None = None
    value_score: float | None = Field(default=None, alias="valueScore")
