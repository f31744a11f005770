"""Pydantic schemas for transformations and usage"""
from pydantic import BaseModel
from typing import List, Optional


class TransformResultResponse(BaseModel):
    id: int
    original_url: str
    generated_url: str
    theme: str
    custom_prompt: Optional[str] = None
    used_fallback_prompt: bool = False
    created_at: Optional[str] = None


class TransformResponse(BaseModel):
    result: TransformResultResponse


class UsageResponse(BaseModel):
    plan_type: str
    count: int
    limit: int
    remaining: int
    allowed: bool


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class GalleryResponse(BaseModel):
    images: List[TransformResultResponse]
    pagination: Pagination
