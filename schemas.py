"""Pydantic request/response schemas for the Prompt Studio API."""
from __future__ import annotations
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator


# ──────────────────────── Constants ────────────────────────

MAX_TAGS = 20


# ──────────────────── Auth ─────────────────────

def _normalize_email(v: str) -> str:
    v = v.strip().lower()
    if "@" not in v:
        raise ValueError("Valid email required")
    return v


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=8, max_length=256)
    full_name: Optional[str] = Field(None, max_length=256)

    @field_validator("email")
    @classmethod
    def check_email(cls, v):
        return _normalize_email(v)

    @field_validator("full_name")
    @classmethod
    def blank_name_is_none(cls, v):
        if v is None:
            return None
        return v.strip() or None


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v):
        return v.strip().lower()


# ──────────────────── Profiles ─────────────────────

class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(None, max_length=256)
    avatar_url: Optional[str] = Field(None, max_length=2048)


# ──────────────────── Projects ─────────────────────

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    description: Optional[str] = Field(None, max_length=5_000)


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=256)
    description: Optional[str] = Field(None, max_length=5_000)


# ──────────────────── Prompts ─────────────────────

def _clean_tags(tags: Optional[List[str]]) -> Optional[List[str]]:
    """Strip whitespace, drop empties and duplicates, keep order."""
    if tags is None:
        return None
    seen: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    if len(seen) > MAX_TAGS:
        raise ValueError(f"At most {MAX_TAGS} tags allowed")
    return seen


class PromptCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=256)
    content: str = Field(..., min_length=1, max_length=500_000)
    project_id: Optional[str] = None
    model: str = Field(default="gpt-4", min_length=1, max_length=256)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1, le=128_000)
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v):
        return _clean_tags(v)


class PromptUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=256)
    content: Optional[str] = Field(None, min_length=1, max_length=500_000)
    project_id: Optional[str] = None
    model: Optional[str] = Field(None, min_length=1, max_length=256)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1, le=128_000)
    tags: Optional[List[str]] = None

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v):
        return _clean_tags(v)


# ──────────────────── Runs ─────────────────────

class RunRequest(BaseModel):
    prompt_id: str = Field(..., min_length=1)
    model: str = Field(default="gpt-4", min_length=1, max_length=256)


# ──────────────────── Response Schemas ─────────────────────

class ModelBreakdownEntry(BaseModel):
    model: str
    count: int
    percentage: float


class AnalyticsResponse(BaseModel):
    period: str = "all"
    empty: bool
    total_runs: int
    total_cost: float
    avg_latency: int
    success_rate: int
    model_breakdown: List[ModelBreakdownEntry] = []

