from datetime import datetime

from pydantic import BaseModel, Field


class AnalyzeRequest(BaseModel):
    user_id: str
    image_base64: str | None = None  # preferred: no download needed on the model side
    mime_type: str | None = None  # e.g. image/jpeg (default when base64 is sent)
    image_url: str | None = None  # storage URL fallback


class NutritionEstimate(BaseModel):
    """Vision model output; the client confirms/edits it before logging."""

    name: str
    brand: str | None = None
    serving_size: str | None = None
    calories: float = Field(default=0, ge=0)
    protein_g: float = Field(default=0, ge=0)
    carbs_g: float = Field(default=0, ge=0)
    fat_g: float = Field(default=0, ge=0)
    fiber_g: float = Field(default=0, ge=0)
    sugar_g: float = Field(default=0, ge=0)
    sodium_mg: float = Field(default=0, ge=0)
    ingredients: str | None = None
    allergens: str | None = None
    health_notes: str | None = None
    confidence: float = Field(default=0.5, ge=0, le=1)


class AnalyzeResponse(NutritionEstimate):
    analyses_count: int
    remaining: int | None = None  # None: unlimited (pro)


class UsageResponse(BaseModel):
    subscription_tier: str
    subscription_status: str
    used: int
    limit: int | None = None
    remaining: int | None = None
    usage_percentage: float = 0.0
    resets_at: datetime
