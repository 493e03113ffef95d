from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from models.base import as_utc, new_id, utc_now

ProjectStatus = Literal["draft", "active", "funded", "expired", "cancelled"]
PROJECT_STATUSES: tuple[str, ...] = ("draft", "active", "funded", "expired", "cancelled")

ProjectCategory = Literal[
    "technology",
    "arts",
    "health",
    "education",
    "environment",
    "community",
    "business",
    "charity",
    "other",
]
PROJECT_CATEGORIES: tuple[str, ...] = (
    "technology",
    "arts",
    "health",
    "education",
    "environment",
    "community",
    "business",
    "charity",
    "other",
)

MIN_TARGET_AMOUNT = 1_000
MAX_TARGET_AMOUNT = 10_000_000

HTTPS_URL = r"^https://"


class RewardTier(BaseModel):
    tier_id: str = Field(default_factory=new_id)
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=500)
    minimum_amount: int = Field(gt=0)
    max_backers: int | None = Field(default=None, ge=1)
    current_backers: int = Field(default=0, ge=0)
    estimated_delivery: datetime
    is_active: bool = True
    items: list[str] = Field(default_factory=list)

    @field_validator("items")
    @classmethod
    def _item_length(cls, items: list[str]) -> list[str]:
        cleaned = [item.strip() for item in items if item.strip()]
        for item in cleaned:
            if len(item) > 200:
                raise ValueError("Reward item cannot exceed 200 characters")
        return cleaned

    @property
    def has_capacity(self) -> bool:
        return not self.max_backers or self.current_backers < self.max_backers


class ProjectUpdate(BaseModel):
    update_id: str = Field(default_factory=new_id)
    title: str = Field(min_length=1, max_length=150)
    content: str = Field(min_length=1)
    images: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("images")
    @classmethod
    def _https_images(cls, images: list[str]) -> list[str]:
        for url in images:
            if not url.startswith("https://"):
                raise ValueError("Image URL must be a valid HTTPS URL")
        return images


class Location(BaseModel):
    district: str = Field(min_length=1)
    division: str = Field(min_length=1)


class Project(BaseModel):
    project_id: str = Field(default_factory=new_id)
    creator_id: str
    title: str = Field(min_length=5, max_length=100)
    slug: str = Field(pattern=r"^[a-z0-9-]+$")
    description: str = Field(min_length=50)
    short_description: str = Field(min_length=1, max_length=200)
    category: ProjectCategory

    target_amount: int = Field(ge=MIN_TARGET_AMOUNT, le=MAX_TARGET_AMOUNT)
    current_amount: int = Field(default=0, ge=0)
    admin_fee_amount: int = Field(default=0, ge=0)
    backer_count: int = Field(default=0, ge=0)

    start_date: datetime
    end_date: datetime
    status: ProjectStatus = "draft"

    images: list[str] = Field(default_factory=list)
    video_url: str | None = None
    location: Location
    reward_tiers: list[RewardTier] = Field(default_factory=list)
    story: str = Field(min_length=100)
    risks: str = Field(min_length=50)
    updates: list[ProjectUpdate] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    is_active: bool = True

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("start_date", "end_date", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, tags: list[str]) -> list[str]:
        normalized = [tag.strip().lower() for tag in tags if tag.strip()]
        for tag in normalized:
            if len(tag) > 30:
                raise ValueError("Tag cannot exceed 30 characters")
        return normalized

    @model_validator(mode="after")
    def _check_dates(self):
        if self.end_date <= self.start_date:
            raise ValueError("End date must be after start date")
        return self

    def find_tier(self, tier_id: str | None) -> tuple[int, RewardTier] | None:
        if not tier_id:
            return None
        for index, tier in enumerate(self.reward_tiers):
            if tier.tier_id == tier_id:
                return index, tier
        return None

    @property
    def project_url(self) -> str:
        return f"/projects/{self.slug}"
