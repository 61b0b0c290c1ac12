from datetime import datetime
from typing import Literal

from beanie import Document, Indexed
from pydantic import BaseModel, Field


class OfferedSkill(BaseModel):
    skill: str
    category: str | None = None
    experience: Literal["Beginner", "Intermediate", "Expert"] = "Intermediate"
    description: str | None = None


class User(Document):
    email: Indexed(str, unique=True)
    name: str = ""
    profile_picture: str | None = None
    role: str = "user"  # "user" | "admin"
    skills_offered: list[OfferedSkill] = Field(default_factory=list)
    # Mutated only by app.services.credits; never assign directly
    credits: int = 0
    total_credits_earned: int = 0
    total_credits_spent: int = 0
    rating: float = 0.0
    total_reviews: int = 0
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
        indexes = [[("rating", -1)]]

    def offers_skill(self, skill: str) -> bool:
        return any(s.skill == skill for s in self.skills_offered)
