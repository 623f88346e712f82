"""
Meowtivator Schemas

Each class corresponds to a MongoDB collection (lowercased class name, with
QuestHistoryEntry stored in ``quest_history``).
"""
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime

from quest_helpers import DEFAULT_FAIRNESS_THRESHOLD


class Difficulty(str, Enum):
    easy = "easy"
    medium = "medium"
    hard = "hard"


class FrequencyType(str, Enum):
    once = "once"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class Player(BaseModel):
    display_name: str = Field("Hero", max_length=64)
    avatar_url: str = ""
    total_xp: int = Field(0, ge=0)
    weekly_xp: int = Field(0, ge=0)
    star_coins: int = Field(0, ge=0, description="Always total_xp // 10")
    fairness_threshold: int = Field(DEFAULT_FAIRNESS_THRESHOLD, gt=0, description="Weekly XP gap tolerated before the catch-up boost")
    monthly_xp_start: int = 0
    monthly_start_month: str = Field(..., description="Month key, e.g. 2025-1")
    weekly_start_week: str = Field(..., description="Week key, e.g. 2025-W3")
    monthly_reward_title: str = ""
    friend_code: Optional[str] = None


class Quest(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    title: str = Field(..., min_length=1, max_length=120)
    difficulty: Difficulty = Difficulty.easy
    xp: int = Field(100, ge=0)
    frequency_type: FrequencyType = FrequencyType.once
    frequency_interval: int = Field(1, ge=1)
    is_active: bool = True
    next_due_at: Optional[datetime] = None
    reserved_by_id: Optional[str] = None
    reserved_by_name: Optional[str] = None
    last_completed_at: Optional[datetime] = None
    last_completed_by_id: Optional[str] = None
    last_completed_by_name: Optional[str] = None
    last_focus_duration_seconds: Optional[int] = None
    created_by_id: str = ""
    created_by_name: str = ""


class QuestHistoryEntry(BaseModel):
    quest_id: str
    quest_title: str
    completed_by_id: str
    completed_by_name: str
    completed_at: datetime
    xp_awarded: int = Field(..., ge=0)
    fairness_applied: bool = False
    reserved_by_id: Optional[str] = None
    reserved_by_name: Optional[str] = None
    focus_duration_seconds: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None
