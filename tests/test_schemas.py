"""Tests for the collection schemas."""
import pytest
from pydantic import ValidationError

from schemas import Player, Quest, QuestHistoryEntry, Difficulty, FrequencyType


def test_player_defaults():
    p = Player(monthly_start_month="2025-1", weekly_start_week="2025-W2")
    assert p.display_name == "Hero"
    assert p.total_xp == 0
    assert p.weekly_xp == 0
    assert p.star_coins == 0
    assert p.fairness_threshold == 1000
    assert p.monthly_xp_start == 0
    assert p.monthly_reward_title == ""


def test_player_threshold_must_be_positive():
    with pytest.raises(ValidationError):
        Player(monthly_start_month="2025-1", weekly_start_week="2025-W2", fairness_threshold=0)


def test_quest_defaults_dump_plain_strings():
    q = Quest(title="Dishes")
    data = q.model_dump()
    assert data["difficulty"] == "easy"
    assert type(data["difficulty"]) is str
    assert data["frequency_type"] == "once"
    assert data["frequency_interval"] == 1
    assert data["is_active"] is True
    assert data["next_due_at"] is None
    assert data["reserved_by_id"] is None


def test_quest_accepts_enum_members():
    q = Quest(title="Bins", difficulty=Difficulty.hard, frequency_type=FrequencyType.weekly, xp=500)
    assert q.difficulty == "hard"
    assert q.frequency_type == "weekly"


def test_quest_rejects_zero_interval_and_blank_title():
    with pytest.raises(ValidationError):
        Quest(title="Bins", frequency_interval=0)
    with pytest.raises(ValidationError):
        Quest(title="")


def test_history_entry_optional_fields():
    entry = QuestHistoryEntry(
        quest_id="q1", quest_title="Dishes", completed_by_id="u1",
        completed_by_name="Alice", completed_at="2025-01-15T00:00:00Z", xp_awarded=150,
    )
    assert entry.fairness_applied is False
    assert entry.reserved_by_id is None
    assert entry.focus_duration_seconds is None
    assert entry.notes is None
