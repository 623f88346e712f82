import logging
import os
from datetime import datetime, timezone
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError
from typing import Any, Dict, List, Optional

from database import (
    db,
    DatabaseUnavailable,
    create_document,
    get_documents,
    get_document_by_id,
    update_document,
    update_document_where,
    increment_xp,
)
from schemas import Player, Quest, QuestHistoryEntry, Difficulty, FrequencyType
from quest_helpers import (
    XP_PER_STAR_COIN,
    calculate_next_due_at,
    calculate_xp_with_fairness,
    coerce_date,
    compute_weekly_stats,
    difficulty_xp,
    fairness_threshold_for,
    format_ms,
    generate_friend_code,
    is_quest_due,
    is_valid_date,
    month_key,
    monthly_xp,
    normalize_quest_doc,
    rollover_updates,
    week_key,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

PLAYERS = "player"
QUESTS = "quest"
HISTORY = "quest_history"

app = FastAPI(title="Meowtivator API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DatabaseUnavailable)
async def database_unavailable_handler(request: Request, exc: DatabaseUnavailable):
    logger.error("Database unavailable for %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def _now() -> datetime:
    return datetime.now(timezone.utc)


@app.get("/")
def root():
    return {"name": "Meowtivator", "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "❌ Not Set",
        "database_name": "❌ Not Set",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected"
            response["database_url"] = "✅ Set"
            response["database_name"] = getattr(db, 'name', 'unknown')
            try:
                response["collections"] = db.list_collection_names()[:10]
            except Exception as e:
                response["collections"] = [f"error: {str(e)[:50]}"]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# -------- Players --------
class EnsurePlayer(BaseModel):
    user_id: str = Field(..., min_length=1, description="Stable id from the identity provider")
    display_name: Optional[str] = None
    email: Optional[str] = None


class PlayerSettings(BaseModel):
    avatar_url: Optional[str] = None
    fairness_threshold: Optional[int] = Field(None, gt=0)
    monthly_reward_title: Optional[str] = Field(None, max_length=120)


def _player_out(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc["friend_code_short"] = generate_friend_code(doc.get("friend_code") or doc.get("id"))
    doc["monthly_xp"] = monthly_xp(doc)
    return doc


def _get_player_or_404(user_id: str) -> Dict[str, Any]:
    doc = get_document_by_id(PLAYERS, user_id)
    if not doc:
        raise HTTPException(404, "Player not found")
    return doc


def _sync_rollovers(players: List[Dict[str, Any]], now: datetime) -> List[Dict[str, Any]]:
    synced = []
    for player in players:
        updates = rollover_updates(player, now)
        if updates:
            logger.info("Rolling over XP baselines for %s: %s", player["id"], sorted(updates))
            # only roll over from the baselines that were read
            seen = {
                "monthly_start_month": player.get("monthly_start_month"),
                "weekly_start_week": player.get("weekly_start_week"),
            }
            rolled = update_document_where(PLAYERS, player["id"], seen, updates)
            if not rolled:
                logger.info("Baselines for %s already moved, re-reading", player["id"])
                rolled = get_document_by_id(PLAYERS, player["id"])
            player = rolled or player
        synced.append(player)
    return synced


def _load_players() -> List[Dict[str, Any]]:
    return _sync_rollovers(get_documents(PLAYERS), _now())


@app.post("/players")
def ensure_player(data: EnsurePlayer):
    existing = get_document_by_id(PLAYERS, data.user_id)
    if existing:
        return _player_out(existing)
    now = _now()
    fallback_name = data.email.split("@")[0] if data.email else "Hero"
    player = Player(
        display_name=data.display_name or fallback_name,
        monthly_start_month=month_key(now),
        weekly_start_week=week_key(now),
    )
    try:
        create_document(PLAYERS, player, doc_id=data.user_id)
        logger.info("Created player %s", data.user_id)
    except DuplicateKeyError:
        logger.info("Player %s was created by a concurrent request", data.user_id)
    return _player_out(get_document_by_id(PLAYERS, data.user_id))  # type: ignore


@app.get("/players")
def list_players():
    return [_player_out(p) for p in _load_players()]


@app.get("/players/{user_id}")
def get_player(user_id: str):
    player = _get_player_or_404(user_id)
    return _player_out(_sync_rollovers([player], _now())[0])


@app.patch("/players/{user_id}/settings")
def update_settings(user_id: str, settings: PlayerSettings):
    _get_player_or_404(user_id)
    changes = settings.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(400, "No settings to update")
    updated = update_document(PLAYERS, user_id, changes)
    return _player_out(updated)


def _award_xp(user_id: str, xp_delta: int) -> Dict[str, Any]:
    updated = increment_xp(PLAYERS, user_id, xp_delta, XP_PER_STAR_COIN)
    if not updated:
        raise HTTPException(404, "Player not found")
    return updated


# -------- Quests --------
class CreateQuest(BaseModel):
    title: str
    difficulty: Difficulty = Difficulty.easy
    frequency_type: FrequencyType = FrequencyType.once
    frequency_interval: int = 1
    user_id: str


class ReservePayload(BaseModel):
    user_id: str


class CompletePayload(BaseModel):
    user_id: str
    focus_duration_seconds: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=500)


def _quest_out(doc: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    quest = normalize_quest_doc(doc)
    quest["is_due"] = is_quest_due(quest, now)
    for key in ("next_due_at", "last_completed_at"):
        if quest[key] is not None and not is_valid_date(quest[key]):
            quest[key] = None
    return quest


def _get_quest_or_404(quest_id: str) -> Dict[str, Any]:
    doc = get_document_by_id(QUESTS, quest_id)
    if not doc:
        raise HTTPException(404, "Quest not found")
    return doc


@app.post("/quests")
def create_quest(data: CreateQuest):
    title = data.title.strip()
    if not title:
        raise HTTPException(400, "Title is required")
    creator = _get_player_or_404(data.user_id)
    now = _now()
    quest = Quest(
        title=title,
        difficulty=data.difficulty,
        xp=difficulty_xp(data.difficulty.value),
        frequency_type=data.frequency_type,
        frequency_interval=max(1, data.frequency_interval),
        is_active=True,
        next_due_at=now,
        created_by_id=data.user_id,
        created_by_name=creator.get("display_name") or "Hero",
    )
    quest_id = create_document(QUESTS, quest)
    logger.info("Quest %s created by %s", quest_id, data.user_id)
    return _quest_out(get_document_by_id(QUESTS, quest_id), now)  # type: ignore


@app.get("/quests")
def list_quests(view: str = "all", user_id: Optional[str] = None):
    now = _now()
    quests = [_quest_out(d, now) for d in get_documents(QUESTS)]
    if view == "all":
        return quests
    due = sorted((q for q in quests if q["is_due"]), key=lambda q: q["title"].lower())
    if view == "due":
        return due
    if view == "available":
        return [q for q in due if not q["reserved_by_id"]]
    if view == "reserved":
        return [q for q in due if q["reserved_by_id"]]
    if view == "mine":
        if not user_id:
            raise HTTPException(400, "user_id is required for view=mine")
        return [q for q in due if q["reserved_by_id"] == user_id]
    raise HTTPException(400, f"Unknown view: {view}")


@app.get("/quests/{quest_id}")
def get_quest(quest_id: str):
    return _quest_out(_get_quest_or_404(quest_id), _now())


@app.post("/quests/{quest_id}/reserve")
def toggle_reservation(quest_id: str, payload: ReservePayload):
    now = _now()
    raw = _get_quest_or_404(quest_id)
    quest = normalize_quest_doc(raw)
    if not is_quest_due(quest, now):
        raise HTTPException(400, "Quest is not due")
    holder = quest["reserved_by_id"]
    if holder and holder != payload.user_id:
        raise HTTPException(409, "Quest is reserved by someone else")

    if holder == payload.user_id:
        updated = update_document_where(
            QUESTS, quest_id, {"updated_at": raw.get("updated_at")},
            {"reserved_by_id": None, "reserved_by_name": None},
        )
        action = "released"
    else:
        player = _get_player_or_404(payload.user_id)
        updated = update_document_where(
            QUESTS, quest_id, {"updated_at": raw.get("updated_at")},
            {"reserved_by_id": payload.user_id, "reserved_by_name": player.get("display_name") or payload.user_id},
        )
        action = "reserved"

    if not updated:
        logger.warning("Reservation race lost on quest %s by %s", quest_id, payload.user_id)
        raise HTTPException(409, "Quest reservation changed, try again")
    logger.info("Quest %s %s by %s", quest_id, action, payload.user_id)
    return _quest_out(updated, now)


@app.post("/quests/{quest_id}/complete")
def complete_quest(quest_id: str, payload: CompletePayload):
    now = _now()
    raw = _get_quest_or_404(quest_id)
    quest = normalize_quest_doc(raw)
    if not is_quest_due(quest, now):
        raise HTTPException(400, "Quest is not due")
    holder = quest["reserved_by_id"]
    if holder and holder != payload.user_id:
        raise HTTPException(403, "Only the reservation holder can complete this quest")

    players = _load_players()
    completer = next((p for p in players if p["id"] == payload.user_id), None)
    if not completer:
        raise HTTPException(404, "Player not found")
    completed_by_name = completer.get("display_name") or completer["id"]

    # Write the quest first; a stale updated_at means another completion won
    quest_updates: Dict[str, Any] = {
        "reserved_by_id": None,
        "reserved_by_name": None,
        "last_completed_at": now,
        "last_focus_duration_seconds": payload.focus_duration_seconds,
        "last_completed_by_id": payload.user_id,
        "last_completed_by_name": completed_by_name,
    }
    if quest["frequency_type"] == FrequencyType.once.value:
        quest_updates["is_active"] = False
    else:
        quest_updates["next_due_at"] = calculate_next_due_at(
            quest["frequency_type"], max(1, int(quest["frequency_interval"] or 1)), now
        )
    updated_quest = update_document_where(QUESTS, quest_id, {"updated_at": raw.get("updated_at")}, quest_updates)
    if not updated_quest:
        logger.warning("Completion race lost on quest %s by %s", quest_id, payload.user_id)
        raise HTTPException(409, "Quest changed while completing, try again")

    result = calculate_xp_with_fairness(payload.user_id, quest["xp"] or 0, compute_weekly_stats(players))
    if result.fairness_applied:
        logger.info("Fairness boost for %s on quest %s: %d XP", payload.user_id, quest_id, result.xp_award)
    updated_player = _award_xp(payload.user_id, result.xp_award)

    entry = QuestHistoryEntry(
        quest_id=quest_id,
        quest_title=quest["title"],
        completed_by_id=payload.user_id,
        completed_by_name=completed_by_name,
        completed_at=now,
        xp_awarded=result.xp_award,
        fairness_applied=result.fairness_applied,
        reserved_by_id=holder,
        reserved_by_name=quest["reserved_by_name"],
        focus_duration_seconds=payload.focus_duration_seconds,
        notes=payload.notes or None,
    )
    create_document(HISTORY, entry)
    logger.info("Quest %s completed by %s for %d XP", quest_id, payload.user_id, result.xp_award)

    return {
        "xp_award": result.xp_award,
        "fairness_applied": result.fairness_applied,
        "quest": _quest_out(updated_quest, now),
        "player": _player_out(updated_player),
    }


# -------- History --------
def _history_out(entry: Dict[str, Any]) -> Dict[str, Any]:
    seconds = entry.get("focus_duration_seconds")
    entry["focus_duration_display"] = format_ms(seconds * 1000) if seconds is not None else None
    return entry


@app.get("/history")
def recent_history(limit: int = 10):
    if limit <= 0:
        raise HTTPException(400, "Limit must be positive")

    def completed_ts(entry):
        completed_at = coerce_date(entry.get("completed_at"))
        return completed_at.timestamp() if is_valid_date(completed_at) else 0

    entries = [e for e in get_documents(HISTORY) if e.get("quest_title")]
    entries.sort(key=completed_ts, reverse=True)
    return [_history_out(e) for e in entries[:limit]]


# -------- Leaderboards & fairness --------
@app.get("/stats/weekly")
def weekly_stats():
    stats = compute_weekly_stats(_load_players())
    if not stats.lowest:
        return {"highest": stats.highest, "lowest": None, "gap": 0, "threshold": None, "boost_active": False}
    gap = stats.highest - (stats.lowest.get("weekly_xp") or 0)
    threshold = fairness_threshold_for(stats.lowest)
    return {
        "highest": stats.highest,
        "lowest": _player_out(stats.lowest),
        "gap": gap,
        "threshold": threshold,
        "boost_active": gap > threshold,
    }


@app.get("/leaderboard/weekly")
def weekly_leaderboard():
    players = [_player_out(p) for p in _load_players()]
    # sort by weekly xp desc
    players.sort(key=lambda p: p.get("weekly_xp") or 0, reverse=True)
    return players


@app.get("/leaderboard/monthly")
def monthly_leaderboard():
    players = [_player_out(p) for p in _load_players()]
    players.sort(key=lambda p: p["monthly_xp"], reverse=True)
    return players


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
