"""
VetBalance: Rankings & Statistics
=================================
Overall ranking, the weekly leaderboard with its history, win streaks
and per-user performance statistics. All numbers are computed from the
canonical session statuses (won / lost). Only those two count as
completed sessions.
"""

import logging
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from models import PerformanceStats, RankingEntry, Session, ValidationError, WeeklyEntry
from constants import SCORING_CONSTANTS, SessionStatus
from store import VetBalanceStore, iso, utc_now

logger = logging.getLogger("vetbalance.rankings")

SORT_KEYS = {
    "wins": lambda e: (-e.wins, -e.win_rate, -e.total_points),
    "win_rate": lambda e: (-e.win_rate, -e.wins, -e.total_points),
    "points": lambda e: (-e.total_points, -e.wins, -e.win_rate),
}

PERIOD_DAYS = {"all": None, "week": 7, "month": 30}

def _rate(wins: int, completed: int) -> float:
    return round(wins / completed * 100, 1) if completed else 0.0

def week_bounds(day: date) -> Tuple[datetime, datetime]:
    """Monday 00:00:00 to Sunday 23:59:59 (UTC) of the week containing `day`."""
    monday = day - timedelta(days=day.weekday())
    start = datetime.combine(monday, time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=7) - timedelta(seconds=1)
    return start, end

class RankingCalculator:
    """Pure computations over lists of Session records."""

    @staticmethod
    def overall(sessions: Iterable[Session], names: Dict[str, str],
                points_by_user: Dict[str, int], sort_by: str = "wins") -> List[RankingEntry]:
        if sort_by not in SORT_KEYS:
            raise ValidationError(f"Unknown ranking order {sort_by!r}; use one of {sorted(SORT_KEYS)}")

        per_user: Dict[str, List[Session]] = {}
        for s in sessions:
            per_user.setdefault(s.user_id, []).append(s)

        entries = []
        for user_id, user_sessions in per_user.items():
            completed = [s for s in user_sessions if s.is_completed]
            if not completed:
                continue
            wins = [s for s in completed if s.status == SessionStatus.WON]
            win_times = [s.duration_seconds for s in wins if s.duration_seconds is not None]
            entries.append(RankingEntry(
                user_id=user_id,
                user_name=names.get(user_id) or "Student",
                wins=len(wins),
                losses=len(completed) - len(wins),
                total_sessions=len(user_sessions),
                win_rate=_rate(len(wins), len(completed)),
                total_points=points_by_user.get(user_id, 0),
                average_win_seconds=round(sum(win_times) / len(win_times), 1) if win_times else None,
            ))

        entries.sort(key=SORT_KEYS[sort_by])
        for position, entry in enumerate(entries, start=1):
            entry.position = position
        return entries

    @staticmethod
    def weekly(sessions: Iterable[Session], names: Dict[str, str]) -> List[WeeklyEntry]:
        """100 points per win, plus 50 when the win took under 300 s."""
        per_user: Dict[str, List[Session]] = {}
        for s in sessions:
            if s.is_completed:
                per_user.setdefault(s.user_id, []).append(s)

        entries = []
        for user_id, completed in per_user.items():
            wins = [s for s in completed if s.status == SessionStatus.WON]
            points = 0
            for s in wins:
                points += SCORING_CONSTANTS.WEEKLY_WIN_POINTS
                if s.duration_seconds is not None and s.duration_seconds < SCORING_CONSTANTS.WEEKLY_SPEED_LIMIT_S:
                    points += SCORING_CONSTANTS.WEEKLY_SPEED_BONUS
            entries.append(WeeklyEntry(
                user_id=user_id,
                user_name=names.get(user_id) or "Student",
                wins=len(wins),
                total_sessions=len(completed),
                win_rate=_rate(len(wins), len(completed)),
                points=points,
            ))

        entries.sort(key=lambda e: (-e.points, -e.wins, -e.win_rate))
        for position, entry in enumerate(entries, start=1):
            entry.position = position
        return entries

    @staticmethod
    def streaks(sessions_newest_first: Iterable[Session]) -> Tuple[int, int]:
        """(current, best). Sessions that are not won or lost are skipped."""
        completed = [s for s in sessions_newest_first if s.is_completed]

        current = 0
        for s in completed:
            if s.status != SessionStatus.WON:
                break
            current += 1

        best = run = 0
        for s in reversed(completed):
            run = run + 1 if s.status == SessionStatus.WON else 0
            best = max(best, run)
        return current, best

    @staticmethod
    def with_trend(history_newest_first: List[dict]) -> List[dict]:
        """Marks each week up / down / same against the week before it (lower position is better)."""
        result = []
        for i, week in enumerate(history_newest_first):
            entry = dict(week)
            previous = history_newest_first[i + 1] if i + 1 < len(history_newest_first) else None
            if previous is None or previous["position"] == week["position"]:
                entry["trend"] = "same"
            elif week["position"] < previous["position"]:
                entry["trend"] = "up"
            else:
                entry["trend"] = "down"
            result.append(entry)
        return result

    @staticmethod
    def performance(sessions: List[Session], achievements: List[dict],
                    treatments: List[dict]) -> PerformanceStats:
        completed = [s for s in sessions if s.is_completed]
        wins = sum(1 for s in completed if s.status == SessionStatus.WON)
        durations = [s.duration_seconds for s in completed if s.duration_seconds is not None]

        most_used = None
        if treatments:
            counts = Counter((t["treatment_id"], t["treatment_name"]) for t in treatments)
            (treatment_id, name), count = counts.most_common(1)[0]
            most_used = {"treatment_id": treatment_id, "name": name, "count": count}

        return PerformanceStats(
            total_sessions=len(sessions),
            wins=wins,
            losses=len(completed) - wins,
            success_rate=_rate(wins, len(completed)),
            average_seconds=round(sum(durations) / len(durations), 1) if durations else 0.0,
            fastest_seconds=min(durations) if durations else 0,
            slowest_seconds=max(durations) if durations else 0,
            goals_achieved=len(achievements),
            total_points=sum(a["points"] for a in achievements),
            average_treatments=round(len(treatments) / len(sessions), 1) if sessions else 0.0,
            most_used_treatment=most_used,
        )

# --- STORE-BACKED QUERIES ---

def overall_ranking(store: VetBalanceStore, sort_by: str = "wins") -> List[RankingEntry]:
    sessions = store.list_sessions()
    return RankingCalculator.overall(sessions, store.profile_names(), store.goal_points_by_user(), sort_by)

def ranking_position(store: VetBalanceStore, user_id: str) -> Optional[int]:
    for entry in overall_ranking(store, "wins"):
        if entry.user_id == user_id:
            return entry.position
    return None

def weekly_leaderboard(store: VetBalanceStore, day: Optional[date] = None) -> dict:
    day = day or utc_now().date()
    start, end = week_bounds(day)
    sessions = store.list_sessions(since=iso(start), until=iso(end))
    return {
        "week_start": start.date().isoformat(),
        "week_end": end.date().isoformat(),
        "entries": RankingCalculator.weekly(sessions, store.profile_names()),
    }

def record_weekly_snapshot(store: VetBalanceStore, user_id: str, day: Optional[date] = None) -> Optional[dict]:
    """Upserts this week's row for the user. Nothing is written without a completed session."""
    board = weekly_leaderboard(store, day)
    entry = next((e for e in board["entries"] if e.user_id == user_id), None)
    if entry is None:
        return None

    row = {
        "user_id": user_id,
        "week_start": board["week_start"],
        "week_end": board["week_end"],
        "position": entry.position,
        "wins": entry.wins,
        "total_sessions": entry.total_sessions,
        "points": entry.points,
        "win_rate": entry.win_rate,
    }
    store.upsert_weekly_entry(row)
    logger.info(f"Weekly snapshot for {user_id}: position {entry.position} ({board['week_start']})")
    return row

def weekly_history(store: VetBalanceStore, user_id: str) -> List[dict]:
    history = store.weekly_history(user_id, SCORING_CONSTANTS.HISTORY_WEEKS + 1)
    return RankingCalculator.with_trend(history)[:SCORING_CONSTANTS.HISTORY_WEEKS]

def user_streaks(store: VetBalanceStore, user_id: str) -> dict:
    current, best = RankingCalculator.streaks(store.list_sessions(user_id=user_id))
    return {"current_streak": current, "best_streak": best}

def user_performance(store: VetBalanceStore, user_id: str, period: str = "all",
                     now: Optional[datetime] = None) -> PerformanceStats:
    if period not in PERIOD_DAYS:
        raise ValidationError(f"Unknown period {period!r}; use one of {sorted(PERIOD_DAYS)}")

    since = None
    if PERIOD_DAYS[period] is not None:
        since = iso((now or utc_now()) - timedelta(days=PERIOD_DAYS[period]))

    sessions = store.list_sessions(user_id=user_id, since=since)
    ids = [s.id for s in sessions]
    return RankingCalculator.performance(
        sessions,
        store.goal_achievements(user_id=user_id, session_ids=ids),
        store.session_treatments(ids),
    )
