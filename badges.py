# badges.py
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set

from models import Badge, Session
from constants import BadgeCriterion, SessionStatus
from rankings import RankingCalculator, ranking_position
from store import VetBalanceStore

logger = logging.getLogger("vetbalance.badges")

@dataclass
class BadgeContext:
    """
    Everything a criterion can look at. `session` is the one just finished,
    or None when only the user's history is being re-checked.
    """
    history: List[Session] = field(default_factory=list)   # newest first, includes `session`
    session: Optional[Session] = None
    hints_used: int = 0
    min_hp: Optional[int] = None
    goals_total: int = 0
    goals_achieved: int = 0
    ranking_position: Optional[int] = None

    @property
    def won(self) -> bool:
        return self.session is not None and self.session.status == SessionStatus.WON

    @property
    def completed(self) -> List[Session]:
        return [s for s in self.history if s.is_completed]

    @property
    def wins(self) -> int:
        return sum(1 for s in self.history if s.status == SessionStatus.WON)

class BadgeChecker:
    @staticmethod
    def criterion_met(criterion: dict, ctx: BadgeContext) -> bool:
        try:
            kind = BadgeCriterion(criterion.get("type"))
        except ValueError:
            logger.warning(f"Ignoring badge with unknown criterion {criterion!r}")
            return False

        # 1. Session badges
        if kind == BadgeCriterion.FIRST_WIN:
            return ctx.won and ctx.wins == 1
        if kind == BadgeCriterion.NO_HINTS:
            return ctx.won and ctx.hints_used == 0
        if kind == BadgeCriterion.SPEED_RECORD:
            duration = ctx.session.duration_seconds if ctx.session else None
            return ctx.won and duration is not None and duration <= criterion.get("max_seconds", 0)
        if kind == BadgeCriterion.ALL_GOALS:
            return ctx.won and ctx.goals_total > 0 and ctx.goals_achieved >= ctx.goals_total
        if kind == BadgeCriterion.HIGH_HP:
            return ctx.won and ctx.min_hp is not None and ctx.min_hp >= criterion.get("min_hp", 0)

        # 2. Milestones
        if kind == BadgeCriterion.TOTAL_SESSIONS:
            return len(ctx.history) >= criterion.get("count", 0)
        if kind == BadgeCriterion.DISTINCT_CASES:
            return len({s.case_id for s in ctx.history}) >= criterion.get("count", 0)

        # 3. Ranking badges
        if kind == BadgeCriterion.RANKING_POSITION:
            return ctx.ranking_position is not None and ctx.ranking_position <= criterion.get("position", 0)
        if kind == BadgeCriterion.WIN_STREAK:
            _, best = RankingCalculator.streaks(ctx.history)
            return best >= criterion.get("count", 0)
        if kind == BadgeCriterion.TOTAL_WINS:
            return ctx.wins >= criterion.get("count", 0)
        if kind == BadgeCriterion.WIN_RATE:
            completed = len(ctx.completed)
            if completed == 0 or completed < criterion.get("min_sessions", 1):
                return False
            return ctx.wins / completed * 100 >= criterion.get("rate", 100)
        return False

    @staticmethod
    def evaluate(badges: List[Badge], owned: Set[str], ctx: BadgeContext) -> List[Badge]:
        """Badges not yet owned whose criterion holds."""
        return [b for b in badges if b.id not in owned and BadgeChecker.criterion_met(b.criterion, ctx)]

    @staticmethod
    def award(store: VetBalanceStore, user_id: str, ctx: BadgeContext,
              session_id: Optional[str] = None) -> List[Badge]:
        awarded = []
        for badge in BadgeChecker.evaluate(store.list_badges(), store.user_badge_ids(user_id), ctx):
            # False when a concurrent finish already granted it
            if store.award_badge(user_id, badge.id, session_id):
                logger.info(f"Badge '{badge.name}' awarded to {user_id}")
                awarded.append(badge)
        return awarded

    @staticmethod
    def award_session_badges(store: VetBalanceStore, session: Session, hints_used: int,
                             min_hp: Optional[int], goals_total: int, goals_achieved: int) -> List[Badge]:
        ctx = BadgeContext(
            history=store.list_sessions(user_id=session.user_id),
            session=session,
            hints_used=hints_used,
            min_hp=min_hp,
            goals_total=goals_total,
            goals_achieved=goals_achieved,
            ranking_position=ranking_position(store, session.user_id),
        )
        return BadgeChecker.award(store, session.user_id, ctx, session.id)

    @staticmethod
    def check_ranking_badges(store: VetBalanceStore, user_id: str) -> List[Badge]:
        """History-only re-check, for ranking and milestone badges earned outside a session."""
        ctx = BadgeContext(
            history=store.list_sessions(user_id=user_id),
            ranking_position=ranking_position(store, user_id),
        )
        return BadgeChecker.award(store, user_id, ctx)
