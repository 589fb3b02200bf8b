import os
import shutil
import tempfile
import unittest

from badges import BadgeChecker, BadgeContext
from models import Badge, Session
from constants import SessionStatus
from seed import seed_catalogue
from store import VetBalanceStore

def session(sid, status, duration=60, case_id=1):
    return Session(id=sid, user_id="u1", case_id=case_id, name=sid, status=status,
                   started_at="2026-10-14T10:00:00+00:00", duration_seconds=duration,
                   created_at="2026-10-14T10:00:00+00:00")

class TestBadgeCriteria(unittest.TestCase):

    def setUp(self):
        self.win = session("s1", SessionStatus.WON, 90)
        self.ctx = BadgeContext(history=[self.win], session=self.win, hints_used=0, min_hp=45,
                                goals_total=2, goals_achieved=2, ranking_position=4)

    def check(self, criterion, ctx=None):
        return BadgeChecker.criterion_met(criterion, ctx or self.ctx)

    def test_01_session_badges(self):
        self.assertTrue(self.check({"type": "first_win"}))
        self.assertTrue(self.check({"type": "no_hints"}))
        self.assertTrue(self.check({"type": "speed_record", "max_seconds": 90}))
        self.assertFalse(self.check({"type": "speed_record", "max_seconds": 60}))
        self.assertTrue(self.check({"type": "all_goals"}))
        self.assertTrue(self.check({"type": "high_hp", "min_hp": 40}))
        self.assertFalse(self.check({"type": "high_hp", "min_hp": 50}))

    def test_02_session_badges_need_a_win(self):
        loss = session("s2", SessionStatus.LOST)
        ctx = BadgeContext(history=[loss, self.win], session=loss, goals_total=1, goals_achieved=1, min_hp=80)
        for criterion in ("first_win", "no_hints", "all_goals"):
            self.assertFalse(self.check({"type": criterion}, ctx), criterion)

    def test_03_first_win_only_once(self):
        second = session("s2", SessionStatus.WON)
        ctx = BadgeContext(history=[second, self.win], session=second)
        self.assertFalse(self.check({"type": "first_win"}, ctx))

    def test_04_all_goals_needs_goals(self):
        ctx = BadgeContext(history=[self.win], session=self.win, goals_total=0, goals_achieved=0)
        self.assertFalse(self.check({"type": "all_goals"}, ctx))

    def test_05_milestones_and_ranking(self):
        history = [session(f"s{i}", SessionStatus.WON, case_id=i % 3) for i in range(5)]
        history.append(session("x", SessionStatus.ABANDONED, case_id=7))
        ctx = BadgeContext(history=history, ranking_position=3)
        self.assertTrue(self.check({"type": "total_sessions", "count": 6}, ctx))
        self.assertFalse(self.check({"type": "total_sessions", "count": 7}, ctx))
        self.assertTrue(self.check({"type": "distinct_cases", "count": 4}, ctx))
        self.assertTrue(self.check({"type": "ranking_position", "position": 3}, ctx))
        self.assertTrue(self.check({"type": "win_streak", "count": 5}, ctx))
        self.assertTrue(self.check({"type": "total_wins", "count": 5}, ctx))
        self.assertTrue(self.check({"type": "win_rate", "rate": 80, "min_sessions": 5}, ctx))
        self.assertFalse(self.check({"type": "win_rate", "rate": 80, "min_sessions": 10}, ctx))

    def test_05b_total_sessions_counts_unfinished(self):
        history = [session("s1", SessionStatus.WON),
                   session("s2", SessionStatus.ABANDONED),
                   session("s3", SessionStatus.ABANDONED)]
        ctx = BadgeContext(history=history)
        self.assertTrue(self.check({"type": "total_sessions", "count": 3}, ctx))

    def test_06_unknown_criterion(self):
        self.assertFalse(self.check({"type": "moon_landing"}))

    def test_07_evaluate_skips_owned(self):
        badges = [Badge("b1", "First", "", "trophy", "session", {"type": "first_win"}),
                  Badge("b2", "Solo", "", "brain", "session", {"type": "no_hints"})]
        earned = BadgeChecker.evaluate(badges, {"b1"}, self.ctx)
        self.assertEqual([b.id for b in earned], ["b2"])

class TestBadgeAwards(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.store = VetBalanceStore(os.path.join(self.tmp, "test.db"))
        self.store.init_schema()
        seed_catalogue(self.store)

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_awards_are_persisted_once(self):
        case_id = self.store.list_cases()[0].id
        win = session("s1", SessionStatus.WON, 300, case_id)
        self.store.insert_session_record(win)

        earned = BadgeChecker.award_session_badges(self.store, win, hints_used=2, min_hp=10,
                                                   goals_total=2, goals_achieved=1)
        self.assertEqual({b.name for b in earned}, {"First Recovery", "Podium"})
        self.assertEqual(len(self.store.user_badges("u1")), 2)

        again = BadgeChecker.check_ranking_badges(self.store, "u1")
        self.assertEqual(again, [])

if __name__ == '__main__':
    unittest.main()
