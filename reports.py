# reports.py
import csv
import io
from collections import Counter
from datetime import datetime
from typing import List, Optional

from models import NotFoundError, PermissionDeniedError
from constants import SessionStatus
from store import VetBalanceStore

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

def _weekday(timestamp: Optional[str]) -> Optional[str]:
    if not timestamp:
        return None
    return WEEKDAYS[datetime.fromisoformat(timestamp).weekday()]

class ReportBuilder:
    @staticmethod
    def user_report(store: VetBalanceStore, user_id: str) -> dict:
        sessions = store.list_sessions(user_id=user_id)
        completed = [s for s in sessions if s.is_completed]
        wins = sum(1 for s in completed if s.status == SessionStatus.WON)
        durations = [s.duration_seconds for s in completed if s.duration_seconds is not None]
        achievements = store.goal_achievements(user_id=user_id)

        status_counts = Counter(s.status.value for s in sessions)
        weekday_counts = Counter(_weekday(s.created_at or s.started_at) for s in sessions)

        return {
            "user_id": user_id,
            "total_sessions": len(sessions),
            "completed_sessions": len(completed),
            "wins": wins,
            "success_rate": round(wins / len(completed) * 100, 1) if completed else 0.0,
            "average_duration_seconds": round(sum(durations) / len(durations), 1) if durations else 0.0,
            "total_points": sum(a["points"] for a in achievements),
            "badges": [b["name"] for b in store.user_badges(user_id)],
            "status_distribution": {status.value: status_counts.get(status.value, 0) for status in SessionStatus},
            "sessions_by_weekday": {day: weekday_counts.get(day, 0) for day in WEEKDAYS},
            "sessions": [{
                "id": s.id,
                "name": s.name,
                "case_id": s.case_id,
                "status": s.status.value,
                "mode": s.mode.value,
                "started_at": s.started_at,
                "duration_seconds": s.duration_seconds,
                "final_hp": s.final_hp,
            } for s in sessions],
        }

    @staticmethod
    def to_csv(report: dict) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["Session", "Case", "Status", "Mode", "Started", "Duration (s)", "Final HP"])
        for s in report["sessions"]:
            writer.writerow([s["name"], s["case_id"], s["status"], s["mode"], s["started_at"],
                             s["duration_seconds"] if s["duration_seconds"] is not None else "",
                             s["final_hp"] if s["final_hp"] is not None else ""])
        return buffer.getvalue()

    @staticmethod
    def to_text(report: dict) -> str:
        lines = [
            "VETBALANCE PERFORMANCE REPORT",
            "=============================",
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M')}",
            "",
            f"Total sessions:      {report['total_sessions']}",
            f"Completed sessions:  {report['completed_sessions']}",
            f"Wins:                {report['wins']}",
            f"Success rate:        {report['success_rate']}%",
            f"Average duration:    {report['average_duration_seconds']}s",
            f"Goal points:         {report['total_points']}",
            f"Badges:              {', '.join(report['badges']) or 'none'}",
            "",
            "Status distribution:",
        ]
        lines += [f"  {status}: {count}" for status, count in report["status_distribution"].items()]
        lines += ["", "Sessions by weekday:"]
        lines += [f"  {day}: {count}" for day, count in report["sessions_by_weekday"].items()]
        return "\n".join(lines) + "\n"

    @staticmethod
    def professor_report(store: VetBalanceStore, professor_id: str, class_id: Optional[str] = None) -> List[dict]:
        if class_id is not None:
            klass = store.get_class(class_id)
            if klass["professor_id"] != professor_id:
                raise PermissionDeniedError("Class belongs to another professor")

        rows = []
        for link in store.list_roster(professor_id, class_id):
            student_id = link["student_id"]
            sessions = store.list_sessions(user_id=student_id)
            completed = [s for s in sessions if s.is_completed]
            wins = sum(1 for s in completed if s.status == SessionStatus.WON)
            rows.append({
                "student_id": student_id,
                "student_name": link.get("full_name") or "Student",
                "class_id": link["class_id"],
                "total_sessions": len(sessions),
                "completed_sessions": len(completed),
                "wins": wins,
                "success_rate": round(wins / len(completed) * 100, 1) if completed else 0.0,
                "total_points": sum(a["points"] for a in store.goal_achievements(user_id=student_id)),
                "badges": len(store.user_badge_ids(student_id)),
                "last_activity": sessions[0].started_at if sessions else None,
            })
        rows.sort(key=lambda r: (-r["wins"], r["student_name"]))
        return rows

    @staticmethod
    def compare_sessions(store: VetBalanceStore, first_id: str, second_id: str,
                         user_id: Optional[str] = None) -> dict:
        summaries = []
        for session_id in (first_id, second_id):
            session = store.get_session(session_id)
            if user_id is not None and session.user_id != user_id:
                raise NotFoundError(f"Session {session_id} not found")
            treatments = store.session_treatments([session_id])
            summaries.append({
                "id": session.id,
                "name": session.name,
                "case_id": session.case_id,
                "status": session.status.value,
                "duration_seconds": session.duration_seconds or 0,
                "final_hp": session.final_hp or 0,
                "treatment_count": len(treatments),
                "treatments": [t["treatment_name"] for t in treatments],
                "decision_count": len(store.list_decisions(session_id)),
            })

        first, second = summaries
        return {
            "first": first,
            "second": second,
            "difference": {
                key: second[key] - first[key]
                for key in ("duration_seconds", "final_hp", "treatment_count", "decision_count")
            },
        }
