"""
VetBalance: Live Simulation Sessions
====================================
Keeps one engine state per running session and persists everything a
play-through produces: treatments, decisions, the parameter history,
achieved learning goals and earned badges.

The HTTP client is the only clock. It calls advance() with the seconds
that passed; every other call is a student action.
"""

import logging
import random
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from models import (
    AppropriateTreatment,
    ClinicalCase,
    Condition,
    ConflictError,
    Decision,
    DiagnosisSubmitted,
    GoalAchievement,
    HintUsed,
    LearningGoal,
    NotFoundError,
    Parameter,
    PermissionDeniedError,
    Session,
    SimulationRuleError,
    SimulationState,
    Tick,
    Treatment,
    TreatmentApplied,
    ValidationError,
)
from constants import (
    ENGINE_CONSTANTS,
    DecisionType,
    SessionStatus,
    SimulationMode,
    SimulationStatus,
)
from core_engine import VetBalanceEngine
from protocols import DiagnosticJudge, GoalTracker, TreatmentProtocol, index_parameters
from monitor import AlertThrottle, MonitorSupervisor
from badges import BadgeChecker
from rankings import record_weekly_snapshot
from ai_gateway import AIGateway
from store import VetBalanceStore

logger = logging.getLogger("vetbalance.sessions")

FINAL_STATUS = {
    SimulationStatus.WON: SessionStatus.WON,
    SimulationStatus.LOST: SessionStatus.LOST,
    SimulationStatus.PLAYING: SessionStatus.ABANDONED,
}

@dataclass
class LiveSession:
    session: Session
    case: ClinicalCase
    condition: Optional[Condition]
    state: SimulationState
    parameters: List[Parameter]
    treatments: Dict[int, Treatment]
    case_treatments: List[AppropriateTreatment]
    condition_treatments: List[AppropriateTreatment]
    goals: List[LearningGoal]
    achieved_goals: Dict[str, int] = field(default_factory=dict)  # goal id -> elapsed seconds
    history: List[dict] = field(default_factory=list)
    throttle: AlertThrottle = field(default_factory=AlertThrottle)
    diagnostic: Optional[dict] = None
    lock: threading.Lock = field(default_factory=threading.Lock)

class SimulationService:
    def __init__(self, store: VetBalanceStore, gateway: AIGateway):
        self.store = store
        self.gateway = gateway
        self._live: Dict[str, LiveSession] = {}
        self._lock = threading.Lock()

    # --- 1. REGISTRY ---

    def _get(self, session_id: str, user_id: Optional[str] = None) -> LiveSession:
        with self._lock:
            live = self._live.get(session_id)
        if live is None:
            # Distinguish "never existed" from "already finished"
            session = self.store.get_session(session_id)
            raise ConflictError(f"Session {session.id} is not running (status: {session.status.value})")
        if user_id is not None and live.session.user_id != user_id:
            raise PermissionDeniedError("Session belongs to another user")
        return live

    def is_live(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._live

    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    # --- 2. LIFECYCLE ---

    def start_session(self, user_id: str, case_id: int, mode: SimulationMode = SimulationMode.PRACTICE,
                      name: Optional[str] = None) -> dict:
        case = self.store.get_case(case_id)
        initial_values = self.store.initial_values(case_id)
        if not initial_values:
            raise ValidationError(f"Case {case_id} has no initial parameter values")

        condition = None
        condition_effects = []
        if case.primary_condition_id is not None:
            condition = self.store.get_condition(case.primary_condition_id)
            condition_effects = self.store.condition_effects(condition.id)

        state = VetBalanceEngine.initialize_simulation_state(
            case_id, initial_values, condition_effects, mode=mode)

        session = self.store.create_session(
            user_id, case_id, name or f"{case.name} - {datetime.now().strftime('%Y-%m-%d %H:%M')}", mode)

        live = LiveSession(
            session=session,
            case=case,
            condition=condition,
            state=state,
            parameters=self.store.list_parameters(),
            treatments={t.id: t for t in self.store.list_treatments()},
            case_treatments=self.store.case_treatments(case_id),
            condition_treatments=self.store.condition_treatments(case.primary_condition_id),
            goals=self.store.list_goals(case_id),
        )
        self._record_point(live)
        self._check_goals(live)

        with self._lock:
            self._live[session.id] = live
        logger.info(f"Session {session.id} started: user={user_id} case={case_id} mode={mode.value}")
        return self._snapshot(live)

    def finish_session(self, session_id: str, user_id: Optional[str] = None,
                       notes: Optional[str] = None) -> dict:
        live = self._get(session_id, user_id)
        with live.lock:
            return self._finish(live, notes)

    def _finish(self, live: LiveSession, notes: Optional[str] = None) -> dict:
        """Persists the outcome, then evicts the live state. Caller holds live.lock."""
        session_id = live.session.id
        with self._lock:
            if self._live.get(session_id) is not live:
                raise ConflictError(f"Session {session_id} already finished")
        try:
            return self._persist_outcome(live, notes)
        finally:
            with self._lock:
                self._live.pop(session_id, None)

    def _persist_outcome(self, live: LiveSession, notes: Optional[str]) -> dict:
        state = live.state
        status = FINAL_STATUS[state.status]
        session_id = live.session.id

        self.store.finish_session(
            session_id, status,
            duration_seconds=state.elapsed_seconds,
            final_hp=state.hp,
            hints_used=state.hints_used,
            min_hp=state.min_hp,
            notes=notes,
        )
        self.store.record_history(session_id, live.history)

        points = 0
        for goal in live.goals:
            if goal.id in live.achieved_goals:
                self.store.record_goal_achievement(GoalAchievement(
                    goal_id=goal.id, session_id=session_id, user_id=live.session.user_id,
                    points=goal.points, elapsed_seconds=live.achieved_goals[goal.id]))
                points += goal.points

        finished = self.store.get_session(session_id)
        badges = BadgeChecker.award_session_badges(
            self.store, finished, state.hints_used, state.min_hp,
            goals_total=len(live.goals), goals_achieved=len(live.achieved_goals))
        if finished.is_completed:
            record_weekly_snapshot(self.store, finished.user_id)

        logger.info(f"Session {session_id} finished: {status.value}, hp={state.hp}, "
                    f"{state.elapsed_seconds}s, {len(badges)} badge(s)")
        return {
            "session_id": session_id,
            "status": status.value,
            "duration_seconds": state.elapsed_seconds,
            "final_hp": state.hp,
            "hints_used": state.hints_used,
            "goals_achieved": len(live.achieved_goals),
            "points": points,
            "badges": [{"id": b.id, "name": b.name, "icon": b.icon, "description": b.description}
                       for b in badges],
        }

    # --- 3. CLOCK & ACTIONS ---

    def advance(self, session_id: str, seconds: int, user_id: Optional[str] = None) -> dict:
        if seconds < 1 or seconds > ENGINE_CONSTANTS.MAX_TICK_BATCH_S:
            raise ValidationError(
                f"Clock step must be between 1 and {ENGINE_CONSTANTS.MAX_TICK_BATCH_S} seconds, got {seconds}")

        live = self._get(session_id, user_id)
        with live.lock:
            for _ in range(seconds):
                if not live.state.is_playing:
                    break
                live.state = VetBalanceEngine.reduce(live.state, Tick(1))
                self._record_point(live)
                self._check_goals(live)
                self._check_alerts(live)
            return self._after_transition(live)

    def apply_treatment(self, session_id: str, treatment_id: int, user_id: Optional[str] = None) -> dict:
        live = self._get(session_id, user_id)
        with live.lock:
            self._require_playing(live)
            treatment = live.treatments.get(treatment_id)
            if treatment is None:
                raise NotFoundError(f"Treatment {treatment_id} not found")

            priority = TreatmentProtocol.find_priority(
                treatment_id, live.case_treatments, live.condition_treatments)
            delta = TreatmentProtocol.hp_delta(treatment_id, live.case_treatments, live.condition_treatments)
            hp_before = live.state.hp

            live.state = VetBalanceEngine.reduce(
                live.state, TreatmentApplied(treatment_id, tuple(treatment.effects), delta))

            now = live.state.elapsed_seconds
            self.store.record_treatment(live.session.id, treatment_id, now)
            self._decision(live, DecisionType.TREATMENT, hp_before, {
                "treatment_id": treatment_id,
                "treatment_name": treatment.name,
                "priority": priority,
                "correct": priority is not None,
                "hp_delta": delta,
            })
            self._record_point(live)
            self._check_goals(live)
            logger.info(f"Session {session_id}: '{treatment.name}' applied at {now}s ({delta:+d} HP)")

            result = self._after_transition(live)
            result["treatment"] = {
                "treatment_id": treatment_id,
                "name": treatment.name,
                "correct": priority is not None,
                "priority": priority,
                "hp_delta": delta,
            }
            return result

    def request_hints(self, session_id: str, user_id: Optional[str] = None) -> dict:
        """Asks the AI for hints. The HP penalty applies only once hints were delivered."""
        live = self._get(session_id, user_id)
        with live.lock:
            self._require_playing(live)
            if live.state.mode == SimulationMode.EVALUATION:
                raise SimulationRuleError("Hints are disabled in evaluation mode")

            names = {t.id: t.name for t in live.treatments.values()}
            appropriate = live.case_treatments or live.condition_treatments
            hints = self.gateway.treatment_hints(
                case_description=live.case.description or live.case.name,
                condition=live.condition.name if live.condition else "",
                parameters=self._ai_parameters(live),
                available_treatments=[{"name": t.name, "description": t.description}
                                      for t in live.treatments.values()],
                appropriate_treatments=[{"name": names.get(a.treatment_id, str(a.treatment_id)),
                                         "priority": a.priority, "rationale": a.rationale}
                                        for a in appropriate],
            )

            hp_before = live.state.hp
            live.state = VetBalanceEngine.reduce(live.state, HintUsed())
            self._decision(live, DecisionType.HINT_USED, hp_before, {"hint_count": len(hints)})

            result = self._after_transition(live)
            result["hints"] = hints
            return result

    def diagnostic_challenge(self, session_id: str, user_id: Optional[str] = None) -> dict:
        live = self._get(session_id, user_id)
        with live.lock:
            self._require_playing(live)
            if live.condition is None:
                raise ValidationError("Case has no primary condition to diagnose")

            if live.diagnostic is None:
                live.diagnostic = self.gateway.differential_diagnosis(
                    case_name=live.case.name,
                    species=live.case.species.value if live.case.species else "",
                    condition=live.condition.name,
                    parameters=self._ai_parameters(live),
                )
            options = [o["name"] for o in live.diagnostic["differential_diagnoses"]
                       if isinstance(o, dict) and o.get("name")]
            random.shuffle(options)
            return {"session_id": session_id, "options": options,
                    "answered": live.state.diagnosis_attempted}

    def submit_diagnosis(self, session_id: str, answer: str, user_id: Optional[str] = None) -> dict:
        live = self._get(session_id, user_id)
        with live.lock:
            self._require_playing(live)
            if live.condition is None:
                raise ValidationError("Case has no primary condition to diagnose")
            if live.state.diagnosis_attempted:
                raise ConflictError("A diagnosis was already submitted for this session")

            correct = DiagnosticJudge.is_correct(answer, live.condition.name)
            hp_before = live.state.hp
            live.state = VetBalanceEngine.reduce(live.state, DiagnosisSubmitted(correct))
            self._decision(live, DecisionType.DIAGNOSIS, hp_before, {"answer": answer, "correct": correct})

            result = self._after_transition(live)
            result["diagnosis"] = {
                "answer": answer,
                "correct": correct,
                "correct_diagnosis": live.condition.name,
                "differential_diagnoses": (live.diagnostic or {}).get("differential_diagnoses", []),
            }
            return result

    # --- 4. READS ---

    def snapshot(self, session_id: str, user_id: Optional[str] = None) -> dict:
        live = self._get(session_id, user_id)
        with live.lock:
            return self._snapshot(live)

    def parameter_values(self, session_id: str) -> Dict[str, float]:
        """Current values by parameter name, for note snapshots."""
        live = self._get(session_id)
        with live.lock:
            return {r.name: r.value for r in MonitorSupervisor.readings(live.state, live.parameters)}

    def session_replay(self, session_id: str) -> dict:
        session = self.store.get_session(session_id)
        decisions = self.store.list_decisions(session_id)
        return {
            "session": session,
            "decisions": [{
                "kind": d.kind,
                "simulation_time": d.simulation_time,
                "hp_before": d.hp_before,
                "hp_after": d.hp_after,
                "data": d.data,
            } for d in decisions],
            "treatments": self.store.session_treatments([session_id]),
            "history": self.store.session_history(session_id),
        }

    def session_feedback(self, session_id: str) -> dict:
        session = self.store.get_session(session_id)
        if session.status == SessionStatus.PLAYING:
            raise ConflictError("Feedback is available once the session has finished")
        case = self.store.get_case(session.case_id)
        treatments = self.store.session_treatments([session_id])
        feedback = self.gateway.session_feedback(
            case_name=case.name,
            species=case.species.value if case.species else "",
            outcome=session.status.value,
            duration_seconds=session.duration_seconds or 0,
            treatments=[{"name": t["treatment_name"], "simulation_time": t["simulation_time"]}
                        for t in treatments],
            decision_count=len(self.store.list_decisions(session_id)),
        )
        return {
            "feedback": feedback,
            "session": {
                "case_name": case.name,
                "status": session.status.value,
                "duration_seconds": session.duration_seconds,
                "treatment_count": len(treatments),
            },
        }

    # --- 5. INTERNALS (caller holds live.lock) ---

    @staticmethod
    def _require_playing(live: LiveSession):
        if not live.state.is_playing:
            raise ConflictError(f"Session {live.session.id} is over ({live.state.status.value})")

    def _after_transition(self, live: LiveSession) -> dict:
        snapshot = self._snapshot(live)
        if not live.state.is_playing:
            snapshot["result"] = self._finish(live)
        return snapshot

    @staticmethod
    def _record_point(live: LiveSession):
        point = {"time": live.state.elapsed_seconds, "values": dict(live.state.parameters)}
        if live.history and live.history[-1]["time"] == point["time"]:
            live.history[-1] = point
        else:
            live.history.append(point)

    @staticmethod
    def _check_goals(live: LiveSession):
        for goal in GoalTracker.newly_achieved(live.goals, live.achieved_goals, live.state, live.parameters):
            live.achieved_goals[goal.id] = live.state.elapsed_seconds
            logger.info(f"Session {live.session.id}: goal '{goal.title}' achieved "
                        f"at {live.state.elapsed_seconds}s (+{goal.points})")

    def _check_alerts(self, live: LiveSession):
        alerts = MonitorSupervisor.check_real_time(live.state, live.parameters)
        level = live.throttle.should_fire(alerts, live.state.elapsed_seconds)
        if level == "critical":
            self._decision(live, DecisionType.PARAMETER_CRITICAL, live.state.hp,
                           {"parameters": alerts.critical_parameters})

    def _decision(self, live: LiveSession, kind: DecisionType, hp_before: int, data: dict):
        self.store.record_decision(Decision(
            session_id=live.session.id,
            kind=kind.value,
            simulation_time=live.state.elapsed_seconds,
            data=data,
            hp_before=hp_before,
            hp_after=live.state.hp,
        ))

    @staticmethod
    def _ai_parameters(live: LiveSession) -> List[dict]:
        catalogue = index_parameters(live.parameters)
        return [{
            "name": catalogue[pid].name,
            "unit": catalogue[pid].unit,
            "value": value,
            "min_value": catalogue[pid].min_value,
            "max_value": catalogue[pid].max_value,
        } for pid, value in live.state.parameters.items() if pid in catalogue]

    @staticmethod
    def _snapshot(live: LiveSession) -> dict:
        state = live.state
        alerts = MonitorSupervisor.check_real_time(state, live.parameters)
        return {
            "session_id": live.session.id,
            "case_id": live.case.id,
            "status": state.status.value,
            "mode": state.mode.value,
            "hp": state.hp,
            "elapsed_seconds": state.elapsed_seconds,
            "time_remaining_seconds": state.time_remaining_seconds,
            "hints_used": state.hints_used,
            "parameters": [{
                "parameter_id": r.parameter_id,
                "name": r.name,
                "value": r.value,
                "unit": r.unit,
                "status": r.status.value,
            } for r in MonitorSupervisor.readings(state, live.parameters)],
            "alerts": {
                "critical_parameters": alerts.critical_parameters,
                "warning_parameters": alerts.warning_parameters,
                "hp_critical": alerts.hp_critical,
                "time_critical": alerts.time_critical,
                "mood": alerts.mood.value,
            },
            "goals": [{
                "id": g.id,
                "title": g.title,
                "points": g.points,
                "achieved": g.id in live.achieved_goals,
                "progress": round(GoalTracker.progress(g, state, live.parameters,
                                                       achieved=g.id in live.achieved_goals), 1),
            } for g in live.goals],
        }
