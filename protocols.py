# protocols.py
from typing import Dict, Iterable, List, Optional

from models import (
    AppropriateTreatment,
    LearningGoal,
    Parameter,
    SimulationState,
)
from constants import ENGINE_CONSTANTS, GoalType

class TreatmentProtocol:
    @staticmethod
    def find_priority(treatment_id: int,
                      case_treatments: Iterable[AppropriateTreatment],
                      condition_treatments: Iterable[AppropriateTreatment]) -> Optional[int]:
        # 1. Case-specific table overrides the condition table
        case_rows = [t for t in case_treatments if t.treatment_id == treatment_id]
        if case_rows:
            return min(t.priority for t in case_rows)

        # 2. Fall back to the primary condition's table
        condition_rows = [t for t in condition_treatments if t.treatment_id == treatment_id]
        if condition_rows:
            return min(t.priority for t in condition_rows)
        return None

    @staticmethod
    def hp_delta(treatment_id: int,
                 case_treatments: Iterable[AppropriateTreatment],
                 condition_treatments: Iterable[AppropriateTreatment]) -> int:
        """
        Correct treatments heal in proportion to their ranking:
        priority 1 -> +20, 2 -> +15, 3 -> +10, 4 and below -> +5.
        Anything not listed for the case or its condition hurts the patient.
        """
        priority = TreatmentProtocol.find_priority(treatment_id, case_treatments, condition_treatments)
        if priority is None:
            return -ENGINE_CONSTANTS.WRONG_TREATMENT_PENALTY

        bonus = ENGINE_CONSTANTS.CORRECT_BASE_BONUS - (priority - 1) * ENGINE_CONSTANTS.PRIORITY_STEP
        return max(bonus, ENGINE_CONSTANTS.CORRECT_MIN_BONUS)

class GoalTracker:
    @staticmethod
    def _current_value(goal: LearningGoal, state: SimulationState,
                       parameters: List[Parameter]) -> Optional[float]:
        param = next((p for p in parameters if p.name == goal.target_parameter), None)
        if param is None:
            return None
        return state.parameters.get(param.id)

    @staticmethod
    def _tolerance(goal: LearningGoal) -> float:
        if goal.tolerance is None or goal.tolerance <= 0:
            return ENGINE_CONSTANTS.DEFAULT_GOAL_TOLERANCE
        return goal.tolerance

    @staticmethod
    def is_achieved(goal: LearningGoal, state: SimulationState, parameters: List[Parameter]) -> bool:
        if goal.time_limit_seconds is not None and state.elapsed_seconds > goal.time_limit_seconds:
            return False

        if goal.goal_type == GoalType.TREATMENT:
            return (goal.required_treatment_id is not None
                    and goal.required_treatment_id in state.treatments_applied)

        if goal.target_parameter is None or goal.target_value is None:
            return False
        value = GoalTracker._current_value(goal, state, parameters)
        if value is None:
            return False
        return abs(value - goal.target_value) <= GoalTracker._tolerance(goal)

    @staticmethod
    def progress(goal: LearningGoal, state: SimulationState, parameters: List[Parameter],
                 achieved: bool = False) -> float:
        """0-100. Distance of 3x tolerance or more from the target is 0%."""
        if achieved or GoalTracker.is_achieved(goal, state, parameters):
            return 100.0
        if goal.goal_type != GoalType.PARAMETER or goal.target_value is None:
            return 0.0

        value = GoalTracker._current_value(goal, state, parameters)
        if value is None:
            return 0.0
        span = GoalTracker._tolerance(goal) * ENGINE_CONSTANTS.GOAL_PROGRESS_SPAN
        distance = abs(value - goal.target_value)
        return max(0.0, min(100.0, (span - distance) / span * 100.0))

    @staticmethod
    def newly_achieved(goals: List[LearningGoal], already: Iterable[str],
                       state: SimulationState, parameters: List[Parameter]) -> List[LearningGoal]:
        done = set(already)
        return [g for g in goals if g.id not in done and GoalTracker.is_achieved(g, state, parameters)]

class DiagnosticJudge:
    @staticmethod
    def _normalize(text: str) -> str:
        return " ".join(text.split()).casefold()

    @staticmethod
    def is_correct(answer: str, correct: str) -> bool:
        if not answer or not correct:
            return False
        return DiagnosticJudge._normalize(answer) == DiagnosticJudge._normalize(correct)

def index_parameters(parameters: List[Parameter]) -> Dict[int, Parameter]:
    return {p.id: p for p in parameters}
