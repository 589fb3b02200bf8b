"""
VetBalance: Core Simulation Engine
==================================
A pure reducer over SimulationState. The front-end is the only clock:
it reports elapsed seconds as Tick events, and student actions arrive
as TreatmentApplied / HintUsed / DiagnosisSubmitted events.

    reduce(state, event) -> new state

Terminal states (won / lost) absorb every event unchanged.
"""

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from models import (
    SimulationState,
    ParameterEffect,
    Tick,
    TreatmentApplied,
    HintUsed,
    DiagnosisSubmitted,
    SimulationRuleError,
    ValidationError,
)
from constants import ENGINE_CONSTANTS, SimulationStatus, SimulationMode

class VetBalanceEngine:
    """
    The Mathematical Core.
    Case Data -> Initial State -> (Events) -> Outcome.
    """

    @staticmethod
    def _clamp_hp(hp: int) -> int:
        return max(ENGINE_CONSTANTS.MIN_HP, min(int(hp), ENGINE_CONSTANTS.MAX_HP))

    @staticmethod
    def _apply_effects(parameters: Dict[int, float],
                       effects: Iterable[ParameterEffect],
                       fraction: float = 1.0) -> Dict[int, float]:
        """Adds each effect magnitude (scaled) to its parameter. Unknown parameters start at 0."""
        updated = dict(parameters)
        for effect in effects:
            current = updated.get(effect.parameter_id, 0.0)
            updated[effect.parameter_id] = current + float(effect.magnitude) * fraction
        return updated

    @staticmethod
    def _resolve_status(state: SimulationState) -> SimulationState:
        """Threshold checks, in priority order: death, stabilization, timeout."""
        if state.hp <= ENGINE_CONSTANTS.MIN_HP:
            return replace(state, status=SimulationStatus.LOST)
        if state.hp >= ENGINE_CONSTANTS.MAX_HP:
            return replace(state, status=SimulationStatus.WON)
        if state.elapsed_seconds >= state.time_limit_seconds:
            return replace(state, status=SimulationStatus.LOST)
        return state

    @staticmethod
    def _with_hp(state: SimulationState, delta: int) -> SimulationState:
        new_hp = VetBalanceEngine._clamp_hp(state.hp + delta)
        return replace(state, hp=new_hp, min_hp=min(state.min_hp, new_hp))

    @staticmethod
    def initialize_simulation_state(case_id: int,
                                    initial_values: Dict[int, float],
                                    condition_effects: Iterable[ParameterEffect] = (),
                                    mode: SimulationMode = SimulationMode.PRACTICE,
                                    time_limit_seconds: int = ENGINE_CONSTANTS.TIME_LIMIT_S) -> SimulationState:
        if time_limit_seconds <= 0:
            raise ValidationError(f"Time limit must be positive, got {time_limit_seconds}")

        return SimulationState(
            case_id=case_id,
            parameters={int(k): float(v) for k, v in initial_values.items()},
            hp=ENGINE_CONSTANTS.INITIAL_HP,
            elapsed_seconds=0,
            status=SimulationStatus.PLAYING,
            mode=mode,
            time_limit_seconds=time_limit_seconds,
            condition_effects=tuple(condition_effects),
            min_hp=ENGINE_CONSTANTS.INITIAL_HP,
        )

    # --- EVENT HANDLERS ---

    @staticmethod
    def tick(state: SimulationState, seconds: int = 1) -> SimulationState:
        """
        Advances the clock one second at a time so that decay and drift
        boundaries are never skipped by a large step.
        """
        if seconds < 0:
            raise ValidationError(f"Cannot tick backwards ({seconds}s)")

        current = state
        for _ in range(seconds):
            if not current.is_playing:
                break
            elapsed = current.elapsed_seconds + 1
            parameters = current.parameters

            # 1. Disease progression
            if elapsed % ENGINE_CONSTANTS.CONDITION_DRIFT_INTERVAL_S == 0 and current.condition_effects:
                parameters = VetBalanceEngine._apply_effects(
                    parameters, current.condition_effects,
                    fraction=ENGINE_CONSTANTS.CONDITION_DRIFT_FRACTION
                )

            current = replace(current, elapsed_seconds=elapsed, parameters=parameters)

            # 2. HP decay
            if elapsed % ENGINE_CONSTANTS.HP_DECAY_INTERVAL_S == 0:
                current = VetBalanceEngine._with_hp(current, -ENGINE_CONSTANTS.HP_DECAY_AMOUNT)

            current = VetBalanceEngine._resolve_status(current)
        return current

    @staticmethod
    def apply_treatment(state: SimulationState, event: TreatmentApplied) -> SimulationState:
        parameters = VetBalanceEngine._apply_effects(state.parameters, event.effects)
        updated = replace(
            state,
            parameters=parameters,
            treatments_applied=state.treatments_applied + (event.treatment_id,)
        )
        updated = VetBalanceEngine._with_hp(updated, event.hp_delta)
        return VetBalanceEngine._resolve_status(updated)

    @staticmethod
    def use_hint(state: SimulationState) -> SimulationState:
        if state.mode == SimulationMode.EVALUATION:
            raise SimulationRuleError("Hints are disabled in evaluation mode")
        updated = VetBalanceEngine._with_hp(state, -ENGINE_CONSTANTS.HINT_PENALTY)
        updated = replace(updated, hints_used=state.hints_used + 1)
        return VetBalanceEngine._resolve_status(updated)

    @staticmethod
    def submit_diagnosis(state: SimulationState, correct: bool) -> SimulationState:
        # Only the first answer counts
        if state.diagnosis_attempted:
            return state
        updated = replace(state, diagnosis_attempted=True)
        if correct:
            updated = VetBalanceEngine._with_hp(updated, ENGINE_CONSTANTS.DIAGNOSIS_BONUS)
        return VetBalanceEngine._resolve_status(updated)

    @staticmethod
    def reduce(state: SimulationState, event) -> SimulationState:
        """(state, event) -> state. The single entry point for every transition."""
        if not state.is_playing:
            return state

        if isinstance(event, Tick):
            return VetBalanceEngine.tick(state, event.seconds)
        if isinstance(event, TreatmentApplied):
            return VetBalanceEngine.apply_treatment(state, event)
        if isinstance(event, HintUsed):
            return VetBalanceEngine.use_hint(state)
        if isinstance(event, DiagnosisSubmitted):
            return VetBalanceEngine.submit_diagnosis(state, event.correct)
        raise TypeError(f"Unsupported event type: {type(event).__name__}")

    @staticmethod
    def run_simulation(initial_state: SimulationState,
                       events: List,
                       return_series: bool = False) -> dict:
        """
        PREDICTIVE ENGINE:
        Replays a scripted list of events and reports the outcome.
        Used for replays, what-if checks and tests.
        """
        current_state = initial_state
        trajectory = []

        if return_series:
            trajectory.append(VetBalanceEngine._trajectory_point(current_state, None))

        consumed = 0
        for event in events:
            if not current_state.is_playing:
                break
            current_state = VetBalanceEngine.reduce(current_state, event)
            consumed += 1
            if return_series:
                trajectory.append(VetBalanceEngine._trajectory_point(current_state, event))

        return {
            "final_state": current_state,
            "status": current_state.status,
            "events_consumed": consumed,
            "hp_change": current_state.hp - initial_state.hp,
            "trajectory": trajectory,
        }

    @staticmethod
    def _trajectory_point(state: SimulationState, event: Optional[object]) -> dict:
        return {
            "time": state.elapsed_seconds,
            "hp": state.hp,
            "status": state.status.value,
            "event": type(event).__name__ if event is not None else "Start",
            "parameters": {pid: round(value, 3) for pid, value in state.parameters.items()},
        }
