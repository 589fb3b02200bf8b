"""
VetBalance: Data Dictionary & Domain Types
==========================================
This module defines the state space of the simulator: the case catalogue
(Inputs), the live simulation state (Engine), the events that drive it,
and the persisted records (Sessions, Goals, Badges, Rankings).

NO LOGIC is implemented here beyond light validation in __post_init__.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from constants import (
    ENGINE_CONSTANTS,
    SimulationStatus,
    SimulationMode,
    SessionStatus,
    GoalType,
    Species,
)

# --- 0. EXCEPTIONS ---

class VetBalanceError(Exception):
    """Base class for every domain error raised by the service."""
    pass

class NotFoundError(VetBalanceError, LookupError):
    """Raised when a case, session, user or code does not exist."""
    pass

class ValidationError(VetBalanceError, ValueError):
    """Raised when inputs are well-typed but clinically or logically invalid."""
    pass

class SimulationRuleError(ValidationError):
    """Raised when an event breaks an engine rule (e.g. hints in evaluation mode)."""
    pass

class PermissionDeniedError(VetBalanceError):
    """Raised when the caller's role does not allow the operation."""
    pass

class ConflictError(VetBalanceError):
    """Raised when the operation clashes with existing state."""
    pass

class ExpiredCodeError(ConflictError):
    """Raised when a share code or access key is past its expiry date."""
    pass

class AIGatewayError(VetBalanceError):
    """Raised when the AI gateway fails or returns an unusable reply."""
    pass

class AIRateLimitError(AIGatewayError):
    pass

class AICreditsExhaustedError(AIGatewayError):
    pass

class AIConfigurationError(AIGatewayError):
    """Raised when no API key is configured for the AI gateway."""
    pass

# --- 1. CATALOGUE (What the Professor Defines) ---

@dataclass
class Parameter:
    id: int
    name: str
    unit: Optional[str] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    description: Optional[str] = None

@dataclass
class Condition:
    id: int
    name: str
    description: Optional[str] = None

@dataclass
class ParameterEffect:
    """Signed change applied to one parameter (by a treatment or a condition)."""
    parameter_id: int
    magnitude: float
    description: Optional[str] = None

@dataclass
class Treatment:
    id: int
    name: str
    description: Optional[str] = None
    kind: Optional[str] = None
    effects: List[ParameterEffect] = field(default_factory=list)

@dataclass
class AppropriateTreatment:
    """
    One row of a correctness table.
    Priority 1 is the most appropriate treatment for the case or condition.
    """
    treatment_id: int
    priority: int
    rationale: Optional[str] = None

    def __post_init__(self):
        if self.priority < 1:
            raise ValidationError(f"Priority must be >= 1, got {self.priority}")

@dataclass
class ClinicalCase:
    id: int
    name: str
    description: Optional[str] = None
    species: Optional[Species] = None
    primary_condition_id: Optional[int] = None
    owner_id: Optional[str] = None
    created_at: Optional[str] = None

# --- 2. DYNAMIC STATE (The Simulation Variables) ---

@dataclass(frozen=True)
class SimulationState:
    """
    The variables that change on every clock step or student action.
    Frozen: the engine returns a new state for each event.
    """
    case_id: int
    parameters: Dict[int, float]
    hp: int
    elapsed_seconds: int
    status: SimulationStatus

    mode: SimulationMode = SimulationMode.PRACTICE
    time_limit_seconds: int = ENGINE_CONSTANTS.TIME_LIMIT_S

    # Disease drift applied on the clock
    condition_effects: Tuple[ParameterEffect, ...] = ()

    # Bookkeeping for badges and reports
    min_hp: int = ENGINE_CONSTANTS.INITIAL_HP
    hints_used: int = 0
    treatments_applied: Tuple[int, ...] = ()
    diagnosis_attempted: bool = False

    @property
    def is_playing(self) -> bool:
        return self.status == SimulationStatus.PLAYING

    @property
    def time_remaining_seconds(self) -> int:
        return max(0, self.time_limit_seconds - self.elapsed_seconds)

# --- 3. EVENTS (What Drives the Reducer) ---

@dataclass(frozen=True)
class Tick:
    seconds: int = 1

@dataclass(frozen=True)
class TreatmentApplied:
    treatment_id: int
    effects: Tuple[ParameterEffect, ...]
    hp_delta: int

@dataclass(frozen=True)
class HintUsed:
    pass

@dataclass(frozen=True)
class DiagnosisSubmitted:
    correct: bool

# --- 4. PERSISTED RECORDS ---

@dataclass
class Session:
    id: str
    user_id: str
    case_id: int
    name: str
    status: SessionStatus
    started_at: str
    mode: SimulationMode = SimulationMode.PRACTICE
    ended_at: Optional[str] = None
    duration_seconds: Optional[int] = None
    final_hp: Optional[int] = None
    notes: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status in (SessionStatus.WON, SessionStatus.LOST)

@dataclass
class Decision:
    session_id: str
    kind: str
    simulation_time: int
    data: dict
    hp_before: Optional[int] = None
    hp_after: Optional[int] = None
    id: Optional[str] = None
    created_at: Optional[str] = None

@dataclass
class LearningGoal:
    id: str
    case_id: int
    title: str
    goal_type: GoalType
    points: int = 0
    description: str = ""
    target_parameter: Optional[str] = None
    target_value: Optional[float] = None
    tolerance: Optional[float] = None
    time_limit_seconds: Optional[int] = None
    required_treatment_id: Optional[int] = None

@dataclass
class GoalAchievement:
    goal_id: str
    session_id: str
    user_id: str
    points: int
    elapsed_seconds: int

@dataclass
class Badge:
    id: str
    name: str
    description: str
    icon: str
    category: str        # "session", "ranking", "streak", "milestone"
    criterion: dict      # {"type": BadgeCriterion value, ...thresholds}

@dataclass
class RankingEntry:
    user_id: str
    user_name: str
    wins: int
    losses: int
    total_sessions: int
    win_rate: float
    total_points: int
    average_win_seconds: Optional[float]
    position: int = 0

@dataclass
class WeeklyEntry:
    user_id: str
    user_name: str
    wins: int
    total_sessions: int
    win_rate: float
    points: int
    position: int = 0

@dataclass
class PerformanceStats:
    total_sessions: int
    wins: int
    losses: int
    success_rate: float
    average_seconds: float
    fastest_seconds: int
    slowest_seconds: int
    goals_achieved: int
    total_points: int
    average_treatments: float
    most_used_treatment: Optional[dict] = None
