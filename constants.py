import logging
from enum import Enum
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("vetbalance.constants")

VERSION = "1.0.0"
TCLE_VERSION = "1.0"  # Bump to ask every student for consent again

class SimulationStatus(Enum):
    PLAYING = "playing"
    WON = "won"      # HP reached 100
    LOST = "lost"    # HP reached 0 or time ran out

class SessionStatus(Enum):
    PLAYING = "playing"
    WON = "won"
    LOST = "lost"
    ABANDONED = "abandoned"  # Finished by the student before an outcome

class SimulationMode(Enum):
    PRACTICE = "practice"      # Hints allowed
    EVALUATION = "evaluation"  # No hints

class ParameterStatus(Enum):
    NORMAL = "normal"
    WARNING = "warning"    # Inside bounds but within the 10% margin
    CRITICAL = "critical"  # Outside bounds

class PatientMood(Enum):
    STABLE = "stable"
    UNSTABLE = "unstable"
    CRITICAL = "critical"

class DecisionType(Enum):
    TREATMENT = "treatment"
    HINT_USED = "hint_used"
    PARAMETER_CRITICAL = "parameter_critical"
    DIAGNOSIS = "diagnosis"

class UserRole(Enum):
    PROFESSOR = "professor"
    STUDENT = "student"

class Species(Enum):
    CANINE = "canine"
    FELINE = "feline"

class GoalType(Enum):
    PARAMETER = "parameter"
    TREATMENT = "treatment"

class BadgeCriterion(Enum):
    # Session badges
    FIRST_WIN = "first_win"
    NO_HINTS = "no_hints"
    SPEED_RECORD = "speed_record"      # {"max_seconds": int}
    ALL_GOALS = "all_goals"
    TOTAL_SESSIONS = "total_sessions"  # {"count": int}
    HIGH_HP = "high_hp"                # {"min_hp": int}
    DISTINCT_CASES = "distinct_cases"  # {"count": int}
    # Ranking badges
    RANKING_POSITION = "ranking_position"  # {"position": int}
    WIN_STREAK = "win_streak"              # {"count": int}
    TOTAL_WINS = "total_wins"              # {"count": int}
    WIN_RATE = "win_rate"                  # {"rate": float, "min_sessions": int}

# Older rows used Portuguese status strings and a generic "completed" value.
LEGACY_STATUS_MAP = {
    "vitoria": SessionStatus.WON,
    "concluida": SessionStatus.WON,
    "derrota": SessionStatus.LOST,
    "em_andamento": SessionStatus.PLAYING,
    "abandonada": SessionStatus.ABANDONED,
}

def normalize_status(raw: Optional[str]) -> SessionStatus:
    """Maps any stored status string onto the canonical vocabulary."""
    if raw is None:
        return SessionStatus.PLAYING
    value = raw.strip().lower()
    if value in LEGACY_STATUS_MAP:
        return LEGACY_STATUS_MAP[value]
    try:
        return SessionStatus(value)
    except ValueError:
        # Unreadable rows are treated as sessions that never reached an outcome
        logger.warning(f"Unknown session status {raw!r}, reading it as abandoned")
        return SessionStatus.ABANDONED

class ENGINE_CONSTANTS:
    INITIAL_HP = 50
    MAX_HP = 100
    MIN_HP = 0

    # Clock
    HP_DECAY_INTERVAL_S = 5
    HP_DECAY_AMOUNT = 1
    TIME_LIMIT_S = 300
    MAX_TICK_BATCH_S = 60  # Largest clock step accepted from a client

    # Disease progression: 10% of the condition effect per drift step
    CONDITION_DRIFT_INTERVAL_S = 2
    CONDITION_DRIFT_FRACTION = 0.1

    # HP deltas
    HINT_PENALTY = 10
    DIAGNOSIS_BONUS = 10
    CORRECT_BASE_BONUS = 20
    PRIORITY_STEP = 5
    CORRECT_MIN_BONUS = 5
    WRONG_TREATMENT_PENALTY = 15

    # Monitor
    WARNING_MARGIN_FRACTION = 0.1
    TIME_CRITICAL_REMAINING_S = 120
    STABLE_HP = 70
    UNSTABLE_HP = 40
    CRITICAL_ALERT_COOLDOWN_S = 5
    WARNING_ALERT_COOLDOWN_S = 10

    # Learning goals
    DEFAULT_GOAL_TOLERANCE = 0.5
    GOAL_PROGRESS_SPAN = 3.0  # 3x tolerance away = 0% progress

class SCORING_CONSTANTS:
    WEEKLY_WIN_POINTS = 100
    WEEKLY_SPEED_BONUS = 50
    WEEKLY_SPEED_LIMIT_S = 300
    HISTORY_WEEKS = 12

class ACCESS_CONSTANTS:
    CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # No 0/O, 1/I
    KEY_LENGTH = 16
    KEY_GROUP = 4
    SHARE_CODE_LENGTH = 8

@dataclass
class ParameterProperties:
    name: str
    unit: str
    min_value: Optional[float]
    max_value: Optional[float]
    description: str
    clinical_note: str = ""
    is_primary: bool = False  # Shown on the main monitor

class PARAMETER_LIBRARY:
    """
    Reference acid-base panel (canine adult ranges).
    Seeds the catalogue and backs the descriptions shown to students.
    """
    SPECS = {
        "pH": ParameterProperties(
            name="pH", unit="", min_value=7.35, max_value=7.45,
            description="Blood acidity or alkalinity",
            clinical_note="pH < 7.35 is acidemia; pH > 7.45 is alkalemia.",
            is_primary=True
        ),
        "PaO2": ParameterProperties(
            name="PaO2", unit="mmHg", min_value=80.0, max_value=100.0,
            description="Arterial partial pressure of oxygen",
            clinical_note="Low values suggest hypoxemia and respiratory compromise.",
            is_primary=True
        ),
        "PaCO2": ParameterProperties(
            name="PaCO2", unit="mmHg", min_value=35.0, max_value=45.0,
            description="Arterial partial pressure of carbon dioxide",
            clinical_note="High values mean hypoventilation; low values mean hyperventilation.",
            is_primary=True
        ),
        "HeartRate": ParameterProperties(
            name="HeartRate", unit="bpm", min_value=60.0, max_value=140.0,
            description="Heart beats per minute",
            clinical_note="Tachycardia suggests stress, pain or shock.",
            is_primary=True
        ),
        "BloodPressure": ParameterProperties(
            name="BloodPressure", unit="mmHg", min_value=90.0, max_value=140.0,
            description="Systolic arterial pressure",
            clinical_note="Hypotension points to shock or dehydration.",
            is_primary=True
        ),
        "Lactate": ParameterProperties(
            name="Lactate", unit="mmol/L", min_value=0.5, max_value=2.5,
            description="Product of anaerobic metabolism",
            clinical_note="Rises with tissue hypoperfusion, shock or sepsis.",
            is_primary=True
        ),
        "HCO3": ParameterProperties(
            name="HCO3", unit="mEq/L", min_value=22.0, max_value=26.0,
            description="Serum bicarbonate",
            clinical_note="Low in metabolic acidosis, high in metabolic alkalosis."
        ),
        "BE": ParameterProperties(
            name="BE", unit="mEq/L", min_value=-2.0, max_value=2.0,
            description="Base excess",
            clinical_note="Negative values suggest a metabolic acidosis component."
        ),
        "SatO2": ParameterProperties(
            name="SatO2", unit="%", min_value=95.0, max_value=100.0,
            description="Hemoglobin oxygen saturation",
            clinical_note="Below 90% is severe hypoxemia."
        ),
        "Temperature": ParameterProperties(
            name="Temperature", unit="°C", min_value=37.5, max_value=39.2,
            description="Core body temperature",
            clinical_note="Hypothermia may indicate shock or sepsis."
        ),
        "Glucose": ParameterProperties(
            name="Glucose", unit="mg/dL", min_value=70.0, max_value=150.0,
            description="Blood glucose concentration",
            clinical_note="Hypoglycemia can cause seizures and coma."
        ),
        "Sodium": ParameterProperties(
            name="Sodium", unit="mEq/L", min_value=140.0, max_value=155.0,
            description="Serum sodium",
            clinical_note="Hyponatremia causes weakness and seizures."
        ),
        "Potassium": ParameterProperties(
            name="Potassium", unit="mEq/L", min_value=3.5, max_value=5.5,
            description="Serum potassium",
            clinical_note="Changes can cause fatal arrhythmias."
        ),
        "Chloride": ParameterProperties(
            name="Chloride", unit="mEq/L", min_value=105.0, max_value=115.0,
            description="Serum chloride",
            clinical_note="Shifts with renal and gastrointestinal disorders."
        ),
    }

    @staticmethod
    def get(name: str) -> Optional[ParameterProperties]:
        return PARAMETER_LIBRARY.SPECS.get(name)
