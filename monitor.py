# monitor.py
import math
from dataclasses import dataclass, field
from typing import List, Optional

from models import Parameter, SimulationState
from constants import ENGINE_CONSTANTS, ParameterStatus, PatientMood

@dataclass
class ParameterReading:
    parameter_id: int
    name: str
    value: float
    unit: Optional[str]
    status: ParameterStatus

@dataclass
class MonitorAlerts:
    """
    Flags for the bedside monitor.
    """
    critical_parameters: List[str] = field(default_factory=list)
    warning_parameters: List[str] = field(default_factory=list)
    hp_critical: bool = False       # HP at 0 while still playing
    time_critical: bool = False     # Less than 2 minutes left
    mood: PatientMood = PatientMood.STABLE

    @property
    def has_critical(self) -> bool:
        return bool(self.critical_parameters)

class MonitorSupervisor:
    """
    Real-time checks run after every clock step.
    """
    @staticmethod
    def classify(parameter: Parameter, value: float) -> ParameterStatus:
        low = parameter.min_value if parameter.min_value is not None else -math.inf
        high = parameter.max_value if parameter.max_value is not None else math.inf

        if value < low or value > high:
            return ParameterStatus.CRITICAL

        # Margin only makes sense for a closed range
        if parameter.min_value is None or parameter.max_value is None:
            return ParameterStatus.NORMAL

        margin = (high - low) * ENGINE_CONSTANTS.WARNING_MARGIN_FRACTION
        if low + margin <= value <= high - margin:
            return ParameterStatus.NORMAL
        return ParameterStatus.WARNING

    @staticmethod
    def patient_mood(hp: int) -> PatientMood:
        if hp >= ENGINE_CONSTANTS.STABLE_HP:
            return PatientMood.STABLE
        if hp >= ENGINE_CONSTANTS.UNSTABLE_HP:
            return PatientMood.UNSTABLE
        return PatientMood.CRITICAL

    @staticmethod
    def readings(state: SimulationState, parameters: List[Parameter]) -> List[ParameterReading]:
        result = []
        for param in parameters:
            value = state.parameters.get(param.id)
            if value is None:
                continue
            result.append(ParameterReading(
                parameter_id=param.id,
                name=param.name,
                value=round(value, 3),
                unit=param.unit,
                status=MonitorSupervisor.classify(param, value),
            ))
        return result

    @staticmethod
    def check_real_time(state: SimulationState, parameters: List[Parameter]) -> MonitorAlerts:
        alerts = MonitorAlerts()

        for reading in MonitorSupervisor.readings(state, parameters):
            if reading.status == ParameterStatus.CRITICAL:
                alerts.critical_parameters.append(reading.name)
            elif reading.status == ParameterStatus.WARNING:
                alerts.warning_parameters.append(reading.name)

        if state.is_playing:
            alerts.hp_critical = state.hp <= ENGINE_CONSTANTS.MIN_HP
            alerts.time_critical = state.time_remaining_seconds < ENGINE_CONSTANTS.TIME_CRITICAL_REMAINING_S

        alerts.mood = MonitorSupervisor.patient_mood(state.hp)
        return alerts

class AlertThrottle:
    """
    Rate-limits alerts on simulated time so the log is not flooded:
    critical every 5s at most, warnings every 10s at most.
    """
    def __init__(self):
        self.last_alert_at: Optional[int] = None

    def should_fire(self, alerts: MonitorAlerts, now_seconds: int) -> Optional[str]:
        since = None if self.last_alert_at is None else now_seconds - self.last_alert_at

        if alerts.critical_parameters:
            if since is None or since >= ENGINE_CONSTANTS.CRITICAL_ALERT_COOLDOWN_S:
                self.last_alert_at = now_seconds
                return "critical"
        elif alerts.warning_parameters:
            if since is None or since >= ENGINE_CONSTANTS.WARNING_ALERT_COOLDOWN_S:
                self.last_alert_at = now_seconds
                return "warning"
        return None
