import unittest
from dataclasses import replace

from core_engine import VetBalanceEngine
from models import (
    DiagnosisSubmitted,
    HintUsed,
    ParameterEffect,
    SimulationRuleError,
    Tick,
    TreatmentApplied,
    ValidationError,
)
from constants import SimulationMode, SimulationStatus

PH, PACO2, HCO3 = 1, 2, 3

class TestVetBalanceEngine(unittest.TestCase):

    def setUp(self):
        """A metabolic acidosis patient with no disease drift."""
        self.initial_values = {PH: 7.20, PACO2: 32.0, HCO3: 14.0}
        self.state = VetBalanceEngine.initialize_simulation_state(1, self.initial_values)

    def test_01_initial_state(self):
        self.assertEqual(self.state.hp, 50)
        self.assertEqual(self.state.elapsed_seconds, 0)
        self.assertEqual(self.state.status, SimulationStatus.PLAYING)
        self.assertEqual(self.state.time_remaining_seconds, 300)

    def test_02_hp_decay_every_five_seconds(self):
        print("\nTEST 2: HP Decay")
        state = VetBalanceEngine.reduce(self.state, Tick(4))
        self.assertEqual(state.hp, 50)
        state = VetBalanceEngine.reduce(state, Tick(1))
        self.assertEqual(state.hp, 49)
        state = VetBalanceEngine.reduce(state, Tick(10))
        print(f"HP after {state.elapsed_seconds}s: {state.hp}")
        self.assertEqual(state.hp, 47)
        self.assertEqual(state.elapsed_seconds, 15)

    def test_03_large_step_equals_small_steps(self):
        big = VetBalanceEngine.reduce(self.state, Tick(23))
        small = self.state
        for _ in range(23):
            small = VetBalanceEngine.reduce(small, Tick(1))
        self.assertEqual(big.hp, small.hp)
        self.assertEqual(big.elapsed_seconds, small.elapsed_seconds)

    def test_04_time_limit_loses(self):
        state = replace(self.state, hp=90)
        state = VetBalanceEngine.reduce(state, Tick(310))
        self.assertEqual(state.status, SimulationStatus.LOST)
        self.assertEqual(state.elapsed_seconds, 300)  # stops at the first terminal second
        self.assertEqual(state.hp, 30)

    def test_05_hp_zero_loses(self):
        state = replace(self.state, hp=1, min_hp=1)
        state = VetBalanceEngine.reduce(state, Tick(20))
        self.assertEqual(state.status, SimulationStatus.LOST)
        self.assertEqual(state.hp, 0)
        self.assertEqual(state.elapsed_seconds, 5)

    def test_06_correct_treatment(self):
        event = TreatmentApplied(7, (ParameterEffect(PH, 0.08), ParameterEffect(HCO3, 4.0)), 20)
        state = VetBalanceEngine.reduce(self.state, event)
        self.assertEqual(state.hp, 70)
        self.assertAlmostEqual(state.parameters[PH], 7.28, places=6)
        self.assertAlmostEqual(state.parameters[HCO3], 18.0, places=6)
        self.assertEqual(state.treatments_applied, (7,))
        self.assertEqual(state.status, SimulationStatus.PLAYING)

    def test_07_treatment_reaching_100_wins(self):
        state = replace(self.state, hp=85)
        state = VetBalanceEngine.reduce(state, TreatmentApplied(7, (), 20))
        self.assertEqual(state.hp, 100)  # clamped
        self.assertEqual(state.status, SimulationStatus.WON)

    def test_08_wrong_treatment_and_unknown_parameter(self):
        event = TreatmentApplied(9, (ParameterEffect(99, 5.0),), -15)
        state = VetBalanceEngine.reduce(self.state, event)
        self.assertEqual(state.hp, 35)
        self.assertEqual(state.parameters[99], 5.0)  # missing parameters start at 0
        self.assertEqual(state.min_hp, 35)

        state = VetBalanceEngine.reduce(state, TreatmentApplied(7, (), 20))
        self.assertEqual(state.hp, 55)
        self.assertEqual(state.min_hp, 35)

    def test_09_terminal_states_absorb_events(self):
        lost = replace(self.state, status=SimulationStatus.LOST)
        for event in (Tick(10), TreatmentApplied(7, (), 20), HintUsed(), DiagnosisSubmitted(True)):
            self.assertIs(VetBalanceEngine.reduce(lost, event), lost)

    def test_10_hints(self):
        state = VetBalanceEngine.reduce(self.state, HintUsed())
        self.assertEqual(state.hp, 40)
        self.assertEqual(state.hints_used, 1)

        evaluation = VetBalanceEngine.initialize_simulation_state(
            1, self.initial_values, mode=SimulationMode.EVALUATION)
        with self.assertRaises(SimulationRuleError):
            VetBalanceEngine.reduce(evaluation, HintUsed())

    def test_11_diagnosis_counts_once(self):
        state = VetBalanceEngine.reduce(self.state, DiagnosisSubmitted(True))
        self.assertEqual(state.hp, 60)
        self.assertTrue(state.diagnosis_attempted)
        again = VetBalanceEngine.reduce(state, DiagnosisSubmitted(True))
        self.assertEqual(again.hp, 60)

        wrong = VetBalanceEngine.reduce(self.state, DiagnosisSubmitted(False))
        self.assertEqual(wrong.hp, 50)
        self.assertTrue(wrong.diagnosis_attempted)

    def test_12_condition_drift(self):
        print("\nTEST 12: Disease Progression")
        state = VetBalanceEngine.initialize_simulation_state(
            1, self.initial_values, condition_effects=[ParameterEffect(PH, -0.01)])
        state = VetBalanceEngine.reduce(state, Tick(1))
        self.assertAlmostEqual(state.parameters[PH], 7.20, places=6)
        state = VetBalanceEngine.reduce(state, Tick(9))
        print(f"pH after {state.elapsed_seconds}s: {state.parameters[PH]:.4f}")
        self.assertAlmostEqual(state.parameters[PH], 7.195, places=6)

    def test_13_invalid_inputs(self):
        with self.assertRaises(ValidationError):
            VetBalanceEngine.reduce(self.state, Tick(-1))
        with self.assertRaises(ValidationError):
            VetBalanceEngine.initialize_simulation_state(1, {}, time_limit_seconds=0)
        with self.assertRaises(TypeError):
            VetBalanceEngine.reduce(self.state, "not an event")

    def test_14_run_simulation_trajectory(self):
        events = [Tick(5), TreatmentApplied(7, (ParameterEffect(PH, 0.05),), 20), Tick(5)]
        result = VetBalanceEngine.run_simulation(self.state, events, return_series=True)

        self.assertEqual(result["events_consumed"], 3)
        self.assertEqual(result["final_state"].hp, 68)
        self.assertEqual(result["hp_change"], 18)
        self.assertEqual(result["status"], SimulationStatus.PLAYING)
        self.assertEqual([p["event"] for p in result["trajectory"]],
                         ["Start", "Tick", "TreatmentApplied", "Tick"])
        self.assertEqual([p["hp"] for p in result["trajectory"]], [50, 49, 69, 68])

    def test_15_run_simulation_stops_at_outcome(self):
        state = replace(self.state, hp=90)
        events = [TreatmentApplied(7, (), 20), Tick(10), HintUsed()]
        result = VetBalanceEngine.run_simulation(state, events)
        self.assertEqual(result["status"], SimulationStatus.WON)
        self.assertEqual(result["events_consumed"], 1)
        self.assertEqual(result["trajectory"], [])

if __name__ == '__main__':
    unittest.main()
