# seed.py
import logging

from models import AppropriateTreatment, Badge, LearningGoal
from constants import PARAMETER_LIBRARY, BadgeCriterion, GoalType, Species
from store import VetBalanceStore

logger = logging.getLogger("vetbalance.seed")

class DEFAULT_CATALOGUE:
    """
    Starter acid-base catalogue. Effects are keyed by parameter name.
    Condition magnitudes are per drift step at full strength; the engine
    applies a tenth of them every 2 seconds.
    """
    CONDITIONS = {
        "Metabolic Acidosis": {
            "description": "Loss of bicarbonate or accumulation of fixed acids.",
            "effects": {"pH": -0.01, "HCO3": -0.2, "BE": -0.2, "Lactate": 0.05},
        },
        "Respiratory Acidosis": {
            "description": "CO2 retention from hypoventilation.",
            "effects": {"pH": -0.01, "PaCO2": 0.5, "PaO2": -0.5, "SatO2": -0.1},
        },
        "Metabolic Alkalosis": {
            "description": "Loss of acid, often from vomiting, with chloride depletion.",
            "effects": {"pH": 0.01, "HCO3": 0.2, "Chloride": -0.2, "Potassium": -0.02},
        },
        "Respiratory Alkalosis": {
            "description": "Excess CO2 elimination from hyperventilation (pain, anxiety, hypoxemia).",
            "effects": {"pH": 0.01, "PaCO2": -0.5, "HeartRate": 1.0},
        },
    }

    TREATMENTS = {
        "Lactated Ringer's Bolus": {
            "kind": "fluid",
            "description": "Isotonic crystalloid for perfusion; lactate is metabolized to bicarbonate.",
            "effects": {"BloodPressure": 10.0, "HeartRate": -10.0, "Lactate": -0.8, "HCO3": 1.0},
        },
        "Sodium Bicarbonate": {
            "kind": "drug",
            "description": "Alkalinizing agent for severe metabolic acidosis.",
            "effects": {"pH": 0.08, "HCO3": 4.0, "BE": 4.0},
        },
        "Oxygen Therapy": {
            "kind": "support",
            "description": "Supplemental oxygen by mask or flow-by.",
            "effects": {"PaO2": 15.0, "SatO2": 4.0},
        },
        "Mechanical Ventilation": {
            "kind": "support",
            "description": "Controlled ventilation to remove CO2.",
            "effects": {"PaCO2": -10.0, "pH": 0.06, "PaO2": 10.0},
        },
        "0.9% Saline": {
            "kind": "fluid",
            "description": "Chloride-rich crystalloid, the fluid of choice for chloride-responsive alkalosis.",
            "effects": {"Chloride": 4.0, "HCO3": -2.0, "pH": -0.03, "BloodPressure": 8.0},
        },
        "Potassium Chloride": {
            "kind": "electrolyte",
            "description": "Potassium and chloride replacement added to fluids.",
            "effects": {"Potassium": 0.8, "Chloride": 2.0},
        },
        "Dextrose 50%": {
            "kind": "drug",
            "description": "Rapid glucose supplementation.",
            "effects": {"Glucose": 40.0},
        },
        "Sedation and Analgesia": {
            "kind": "drug",
            "description": "Controls pain and anxiety that drive hyperventilation.",
            "effects": {"HeartRate": -15.0, "PaCO2": 4.0, "pH": -0.02},
        },
        "Furosemide": {
            "kind": "drug",
            "description": "Loop diuretic.",
            "effects": {"Potassium": -0.5, "BloodPressure": -5.0, "HCO3": 1.0},
        },
    }

    # condition -> [(treatment, priority, rationale)]
    CONDITION_TREATMENTS = {
        "Metabolic Acidosis": [
            ("Lactated Ringer's Bolus", 1, "Restoring perfusion removes the source of lactic acid."),
            ("Sodium Bicarbonate", 2, "Reserved for pH below 7.1 after perfusion is addressed."),
            ("Oxygen Therapy", 3, "Supports tissue oxygen delivery."),
        ],
        "Respiratory Acidosis": [
            ("Mechanical Ventilation", 1, "Removes retained CO2 directly."),
            ("Oxygen Therapy", 2, "Corrects the accompanying hypoxemia."),
        ],
        "Metabolic Alkalosis": [
            ("0.9% Saline", 1, "Chloride lets the kidney excrete bicarbonate."),
            ("Potassium Chloride", 2, "Corrects hypokalemia that sustains the alkalosis."),
        ],
        "Respiratory Alkalosis": [
            ("Sedation and Analgesia", 1, "Treats the cause of hyperventilation."),
            ("Oxygen Therapy", 2, "Removes hypoxemic drive to breathe."),
        ],
    }

    CASES = [
        {
            "name": "Diabetic Ketoacidosis in a Labrador",
            "description": "8-year-old male Labrador, polyuria and polydipsia for a week, now "
                           "vomiting and lethargic. Ketonuria on dipstick.",
            "species": Species.CANINE,
            "condition": "Metabolic Acidosis",
            "initial_values": {
                "pH": 7.15, "PaO2": 92.0, "PaCO2": 30.0, "HeartRate": 150.0,
                "BloodPressure": 95.0, "Lactate": 3.5, "HCO3": 12.0, "BE": -12.0,
                "SatO2": 96.0, "Temperature": 38.5, "Glucose": 450.0, "Sodium": 138.0,
                "Potassium": 5.8, "Chloride": 110.0,
            },
            "case_treatments": [],
            "goals": [
                {"title": "Bring pH back toward normal", "goal_type": GoalType.PARAMETER,
                 "target_parameter": "pH", "target_value": 7.35, "tolerance": 0.05, "points": 50},
                {"title": "Start fluid therapy early", "goal_type": GoalType.TREATMENT,
                 "required_treatment": "Lactated Ringer's Bolus", "time_limit_seconds": 120, "points": 20},
            ],
        },
        {
            "name": "Pleural Effusion in a Persian Cat",
            "description": "5-year-old female Persian cat, open-mouth breathing, muffled lung "
                           "sounds ventrally.",
            "species": Species.FELINE,
            "condition": "Respiratory Acidosis",
            "initial_values": {
                "pH": 7.22, "PaO2": 62.0, "PaCO2": 58.0, "HeartRate": 220.0,
                "BloodPressure": 110.0, "Lactate": 2.0, "HCO3": 24.0, "BE": 0.0,
                "SatO2": 88.0, "Temperature": 38.6, "Glucose": 130.0, "Sodium": 150.0,
                "Potassium": 4.2, "Chloride": 115.0,
            },
            # Thoracocentesis is not modelled; oxygen comes first for this patient
            "case_treatments": [
                ("Oxygen Therapy", 1, "Stabilize before any handling."),
                ("Mechanical Ventilation", 2, "If CO2 keeps rising despite oxygen."),
            ],
            "goals": [
                {"title": "Restore oxygenation", "goal_type": GoalType.PARAMETER,
                 "target_parameter": "PaO2", "target_value": 85.0, "tolerance": 5.0, "points": 40},
            ],
        },
    ]

    BADGES = [
        ("First Recovery", "Win your first simulation", "trophy", "session",
         {"type": BadgeCriterion.FIRST_WIN.value}),
        ("On Your Own", "Win a simulation without using hints", "brain", "session",
         {"type": BadgeCriterion.NO_HINTS.value}),
        ("Fast Responder", "Win a simulation in under two minutes", "zap", "session",
         {"type": BadgeCriterion.SPEED_RECORD.value, "max_seconds": 120}),
        ("Goal Getter", "Win while achieving every learning goal of the case", "target", "session",
         {"type": BadgeCriterion.ALL_GOALS.value}),
        ("Steady Hands", "Win without letting HP drop below 40", "heart", "session",
         {"type": BadgeCriterion.HIGH_HP.value, "min_hp": 40}),
        ("Dedicated", "Complete 10 simulations", "calendar", "milestone",
         {"type": BadgeCriterion.TOTAL_SESSIONS.value, "count": 10}),
        ("Explorer", "Play 3 different cases", "compass", "milestone",
         {"type": BadgeCriterion.DISTINCT_CASES.value, "count": 3}),
        ("Podium", "Reach the top 3 of the overall ranking", "medal", "ranking",
         {"type": BadgeCriterion.RANKING_POSITION.value, "position": 3}),
        ("Hot Streak", "Win 5 simulations in a row", "flame", "streak",
         {"type": BadgeCriterion.WIN_STREAK.value, "count": 5}),
        ("Veteran", "Win 25 simulations", "star", "ranking",
         {"type": BadgeCriterion.TOTAL_WINS.value, "count": 25}),
        ("Consistent", "Keep an 80% win rate over at least 10 completed sessions", "chart", "ranking",
         {"type": BadgeCriterion.WIN_RATE.value, "rate": 80, "min_sessions": 10}),
    ]

def seed_catalogue(store: VetBalanceStore) -> bool:
    """Installs the default catalogue once. Returns False when parameters already exist."""
    if store.list_parameters():
        logger.info("Catalogue already present, skipping seed")
        return False

    param_ids = {}
    for spec in PARAMETER_LIBRARY.SPECS.values():
        param_ids[spec.name] = store.add_parameter(
            spec.name, spec.unit, spec.min_value, spec.max_value, spec.description)

    condition_ids = {}
    for name, spec in DEFAULT_CATALOGUE.CONDITIONS.items():
        condition_ids[name] = store.add_condition(name, spec["description"])
        for param_name, magnitude in spec["effects"].items():
            store.add_condition_effect(condition_ids[name], param_ids[param_name], magnitude)

    treatment_ids = {}
    for name, spec in DEFAULT_CATALOGUE.TREATMENTS.items():
        treatment_ids[name] = store.add_treatment(name, spec["description"], spec["kind"])
        for param_name, magnitude in spec["effects"].items():
            store.add_treatment_effect(treatment_ids[name], param_ids[param_name], magnitude)

    for condition, rows in DEFAULT_CATALOGUE.CONDITION_TREATMENTS.items():
        for treatment, priority, rationale in rows:
            store.set_condition_treatment(
                condition_ids[condition],
                AppropriateTreatment(treatment_ids[treatment], priority, rationale))

    for case in DEFAULT_CATALOGUE.CASES:
        case_id = store.create_case(case["name"], case["description"], case["species"],
                                    condition_ids[case["condition"]])
        store.set_initial_values(
            case_id, {param_ids[name]: value for name, value in case["initial_values"].items()})
        store.set_case_treatments(
            case_id, [AppropriateTreatment(treatment_ids[t], p, r) for t, p, r in case["case_treatments"]])
        for goal in case["goals"]:
            required = goal.get("required_treatment")
            store.add_goal(LearningGoal(
                id=None, case_id=case_id, title=goal["title"], goal_type=goal["goal_type"],
                points=goal["points"], target_parameter=goal.get("target_parameter"),
                target_value=goal.get("target_value"), tolerance=goal.get("tolerance"),
                time_limit_seconds=goal.get("time_limit_seconds"),
                required_treatment_id=treatment_ids[required] if required else None))

    seed_badges(store)
    logger.info(f"Seeded {len(param_ids)} parameters, {len(condition_ids)} conditions, "
                f"{len(treatment_ids)} treatments, {len(DEFAULT_CATALOGUE.CASES)} cases")
    return True

def seed_badges(store: VetBalanceStore) -> int:
    existing = {b.name for b in store.list_badges()}
    added = 0
    for name, description, icon, category, criterion in DEFAULT_CATALOGUE.BADGES:
        if name in existing:
            continue
        store.add_badge(Badge(id=None, name=name, description=description, icon=icon,
                              category=category, criterion=criterion))
        added += 1
    return added
