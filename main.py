# main.py

import logging
import threading
from datetime import date
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

import accounts
import rankings
from models import (
    AIConfigurationError,
    AICreditsExhaustedError,
    AIGatewayError,
    AIRateLimitError,
    AppropriateTreatment,
    ConflictError,
    ExpiredCodeError,
    LearningGoal,
    NotFoundError,
    PermissionDeniedError,
    SimulationRuleError,
    ValidationError,
)
from constants import PARAMETER_LIBRARY, VERSION, GoalType, SimulationMode, Species, UserRole
from settings import load_settings
from store import VetBalanceStore
from seed import seed_catalogue
from ai_gateway import AIGateway, generated_rows, values_by_parameter
from sessions import SimulationService
from badges import BadgeChecker
from reports import ReportBuilder

# --- 1. CONFIGURATION & LOGGING ---
settings = load_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger("vetbalance-api")

app = FastAPI(
    title="VetBalance API",
    version=VERSION,
    description="Acid-base physiology simulator for veterinary training. \n\n"
                "The client drives the clock by posting elapsed seconds to `/sessions/{id}/tick`.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_services: dict = {}
_services_lock = threading.Lock()

def _service(name: str):
    with _services_lock:
        if not _services:
            store = VetBalanceStore(settings.database_path)
            store.init_schema()
            if settings.seed_catalogue:
                seed_catalogue(store)
            gateway = AIGateway(settings)
            _services.update(store=store, gateway=gateway, simulations=SimulationService(store, gateway))
        return _services[name]

def get_store() -> VetBalanceStore:
    return _service("store")

def get_gateway() -> AIGateway:
    return _service("gateway")

def get_simulations() -> SimulationService:
    return _service("simulations")

def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    """Identity is established upstream and forwarded in X-User-Id."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()

# --- 2. ERROR MAPPING ---

def _error(status_code: int, exc: Exception, level: int = logging.WARNING) -> JSONResponse:
    logger.log(level, f"{type(exc).__name__}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error(404, exc)

@app.exception_handler(SimulationRuleError)
async def simulation_rule_handler(request: Request, exc: SimulationRuleError):
    return _error(409, exc)

@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return _error(422, exc)

@app.exception_handler(PermissionDeniedError)
async def permission_handler(request: Request, exc: PermissionDeniedError):
    return _error(403, exc)

@app.exception_handler(ExpiredCodeError)
async def expired_handler(request: Request, exc: ExpiredCodeError):
    return _error(410, exc)

@app.exception_handler(ConflictError)
async def conflict_handler(request: Request, exc: ConflictError):
    return _error(409, exc)

@app.exception_handler(AIRateLimitError)
async def ai_rate_limit_handler(request: Request, exc: AIRateLimitError):
    return _error(429, exc)

@app.exception_handler(AICreditsExhaustedError)
async def ai_credits_handler(request: Request, exc: AICreditsExhaustedError):
    return _error(402, exc, logging.ERROR)

@app.exception_handler(AIConfigurationError)
async def ai_configuration_handler(request: Request, exc: AIConfigurationError):
    return _error(503, exc, logging.ERROR)

@app.exception_handler(AIGatewayError)
async def ai_gateway_handler(request: Request, exc: AIGatewayError):
    return _error(502, exc, logging.ERROR)

# --- 3. STRICT INPUT SCHEMA ---

class StudentRegistration(BaseModel):
    email: str = Field(..., min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$")
    full_name: str = Field(..., min_length=1, max_length=200)

class ProfessorRegistration(StudentRegistration):
    access_key: str = Field(..., min_length=16, max_length=19)

class RoleUpdate(BaseModel):
    role: UserRole

class ConsentRequest(BaseModel):
    accepted: bool

class AccessKeyRequest(BaseModel):
    description: Optional[str] = Field(None, max_length=500)
    expires_in_days: Optional[int] = Field(None, ge=1, le=3650)

class CaseRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    species: Species
    primary_condition_id: Optional[int] = None
    initial_values: Dict[int, float] = Field(default_factory=dict, description="parameter id -> value")

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Gastric Dilatation in a Great Dane", "species": "canine",
                "primary_condition_id": 1, "initial_values": {"1": 7.21, "3": 32.0}
            }
        }

class InitialValuesRequest(BaseModel):
    values: Dict[int, float]

class CaseTreatmentItem(BaseModel):
    treatment_id: int
    priority: int = Field(..., ge=1, le=10)
    rationale: Optional[str] = Field(None, max_length=500)

class CaseTreatmentsRequest(BaseModel):
    treatments: List[CaseTreatmentItem]

class GoalRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=1000)
    goal_type: GoalType
    points: int = Field(10, ge=0, le=1000)
    target_parameter: Optional[str] = None
    target_value: Optional[float] = None
    tolerance: Optional[float] = Field(None, gt=0)
    time_limit_seconds: Optional[int] = Field(None, gt=0, le=3600)
    required_treatment_id: Optional[int] = None

class SessionStartRequest(BaseModel):
    case_id: int
    mode: SimulationMode = SimulationMode.PRACTICE
    name: Optional[str] = Field(None, max_length=200)

class TickRequest(BaseModel):
    seconds: int = Field(1, ge=1, description="Seconds elapsed on the client since the last tick")

class TreatmentRequest(BaseModel):
    treatment_id: int

class DiagnosisRequest(BaseModel):
    answer: str = Field(..., min_length=1, max_length=200)

class FinishRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)

class NoteRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)
    kind: str = Field("observation", max_length=50)
    session_id: Optional[str] = None
    simulation_time: int = Field(0, ge=0)

class ClassRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    period: Optional[str] = Field(None, max_length=50)
    school_year: Optional[str] = Field(None, max_length=20)

class ClassUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    period: Optional[str] = Field(None, max_length=50)
    school_year: Optional[str] = Field(None, max_length=20)
    active: Optional[bool] = None

class RosterAddRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    class_id: Optional[str] = None

class RosterMoveRequest(BaseModel):
    class_id: Optional[str] = None

class ShareRequest(BaseModel):
    case_id: int
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    expires_in_days: Optional[int] = Field(None, ge=1, le=365)

class RedeemRequest(BaseModel):
    access_code: str = Field(..., min_length=8, max_length=8)

# --- 4. EXPLICIT RESPONSE SCHEMA ---

class ParameterResponse(BaseModel):
    id: int
    name: str
    unit: Optional[str] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    description: Optional[str] = None
    clinical_note: str = ""
    is_primary: bool = False

class EffectResponse(BaseModel):
    parameter_id: int
    magnitude: float
    description: Optional[str] = None

class TreatmentResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    kind: Optional[str] = None
    effects: List[EffectResponse]

class CaseResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    species: Optional[Species] = None
    primary_condition_id: Optional[int] = None
    owner_id: Optional[str] = None
    created_at: Optional[str] = None

class RankingResponse(BaseModel):
    user_id: str
    user_name: str
    wins: int
    losses: int
    total_sessions: int
    win_rate: float
    total_points: int
    average_win_seconds: Optional[float] = None
    position: int

# --- 5. ENDPOINTS: SERVICE ---

@app.get("/")
def read_root():
    return {"status": "active", "message": "VetBalance API is running successfully!"}

@app.get("/health")
def health_check(store: VetBalanceStore = Depends(get_store),
                 simulations: SimulationService = Depends(get_simulations),
                 gateway: AIGateway = Depends(get_gateway)):
    """Liveness and database probe"""
    return {
        "status": "active",
        "version": VERSION,
        "module": "vetbalance-simulator",
        "database": store.ping(),
        "live_sessions": simulations.live_count(),
        "ai_configured": gateway.configured,
    }

# --- 6. ENDPOINTS: ACCOUNTS ---

@app.post("/auth/register/student", status_code=201)
def register_student(body: StudentRegistration, user_id: str = Depends(current_user),
                     store: VetBalanceStore = Depends(get_store)):
    return accounts.register_student(store, user_id, body.email, body.full_name)

@app.post("/auth/register/professor", status_code=201)
def register_professor(body: ProfessorRegistration, user_id: str = Depends(current_user),
                       store: VetBalanceStore = Depends(get_store)):
    return accounts.register_professor(store, user_id, body.email, body.full_name, body.access_key)

@app.get("/me")
def read_me(user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    profile = store.get_profile(user_id)
    role = store.get_role(user_id)
    return {**profile, "role": role.value if role else None}

@app.get("/users")
def list_users(user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    accounts.require_professor(store, user_id)
    return store.list_users()

@app.put("/users/{target_id}/role")
def update_role(target_id: str, body: RoleUpdate, user_id: str = Depends(current_user),
                store: VetBalanceStore = Depends(get_store)):
    return accounts.set_user_role(store, user_id, target_id, body.role)

@app.get("/me/consent")
def read_consent(user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    return accounts.consent_status(store, user_id)

@app.post("/me/consent", status_code=201)
def answer_consent(body: ConsentRequest, user_id: str = Depends(current_user),
                   user_agent: Optional[str] = Header(None), store: VetBalanceStore = Depends(get_store)):
    return accounts.record_consent(store, user_id, body.accepted, user_agent)

@app.post("/access-keys", status_code=201)
def create_access_key(body: AccessKeyRequest, user_id: str = Depends(current_user),
                      store: VetBalanceStore = Depends(get_store)):
    return accounts.create_access_key(store, user_id, body.description, body.expires_in_days)

@app.get("/access-keys")
def list_access_keys(user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    return accounts.list_access_keys(store, user_id)

@app.post("/access-keys/{key_id}/deactivate", status_code=204)
def deactivate_access_key(key_id: str, user_id: str = Depends(current_user),
                          store: VetBalanceStore = Depends(get_store)):
    accounts.deactivate_access_key(store, user_id, key_id)

# --- 7. ENDPOINTS: CATALOGUE & CASES ---

@app.get("/parameters", response_model=List[ParameterResponse])
def list_parameters(store: VetBalanceStore = Depends(get_store)):
    result = []
    for p in store.list_parameters():
        reference = PARAMETER_LIBRARY.get(p.name)
        result.append(ParameterResponse(
            id=p.id, name=p.name, unit=p.unit, min_value=p.min_value, max_value=p.max_value,
            description=p.description,
            clinical_note=reference.clinical_note if reference else "",
            is_primary=reference.is_primary if reference else False,
        ))
    return result

@app.get("/conditions")
def list_conditions(store: VetBalanceStore = Depends(get_store)):
    return store.list_conditions()

@app.get("/treatments", response_model=List[TreatmentResponse])
def list_treatments(store: VetBalanceStore = Depends(get_store)):
    return store.list_treatments()

@app.get("/cases", response_model=List[CaseResponse])
def list_cases(mine: bool = False, user_id: str = Depends(current_user),
               store: VetBalanceStore = Depends(get_store)):
    return store.list_cases(owner_id=user_id if mine else None)

@app.get("/cases/{case_id}")
def read_case(case_id: int, user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    case = store.get_case(case_id)
    detail = {
        "case": case,
        "initial_values": store.initial_values(case_id),
        "goals": store.list_goals(case_id),
    }
    # Correctness tables would give the answers away
    if store.get_role(user_id) == UserRole.PROFESSOR:
        detail["case_treatments"] = store.case_treatments(case_id)
        detail["condition_treatments"] = store.condition_treatments(case.primary_condition_id)
    return detail

@app.post("/cases", status_code=201, response_model=CaseResponse)
def create_case(body: CaseRequest, user_id: str = Depends(current_user),
                store: VetBalanceStore = Depends(get_store)):
    accounts.require_professor(store, user_id)
    if body.primary_condition_id is not None:
        store.get_condition(body.primary_condition_id)
    case_id = store.create_case(body.name, body.description, body.species, body.primary_condition_id, user_id)
    if body.initial_values:
        store.set_initial_values(case_id, body.initial_values)
    logger.info(f"Case {case_id} created by {user_id}")
    return store.get_case(case_id)

def _own_case(store: VetBalanceStore, user_id: str, case_id: int):
    accounts.require_professor(store, user_id)
    case = store.get_case(case_id)
    if case.owner_id != user_id:
        raise PermissionDeniedError("Only the case owner can change it")
    return case

@app.delete("/cases/{case_id}", status_code=204)
def delete_case(case_id: int, user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    _own_case(store, user_id, case_id)
    store.delete_case(case_id)

@app.put("/cases/{case_id}/initial-values")
def set_initial_values(case_id: int, body: InitialValuesRequest, user_id: str = Depends(current_user),
                       store: VetBalanceStore = Depends(get_store)):
    _own_case(store, user_id, case_id)
    known = {p.id for p in store.list_parameters()}
    unknown = sorted(set(body.values) - known)
    if unknown:
        raise ValidationError(f"Unknown parameter ids: {unknown}")
    store.set_initial_values(case_id, body.values)
    return store.initial_values(case_id)

@app.put("/cases/{case_id}/treatments")
def set_case_treatments(case_id: int, body: CaseTreatmentsRequest, user_id: str = Depends(current_user),
                        store: VetBalanceStore = Depends(get_store)):
    _own_case(store, user_id, case_id)
    for item in body.treatments:
        store.get_treatment(item.treatment_id)
    store.set_case_treatments(
        case_id, [AppropriateTreatment(t.treatment_id, t.priority, t.rationale) for t in body.treatments])
    return store.case_treatments(case_id)

@app.post("/cases/{case_id}/populate")
def populate_case(case_id: int, user_id: str = Depends(current_user),
                  store: VetBalanceStore = Depends(get_store), gateway: AIGateway = Depends(get_gateway)):
    """Fills initial values and the treatment table of a case with AI-generated data."""
    case = _own_case(store, user_id, case_id)
    condition = store.get_condition(case.primary_condition_id) if case.primary_condition_id else None
    parameters = store.list_parameters()
    treatments = store.list_treatments()

    generated = gateway.populate_case_data(
        case_name=case.name,
        species=case.species.value if case.species else "",
        description=case.description or "",
        condition=condition.name if condition else None,
        parameters=[{"name": p.name, "unit": p.unit} for p in parameters],
        treatments=[{"name": t.name} for t in treatments],
    )

    values = values_by_parameter(generated, {p.name: p.id for p in parameters})
    if not values:
        raise AIGatewayError("AI reply contained no known parameters")
    store.set_initial_values(case_id, values)

    treatment_ids = {t.name.casefold(): t.id for t in treatments}
    table = {}
    for row in generated_rows(generated, "appropriate_treatments"):
        tid = treatment_ids.get(str(row.get("name") or "").casefold())
        try:
            priority = int(row.get("priority"))
        except (TypeError, ValueError, OverflowError):
            continue
        if tid is not None and priority >= 1 and tid not in table:
            rationale = row.get("rationale")
            table[tid] = AppropriateTreatment(tid, priority, str(rationale) if rationale is not None else None)
    store.set_case_treatments(case_id, table.values())

    logger.info(f"Case {case_id} populated: {len(values)} values, {len(table)} treatments")
    return {"initial_values": values, "case_treatments": list(table.values())}

@app.get("/cases/{case_id}/goals")
def list_goals(case_id: int, store: VetBalanceStore = Depends(get_store)):
    store.get_case(case_id)
    return store.list_goals(case_id)

@app.post("/cases/{case_id}/goals", status_code=201)
def add_goal(case_id: int, body: GoalRequest, user_id: str = Depends(current_user),
             store: VetBalanceStore = Depends(get_store)):
    _own_case(store, user_id, case_id)
    if body.goal_type == GoalType.PARAMETER and (body.target_parameter is None or body.target_value is None):
        raise ValidationError("Parameter goals need target_parameter and target_value")
    if body.goal_type == GoalType.TREATMENT:
        if body.required_treatment_id is None:
            raise ValidationError("Treatment goals need required_treatment_id")
        store.get_treatment(body.required_treatment_id)
    return store.add_goal(LearningGoal(id=None, case_id=case_id, **body.dict()))

# --- 8. ENDPOINTS: SIMULATION ---

@app.post("/sessions", status_code=201)
def start_session(body: SessionStartRequest, user_id: str = Depends(current_user),
                  store: VetBalanceStore = Depends(get_store),
                  simulations: SimulationService = Depends(get_simulations)):
    accounts.require_consent(store, user_id)
    return simulations.start_session(user_id, body.case_id, body.mode, body.name)

@app.get("/sessions")
def list_my_sessions(user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    return store.list_sessions(user_id=user_id)

@app.get("/sessions/{session_id}")
def read_session(session_id: str, user_id: str = Depends(current_user),
                 store: VetBalanceStore = Depends(get_store),
                 simulations: SimulationService = Depends(get_simulations)):
    if simulations.is_live(session_id):
        return simulations.snapshot(session_id, user_id)
    session = store.get_session(session_id)
    if session.user_id != user_id:
        accounts.require_professor(store, user_id)
    return session

@app.post("/sessions/{session_id}/tick")
def tick(session_id: str, body: TickRequest, user_id: str = Depends(current_user),
         simulations: SimulationService = Depends(get_simulations)):
    return simulations.advance(session_id, body.seconds, user_id)

@app.post("/sessions/{session_id}/treatments")
def apply_treatment(session_id: str, body: TreatmentRequest, user_id: str = Depends(current_user),
                    simulations: SimulationService = Depends(get_simulations)):
    return simulations.apply_treatment(session_id, body.treatment_id, user_id)

@app.post("/sessions/{session_id}/hints")
def request_hints(session_id: str, user_id: str = Depends(current_user),
                  simulations: SimulationService = Depends(get_simulations)):
    return simulations.request_hints(session_id, user_id)

@app.get("/sessions/{session_id}/diagnosis")
def diagnostic_challenge(session_id: str, user_id: str = Depends(current_user),
                         simulations: SimulationService = Depends(get_simulations)):
    return simulations.diagnostic_challenge(session_id, user_id)

@app.post("/sessions/{session_id}/diagnosis")
def submit_diagnosis(session_id: str, body: DiagnosisRequest, user_id: str = Depends(current_user),
                     simulations: SimulationService = Depends(get_simulations)):
    return simulations.submit_diagnosis(session_id, body.answer, user_id)

@app.post("/sessions/{session_id}/finish")
def finish_session(session_id: str, body: Optional[FinishRequest] = None, user_id: str = Depends(current_user),
                   simulations: SimulationService = Depends(get_simulations)):
    return simulations.finish_session(session_id, user_id, body.notes if body else None)

def _readable_session(store: VetBalanceStore, user_id: str, session_id: str):
    session = store.get_session(session_id)
    if session.user_id != user_id:
        accounts.require_professor(store, user_id)
    return session

@app.get("/sessions/{session_id}/replay")
def session_replay(session_id: str, user_id: str = Depends(current_user),
                   store: VetBalanceStore = Depends(get_store),
                   simulations: SimulationService = Depends(get_simulations)):
    _readable_session(store, user_id, session_id)
    return simulations.session_replay(session_id)

@app.get("/sessions/{session_id}/feedback")
def session_feedback(session_id: str, user_id: str = Depends(current_user),
                     store: VetBalanceStore = Depends(get_store),
                     simulations: SimulationService = Depends(get_simulations)):
    _readable_session(store, user_id, session_id)
    return simulations.session_feedback(session_id)

@app.delete("/sessions/{session_id}", status_code=204)
def delete_session(session_id: str, user_id: str = Depends(current_user),
                   store: VetBalanceStore = Depends(get_store),
                   simulations: SimulationService = Depends(get_simulations)):
    session = store.get_session(session_id)
    if session.user_id != user_id:
        raise PermissionDeniedError("Session belongs to another user")
    if simulations.is_live(session_id):
        raise ConflictError("Finish the session before deleting it")
    store.delete_session(session_id)

# --- 9. ENDPOINTS: NOTES ---

@app.post("/cases/{case_id}/notes", status_code=201)
def add_note(case_id: int, body: NoteRequest, user_id: str = Depends(current_user),
             store: VetBalanceStore = Depends(get_store),
             simulations: SimulationService = Depends(get_simulations)):
    store.get_case(case_id)
    snapshot = None
    if body.session_id is not None and simulations.is_live(body.session_id):
        snapshot = simulations.parameter_values(body.session_id)
    return store.add_note(user_id, case_id, body.session_id, body.simulation_time, body.kind,
                          body.content, snapshot)

@app.get("/cases/{case_id}/notes")
def list_notes(case_id: int, user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    return store.list_notes(user_id, case_id)

@app.delete("/notes/{note_id}", status_code=204)
def delete_note(note_id: str, user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    store.delete_note(note_id, user_id)

# --- 10. ENDPOINTS: RANKINGS, BADGES, STATS ---

@app.get("/rankings", response_model=List[RankingResponse])
def overall_ranking(sort_by: str = Query("wins"), store: VetBalanceStore = Depends(get_store)):
    return rankings.overall_ranking(store, sort_by)

@app.get("/rankings/weekly")
def weekly_leaderboard(day: Optional[date] = None, store: VetBalanceStore = Depends(get_store)):
    return rankings.weekly_leaderboard(store, day)

@app.post("/me/weekly-snapshot")
def record_weekly_snapshot(user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    return {"snapshot": rankings.record_weekly_snapshot(store, user_id)}

@app.get("/me/weekly-history")
def weekly_history(user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    return rankings.weekly_history(store, user_id)

@app.get("/me/streaks")
def streaks(user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    return rankings.user_streaks(store, user_id)

@app.get("/me/stats")
def performance_stats(period: str = Query("all"), user_id: str = Depends(current_user),
                      store: VetBalanceStore = Depends(get_store)):
    return rankings.user_performance(store, user_id, period)

@app.get("/badges")
def list_badges(store: VetBalanceStore = Depends(get_store)):
    return store.list_badges()

@app.get("/me/badges")
def my_badges(user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    return store.user_badges(user_id)

@app.post("/me/badges/check")
def check_badges(user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    return {"awarded": BadgeChecker.check_ranking_badges(store, user_id)}

# --- 11. ENDPOINTS: REPORTS ---

@app.get("/me/report")
def my_report(export_format: str = Query("json", alias="format", pattern="^(json|csv|txt)$"),
              user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    report = ReportBuilder.user_report(store, user_id)
    if export_format == "csv":
        return PlainTextResponse(ReportBuilder.to_csv(report), media_type="text/csv",
                                 headers={"Content-Disposition": "attachment; filename=vetbalance-report.csv"})
    if export_format == "txt":
        return PlainTextResponse(ReportBuilder.to_text(report))
    return report

@app.get("/reports/professor")
def professor_report(class_id: Optional[str] = None, user_id: str = Depends(current_user),
                     store: VetBalanceStore = Depends(get_store)):
    accounts.require_professor(store, user_id)
    return ReportBuilder.professor_report(store, user_id, class_id)

@app.get("/reports/compare")
def compare_sessions(first: str, second: str, user_id: str = Depends(current_user),
                     store: VetBalanceStore = Depends(get_store)):
    owner = None if store.get_role(user_id) == UserRole.PROFESSOR else user_id
    return ReportBuilder.compare_sessions(store, first, second, owner)

# --- 12. ENDPOINTS: CLASSES, ROSTER, SHARING ---

@app.post("/classes", status_code=201)
def create_class(body: ClassRequest, user_id: str = Depends(current_user),
                 store: VetBalanceStore = Depends(get_store)):
    return accounts.create_class(store, user_id, body.name, body.description, body.period, body.school_year)

@app.get("/classes")
def list_classes(active_only: bool = False, user_id: str = Depends(current_user),
                 store: VetBalanceStore = Depends(get_store)):
    return accounts.list_classes(store, user_id, active_only)

@app.patch("/classes/{class_id}")
def update_class(class_id: str, body: ClassUpdate, user_id: str = Depends(current_user),
                 store: VetBalanceStore = Depends(get_store)):
    return accounts.update_class(store, user_id, class_id, **body.dict())

@app.post("/classes/{class_id}/toggle")
def toggle_class(class_id: str, user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    return accounts.toggle_class(store, user_id, class_id)

@app.delete("/classes/{class_id}", status_code=204)
def delete_class(class_id: str, user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    accounts.delete_class(store, user_id, class_id)

@app.post("/students", status_code=201)
def add_student(body: RosterAddRequest, user_id: str = Depends(current_user),
                store: VetBalanceStore = Depends(get_store)):
    return accounts.add_student_by_email(store, user_id, body.email, body.class_id)

@app.get("/students")
def list_students(class_id: Optional[str] = None, user_id: str = Depends(current_user),
                  store: VetBalanceStore = Depends(get_store)):
    return accounts.list_students(store, user_id, class_id)

@app.get("/students/consents")
def list_student_consents(user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    return accounts.roster_consents(store, user_id)

@app.patch("/students/{student_id}")
def move_student(student_id: str, body: RosterMoveRequest, user_id: str = Depends(current_user),
                 store: VetBalanceStore = Depends(get_store)):
    return accounts.move_student(store, user_id, student_id, body.class_id)

@app.delete("/students/{student_id}", status_code=204)
def deactivate_student(student_id: str, user_id: str = Depends(current_user),
                       store: VetBalanceStore = Depends(get_store)):
    accounts.deactivate_student(store, user_id, student_id)

@app.get("/students/{student_id}/report")
def student_report(student_id: str, user_id: str = Depends(current_user),
                   store: VetBalanceStore = Depends(get_store)):
    accounts.require_professor(store, user_id)
    link = store.get_roster_link(user_id, student_id)
    if link is None or not link["active"]:
        raise NotFoundError("Student is not on your roster")
    return ReportBuilder.user_report(store, student_id)

@app.post("/shared-cases", status_code=201)
def share_case(body: ShareRequest, user_id: str = Depends(current_user),
               store: VetBalanceStore = Depends(get_store)):
    return accounts.share_case(store, user_id, body.case_id, body.title, body.description, body.expires_in_days)

@app.get("/shared-cases")
def list_shared_cases(user_id: str = Depends(current_user), store: VetBalanceStore = Depends(get_store)):
    return accounts.list_shared_cases(store, user_id)

@app.post("/shared-cases/redeem")
def redeem_shared_case(body: RedeemRequest, user_id: str = Depends(current_user),
                       store: VetBalanceStore = Depends(get_store)):
    return accounts.redeem_shared_case(store, user_id, body.access_code)

@app.post("/shared-cases/{shared_id}/deactivate", status_code=204)
def deactivate_shared_case(shared_id: str, user_id: str = Depends(current_user),
                           store: VetBalanceStore = Depends(get_store)):
    accounts.deactivate_shared_case(store, user_id, shared_id)
