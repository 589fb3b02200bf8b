"""
VetBalance: Relational Store
============================
Every table the simulator reads or writes, behind one repository class.
A new sqlite3 connection is opened per operation so the store can be
shared by the API's worker threads.
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from models import (
    AppropriateTreatment,
    Badge,
    ClinicalCase,
    Condition,
    ConflictError,
    Decision,
    GoalAchievement,
    LearningGoal,
    NotFoundError,
    Parameter,
    ParameterEffect,
    Session,
    Treatment,
)
from constants import (
    GoalType,
    SessionStatus,
    SimulationMode,
    Species,
    UserRole,
    normalize_status,
)

logger = logging.getLogger("vetbalance.store")

SCHEMA = """
CREATE TABLE IF NOT EXISTS parameters (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    unit TEXT,
    min_value REAL,
    max_value REAL,
    description TEXT
);
CREATE TABLE IF NOT EXISTS conditions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT
);
CREATE TABLE IF NOT EXISTS condition_effects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    condition_id INTEGER NOT NULL REFERENCES conditions(id),
    parameter_id INTEGER NOT NULL REFERENCES parameters(id),
    magnitude REAL NOT NULL,
    description TEXT
);
CREATE TABLE IF NOT EXISTS treatments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT,
    kind TEXT
);
CREATE TABLE IF NOT EXISTS treatment_effects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    treatment_id INTEGER NOT NULL REFERENCES treatments(id),
    parameter_id INTEGER NOT NULL REFERENCES parameters(id),
    magnitude REAL NOT NULL,
    description TEXT
);
CREATE TABLE IF NOT EXISTS condition_treatments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    condition_id INTEGER NOT NULL REFERENCES conditions(id),
    treatment_id INTEGER NOT NULL REFERENCES treatments(id),
    priority INTEGER NOT NULL,
    rationale TEXT,
    UNIQUE (condition_id, treatment_id)
);
CREATE TABLE IF NOT EXISTS cases (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT,
    species TEXT,
    primary_condition_id INTEGER REFERENCES conditions(id),
    owner_id TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS case_initial_values (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    case_id INTEGER NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
    parameter_id INTEGER NOT NULL REFERENCES parameters(id),
    value REAL NOT NULL,
    UNIQUE (case_id, parameter_id)
);
CREATE TABLE IF NOT EXISTS case_treatments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    case_id INTEGER NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
    treatment_id INTEGER NOT NULL REFERENCES treatments(id),
    priority INTEGER NOT NULL,
    rationale TEXT,
    UNIQUE (case_id, treatment_id)
);
CREATE TABLE IF NOT EXISTS profiles (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE,
    full_name TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS user_roles (
    user_id TEXT PRIMARY KEY REFERENCES profiles(id),
    role TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS professor_access_keys (
    id TEXT PRIMARY KEY,
    access_key TEXT NOT NULL UNIQUE,
    active INTEGER NOT NULL DEFAULT 1,
    created_by TEXT,
    description TEXT,
    expires_at TEXT,
    used INTEGER NOT NULL DEFAULT 0,
    used_at TEXT,
    used_by TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS tcle_consents (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    version TEXT NOT NULL,
    accepted INTEGER NOT NULL,
    user_agent TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS classes (
    id TEXT PRIMARY KEY,
    professor_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    period TEXT,
    school_year TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS professor_students (
    id TEXT PRIMARY KEY,
    professor_id TEXT NOT NULL,
    student_id TEXT NOT NULL,
    class_id TEXT REFERENCES classes(id) ON DELETE SET NULL,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    UNIQUE (professor_id, student_id)
);
CREATE TABLE IF NOT EXISTS email_lookup_attempts (
    id TEXT PRIMARY KEY,
    professor_id TEXT NOT NULL,
    searched_email TEXT NOT NULL,
    found INTEGER NOT NULL,
    attempted_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS shared_cases (
    id TEXT PRIMARY KEY,
    case_id INTEGER NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
    shared_by TEXT NOT NULL,
    access_code TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    description TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    expires_at TEXT,
    access_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS shared_case_access (
    id TEXT PRIMARY KEY,
    shared_case_id TEXT NOT NULL REFERENCES shared_cases(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    accessed_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    case_id INTEGER NOT NULL REFERENCES cases(id),
    name TEXT NOT NULL,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    duration_seconds INTEGER,
    final_hp INTEGER,
    hints_used INTEGER NOT NULL DEFAULT 0,
    min_hp INTEGER,
    notes TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS session_treatments (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    treatment_id INTEGER NOT NULL REFERENCES treatments(id),
    simulation_time INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS session_decisions (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    kind TEXT NOT NULL,
    simulation_time INTEGER NOT NULL,
    data TEXT NOT NULL,
    hp_before INTEGER,
    hp_after INTEGER,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS session_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    parameter_id INTEGER NOT NULL,
    simulation_time INTEGER NOT NULL,
    value REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS learning_goals (
    id TEXT PRIMARY KEY,
    case_id INTEGER NOT NULL REFERENCES cases(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    goal_type TEXT NOT NULL,
    target_parameter TEXT,
    target_value REAL,
    tolerance REAL,
    time_limit_seconds INTEGER,
    required_treatment_id INTEGER,
    points INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS goal_achievements (
    id TEXT PRIMARY KEY,
    goal_id TEXT NOT NULL REFERENCES learning_goals(id) ON DELETE CASCADE,
    session_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    points INTEGER NOT NULL,
    elapsed_seconds INTEGER NOT NULL,
    achieved_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS badges (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL,
    icon TEXT NOT NULL,
    category TEXT NOT NULL,
    criterion TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS user_badges (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    badge_id TEXT NOT NULL REFERENCES badges(id),
    session_id TEXT,
    earned_at TEXT NOT NULL,
    UNIQUE (user_id, badge_id)
);
CREATE TABLE IF NOT EXISTS simulation_notes (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    case_id INTEGER NOT NULL,
    session_id TEXT,
    simulation_time INTEGER NOT NULL,
    kind TEXT NOT NULL,
    content TEXT NOT NULL,
    parameters_snapshot TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS weekly_ranking_history (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    week_start TEXT NOT NULL,
    week_end TEXT NOT NULL,
    position INTEGER NOT NULL,
    wins INTEGER NOT NULL,
    total_sessions INTEGER NOT NULL,
    points INTEGER NOT NULL,
    win_rate REAL NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, week_start)
);
"""

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def iso(dt: datetime) -> str:
    """Single timestamp format so ISO strings compare in time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")

def new_id() -> str:
    return str(uuid.uuid4())

class VetBalanceStore:
    def __init__(self, db_path: str):
        self.db_path = db_path

    @contextmanager
    def _db(self):
        conn = sqlite3.connect(self.db_path, timeout=10, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ConflictError(f"Integrity violation: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self):
        with self._db() as conn:
            conn.executescript(SCHEMA)
        logger.info(f"Schema ready at {self.db_path}")

    def ping(self) -> bool:
        with self._db() as conn:
            conn.execute("SELECT 1")
        return True

    # --- 1. CATALOGUE ---

    def add_parameter(self, name: str, unit: Optional[str], min_value: Optional[float],
                      max_value: Optional[float], description: Optional[str] = None) -> int:
        with self._db() as conn:
            cur = conn.execute(
                "INSERT INTO parameters (name, unit, min_value, max_value, description) VALUES (?,?,?,?,?)",
                (name, unit, min_value, max_value, description))
            return cur.lastrowid

    def list_parameters(self) -> List[Parameter]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM parameters ORDER BY id").fetchall()
        return [Parameter(id=r["id"], name=r["name"], unit=r["unit"], min_value=r["min_value"],
                          max_value=r["max_value"], description=r["description"]) for r in rows]

    def add_condition(self, name: str, description: Optional[str] = None) -> int:
        with self._db() as conn:
            cur = conn.execute("INSERT INTO conditions (name, description) VALUES (?,?)", (name, description))
            return cur.lastrowid

    def list_conditions(self) -> List[Condition]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM conditions ORDER BY id").fetchall()
        return [Condition(id=r["id"], name=r["name"], description=r["description"]) for r in rows]

    def get_condition(self, condition_id: int) -> Condition:
        with self._db() as conn:
            r = conn.execute("SELECT * FROM conditions WHERE id=?", (condition_id,)).fetchone()
        if r is None:
            raise NotFoundError(f"Condition {condition_id} not found")
        return Condition(id=r["id"], name=r["name"], description=r["description"])

    def add_condition_effect(self, condition_id: int, parameter_id: int, magnitude: float,
                             description: Optional[str] = None):
        with self._db() as conn:
            conn.execute(
                "INSERT INTO condition_effects (condition_id, parameter_id, magnitude, description) VALUES (?,?,?,?)",
                (condition_id, parameter_id, magnitude, description))

    def condition_effects(self, condition_id: int) -> List[ParameterEffect]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM condition_effects WHERE condition_id=? ORDER BY id", (condition_id,)).fetchall()
        return [ParameterEffect(parameter_id=r["parameter_id"], magnitude=r["magnitude"],
                                description=r["description"]) for r in rows]

    def add_treatment(self, name: str, description: Optional[str] = None, kind: Optional[str] = None) -> int:
        with self._db() as conn:
            cur = conn.execute("INSERT INTO treatments (name, description, kind) VALUES (?,?,?)",
                               (name, description, kind))
            return cur.lastrowid

    def add_treatment_effect(self, treatment_id: int, parameter_id: int, magnitude: float,
                             description: Optional[str] = None):
        with self._db() as conn:
            conn.execute(
                "INSERT INTO treatment_effects (treatment_id, parameter_id, magnitude, description) VALUES (?,?,?,?)",
                (treatment_id, parameter_id, magnitude, description))

    def _treatment_from_row(self, conn, r) -> Treatment:
        effects = conn.execute(
            "SELECT * FROM treatment_effects WHERE treatment_id=? ORDER BY id", (r["id"],)).fetchall()
        return Treatment(
            id=r["id"], name=r["name"], description=r["description"], kind=r["kind"],
            effects=[ParameterEffect(parameter_id=e["parameter_id"], magnitude=e["magnitude"],
                                     description=e["description"]) for e in effects])

    def list_treatments(self) -> List[Treatment]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM treatments ORDER BY id").fetchall()
            return [self._treatment_from_row(conn, r) for r in rows]

    def get_treatment(self, treatment_id: int) -> Treatment:
        with self._db() as conn:
            r = conn.execute("SELECT * FROM treatments WHERE id=?", (treatment_id,)).fetchone()
            if r is None:
                raise NotFoundError(f"Treatment {treatment_id} not found")
            return self._treatment_from_row(conn, r)

    def set_condition_treatment(self, condition_id: int, treatment: AppropriateTreatment):
        with self._db() as conn:
            conn.execute(
                "INSERT INTO condition_treatments (condition_id, treatment_id, priority, rationale) VALUES (?,?,?,?) "
                "ON CONFLICT(condition_id, treatment_id) DO UPDATE SET priority=excluded.priority, "
                "rationale=excluded.rationale",
                (condition_id, treatment.treatment_id, treatment.priority, treatment.rationale))

    def condition_treatments(self, condition_id: Optional[int]) -> List[AppropriateTreatment]:
        if condition_id is None:
            return []
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM condition_treatments WHERE condition_id=? ORDER BY priority",
                (condition_id,)).fetchall()
        return [AppropriateTreatment(r["treatment_id"], r["priority"], r["rationale"]) for r in rows]

    # --- 2. CASES ---

    def _case_from_row(self, r) -> ClinicalCase:
        return ClinicalCase(
            id=r["id"], name=r["name"], description=r["description"],
            species=Species(r["species"]) if r["species"] else None,
            primary_condition_id=r["primary_condition_id"],
            owner_id=r["owner_id"], created_at=r["created_at"])

    def create_case(self, name: str, description: Optional[str], species: Optional[Species],
                    primary_condition_id: Optional[int], owner_id: Optional[str] = None) -> int:
        with self._db() as conn:
            cur = conn.execute(
                "INSERT INTO cases (name, description, species, primary_condition_id, owner_id, created_at) "
                "VALUES (?,?,?,?,?,?)",
                (name, description, species.value if species else None, primary_condition_id,
                 owner_id, iso(utc_now())))
            return cur.lastrowid

    def get_case(self, case_id: int) -> ClinicalCase:
        with self._db() as conn:
            r = conn.execute("SELECT * FROM cases WHERE id=?", (case_id,)).fetchone()
        if r is None:
            raise NotFoundError(f"Case {case_id} not found")
        return self._case_from_row(r)

    def list_cases(self, owner_id: Optional[str] = None) -> List[ClinicalCase]:
        with self._db() as conn:
            if owner_id is None:
                rows = conn.execute("SELECT * FROM cases ORDER BY id").fetchall()
            else:
                rows = conn.execute("SELECT * FROM cases WHERE owner_id=? ORDER BY id DESC",
                                    (owner_id,)).fetchall()
        return [self._case_from_row(r) for r in rows]

    def delete_case(self, case_id: int):
        with self._db() as conn:
            cur = conn.execute("DELETE FROM cases WHERE id=?", (case_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Case {case_id} not found")

    def set_initial_values(self, case_id: int, values: Dict[int, float]):
        """Replaces the whole initial-value set of a case."""
        with self._db() as conn:
            conn.execute("DELETE FROM case_initial_values WHERE case_id=?", (case_id,))
            conn.executemany(
                "INSERT INTO case_initial_values (case_id, parameter_id, value) VALUES (?,?,?)",
                [(case_id, pid, float(v)) for pid, v in values.items()])

    def initial_values(self, case_id: int) -> Dict[int, float]:
        with self._db() as conn:
            rows = conn.execute("SELECT parameter_id, value FROM case_initial_values WHERE case_id=?",
                                (case_id,)).fetchall()
        return {r["parameter_id"]: r["value"] for r in rows}

    def set_case_treatments(self, case_id: int, treatments: Iterable[AppropriateTreatment]):
        with self._db() as conn:
            conn.execute("DELETE FROM case_treatments WHERE case_id=?", (case_id,))
            conn.executemany(
                "INSERT INTO case_treatments (case_id, treatment_id, priority, rationale) VALUES (?,?,?,?)",
                [(case_id, t.treatment_id, t.priority, t.rationale) for t in treatments])

    def case_treatments(self, case_id: int) -> List[AppropriateTreatment]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM case_treatments WHERE case_id=? ORDER BY priority",
                                (case_id,)).fetchall()
        return [AppropriateTreatment(r["treatment_id"], r["priority"], r["rationale"]) for r in rows]

    # --- 3. USERS & ROLES ---

    def upsert_profile(self, user_id: str, email: Optional[str], full_name: Optional[str]):
        with self._db() as conn:
            conn.execute(
                "INSERT INTO profiles (id, email, full_name, created_at) VALUES (?,?,?,?) "
                "ON CONFLICT(id) DO UPDATE SET email=excluded.email, full_name=excluded.full_name",
                (user_id, email.lower() if email else None, full_name, iso(utc_now())))

    def get_profile(self, user_id: str) -> dict:
        with self._db() as conn:
            r = conn.execute("SELECT * FROM profiles WHERE id=?", (user_id,)).fetchone()
        if r is None:
            raise NotFoundError(f"User {user_id} not found")
        return dict(r)

    def find_profile_by_email(self, email: str) -> Optional[dict]:
        with self._db() as conn:
            r = conn.execute("SELECT * FROM profiles WHERE email=?", (email.strip().lower(),)).fetchone()
        return dict(r) if r else None

    def profile_names(self, user_ids: Optional[Iterable[str]] = None) -> Dict[str, str]:
        """id -> display name. E-mail addresses are never exposed here."""
        with self._db() as conn:
            rows = conn.execute("SELECT id, full_name FROM profiles").fetchall()
        names = {r["id"]: r["full_name"] for r in rows}
        if user_ids is not None:
            wanted = set(user_ids)
            names = {k: v for k, v in names.items() if k in wanted}
        return names

    def set_role(self, user_id: str, role: UserRole):
        with self._db() as conn:
            conn.execute(
                "INSERT INTO user_roles (user_id, role, created_at) VALUES (?,?,?) "
                "ON CONFLICT(user_id) DO UPDATE SET role=excluded.role",
                (user_id, role.value, iso(utc_now())))

    def get_role(self, user_id: str) -> Optional[UserRole]:
        with self._db() as conn:
            r = conn.execute("SELECT role FROM user_roles WHERE user_id=?", (user_id,)).fetchone()
        return UserRole(r["role"]) if r else None

    def list_users(self) -> List[dict]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT p.id, p.email, p.full_name, p.created_at, r.role FROM profiles p "
                "LEFT JOIN user_roles r ON r.user_id = p.id ORDER BY p.created_at DESC").fetchall()
        return [dict(r) for r in rows]

    def record_consent(self, user_id: str, version: str, accepted: bool, user_agent: Optional[str]) -> dict:
        row = {"id": new_id(), "user_id": user_id, "version": version, "accepted": int(accepted),
               "user_agent": user_agent, "created_at": iso(utc_now())}
        with self._db() as conn:
            conn.execute(
                "INSERT INTO tcle_consents (id, user_id, version, accepted, user_agent, created_at) "
                "VALUES (:id,:user_id,:version,:accepted,:user_agent,:created_at)", row)
        return row

    def latest_consent(self, user_id: str, version: Optional[str] = None) -> Optional[dict]:
        query = "SELECT * FROM tcle_consents WHERE user_id=?"
        args = [user_id]
        if version is not None:
            query += " AND version=?"
            args.append(version)
        with self._db() as conn:
            r = conn.execute(query + " ORDER BY created_at DESC, rowid DESC LIMIT 1", args).fetchone()
        return dict(r) if r else None

    def has_accepted_consent(self, user_id: str, version: str) -> bool:
        with self._db() as conn:
            r = conn.execute("SELECT 1 FROM tcle_consents WHERE user_id=? AND version=? AND accepted=1 LIMIT 1",
                             (user_id, version)).fetchone()
        return r is not None

    def latest_consents(self, user_ids: Iterable[str]) -> Dict[str, dict]:
        """Newest consent row per user."""
        wanted = list(user_ids)
        if not wanted:
            return {}
        marks = ",".join("?" * len(wanted))
        with self._db() as conn:
            rows = conn.execute(
                f"SELECT * FROM tcle_consents WHERE user_id IN ({marks}) ORDER BY created_at DESC, rowid DESC",
                wanted).fetchall()
        latest = {}
        for r in rows:
            latest.setdefault(r["user_id"], dict(r))
        return latest

    # --- 4. ACCESS KEYS ---

    def insert_access_key(self, access_key: str, created_by: str, description: Optional[str],
                          expires_at: Optional[str]) -> dict:
        row = {"id": new_id(), "access_key": access_key, "active": 1, "created_by": created_by,
               "description": description, "expires_at": expires_at, "used": 0,
               "used_at": None, "used_by": None, "created_at": iso(utc_now())}
        with self._db() as conn:
            conn.execute(
                "INSERT INTO professor_access_keys (id, access_key, active, created_by, description, expires_at, "
                "used, used_at, used_by, created_at) VALUES (:id,:access_key,:active,:created_by,:description,"
                ":expires_at,:used,:used_at,:used_by,:created_at)", row)
        return row

    def get_access_key(self, access_key: str) -> Optional[dict]:
        with self._db() as conn:
            r = conn.execute("SELECT * FROM professor_access_keys WHERE access_key=?",
                             (access_key.strip().upper(),)).fetchone()
        return dict(r) if r else None

    def list_access_keys(self) -> List[dict]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM professor_access_keys ORDER BY created_at DESC").fetchall()
        return [dict(r) for r in rows]

    def mark_access_key_used(self, key_id: str, user_id: str):
        with self._db() as conn:
            cur = conn.execute("UPDATE professor_access_keys SET used=1, used_at=?, used_by=? "
                               "WHERE id=? AND used=0 AND active=1",
                               (iso(utc_now()), user_id, key_id))
            if cur.rowcount == 0:
                raise ConflictError("Access key has already been used")

    def set_access_key_active(self, key_id: str, active: bool):
        with self._db() as conn:
            cur = conn.execute("UPDATE professor_access_keys SET active=? WHERE id=?", (int(active), key_id))
            if cur.rowcount == 0:
                raise NotFoundError(f"Access key {key_id} not found")

    # --- 5. CLASSES & ROSTERS ---

    def insert_class(self, professor_id: str, name: str, description: Optional[str],
                     period: Optional[str], school_year: Optional[str]) -> dict:
        now = iso(utc_now())
        row = {"id": new_id(), "professor_id": professor_id, "name": name, "description": description,
               "period": period, "school_year": school_year, "active": 1,
               "created_at": now, "updated_at": now}
        with self._db() as conn:
            conn.execute(
                "INSERT INTO classes (id, professor_id, name, description, period, school_year, active, "
                "created_at, updated_at) VALUES (:id,:professor_id,:name,:description,:period,:school_year,"
                ":active,:created_at,:updated_at)", row)
        return row

    def get_class(self, class_id: str) -> dict:
        with self._db() as conn:
            r = conn.execute("SELECT * FROM classes WHERE id=?", (class_id,)).fetchone()
        if r is None:
            raise NotFoundError(f"Class {class_id} not found")
        return dict(r)

    def update_class(self, class_id: str, **fields):
        allowed = {"name", "description", "period", "school_year", "active"}
        updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
        if not updates:
            return
        updates["updated_at"] = iso(utc_now())
        assignments = ", ".join(f"{k}=:{k}" for k in updates)
        updates["id"] = class_id
        with self._db() as conn:
            cur = conn.execute(f"UPDATE classes SET {assignments} WHERE id=:id", updates)
            if cur.rowcount == 0:
                raise NotFoundError(f"Class {class_id} not found")

    def delete_class(self, class_id: str):
        with self._db() as conn:
            cur = conn.execute("DELETE FROM classes WHERE id=?", (class_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Class {class_id} not found")

    def list_classes(self, professor_id: str, active_only: bool = False) -> List[dict]:
        query = (
            "SELECT c.*, (SELECT COUNT(*) FROM professor_students ps "
            "WHERE ps.class_id = c.id AND ps.active = 1) AS student_count "
            "FROM classes c WHERE c.professor_id=?")
        if active_only:
            query += " AND c.active = 1"
        query += " ORDER BY c.created_at DESC"
        with self._db() as conn:
            rows = conn.execute(query, (professor_id,)).fetchall()
        return [dict(r) for r in rows]

    def log_email_lookup(self, professor_id: str, email: str, found: bool):
        with self._db() as conn:
            conn.execute(
                "INSERT INTO email_lookup_attempts (id, professor_id, searched_email, found, attempted_at) "
                "VALUES (?,?,?,?,?)", (new_id(), professor_id, email.strip().lower(), int(found), iso(utc_now())))

    def count_email_lookups(self, professor_id: str) -> int:
        with self._db() as conn:
            r = conn.execute("SELECT COUNT(*) AS n FROM email_lookup_attempts WHERE professor_id=?",
                             (professor_id,)).fetchone()
        return r["n"]

    def get_roster_link(self, professor_id: str, student_id: str) -> Optional[dict]:
        with self._db() as conn:
            r = conn.execute("SELECT * FROM professor_students WHERE professor_id=? AND student_id=?",
                             (professor_id, student_id)).fetchone()
        return dict(r) if r else None

    def insert_roster_link(self, professor_id: str, student_id: str, class_id: Optional[str]) -> dict:
        row = {"id": new_id(), "professor_id": professor_id, "student_id": student_id,
               "class_id": class_id, "active": 1, "created_at": iso(utc_now())}
        with self._db() as conn:
            conn.execute(
                "INSERT INTO professor_students (id, professor_id, student_id, class_id, active, created_at) "
                "VALUES (:id,:professor_id,:student_id,:class_id,:active,:created_at)", row)
        return row

    def update_roster_link(self, link_id: str, **fields):
        allowed = {"class_id", "active"}
        updates = {k: v for k, v in fields.items() if k in allowed}
        if not updates:
            return
        assignments = ", ".join(f"{k}=:{k}" for k in updates)
        updates["id"] = link_id
        with self._db() as conn:
            cur = conn.execute(f"UPDATE professor_students SET {assignments} WHERE id=:id", updates)
            if cur.rowcount == 0:
                raise NotFoundError(f"Roster entry {link_id} not found")

    def list_roster(self, professor_id: str, class_id: Optional[str] = None) -> List[dict]:
        query = (
            "SELECT ps.*, p.full_name FROM professor_students ps "
            "LEFT JOIN profiles p ON p.id = ps.student_id "
            "WHERE ps.professor_id=? AND ps.active = 1")
        args = [professor_id]
        if class_id is not None:
            query += " AND ps.class_id=?"
            args.append(class_id)
        with self._db() as conn:
            rows = conn.execute(query + " ORDER BY p.full_name", args).fetchall()
        return [dict(r) for r in rows]

    # --- 6. SHARED CASES ---

    def insert_shared_case(self, case_id: int, shared_by: str, access_code: str, title: str,
                           description: Optional[str], expires_at: Optional[str]) -> dict:
        row = {"id": new_id(), "case_id": case_id, "shared_by": shared_by, "access_code": access_code,
               "title": title, "description": description, "active": 1, "expires_at": expires_at,
               "access_count": 0, "created_at": iso(utc_now())}
        with self._db() as conn:
            conn.execute(
                "INSERT INTO shared_cases (id, case_id, shared_by, access_code, title, description, active, "
                "expires_at, access_count, created_at) VALUES (:id,:case_id,:shared_by,:access_code,:title,"
                ":description,:active,:expires_at,:access_count,:created_at)", row)
        return row

    def get_shared_case_by_code(self, access_code: str) -> Optional[dict]:
        with self._db() as conn:
            r = conn.execute("SELECT * FROM shared_cases WHERE access_code=?",
                             (access_code.strip().upper(),)).fetchone()
        return dict(r) if r else None

    def list_shared_cases(self, shared_by: str) -> List[dict]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM shared_cases WHERE shared_by=? ORDER BY created_at DESC",
                                (shared_by,)).fetchall()
        return [dict(r) for r in rows]

    def set_shared_case_active(self, shared_id: str, active: bool):
        with self._db() as conn:
            cur = conn.execute("UPDATE shared_cases SET active=? WHERE id=?", (int(active), shared_id))
            if cur.rowcount == 0:
                raise NotFoundError(f"Shared case {shared_id} not found")

    def record_shared_access(self, shared_id: str, user_id: str):
        with self._db() as conn:
            conn.execute("UPDATE shared_cases SET access_count = access_count + 1 WHERE id=?", (shared_id,))
            conn.execute("INSERT INTO shared_case_access (id, shared_case_id, user_id, accessed_at) "
                         "VALUES (?,?,?,?)", (new_id(), shared_id, user_id, iso(utc_now())))

    # --- 7. SESSIONS ---

    def _session_from_row(self, r) -> Session:
        return Session(
            id=r["id"], user_id=r["user_id"], case_id=r["case_id"], name=r["name"],
            status=normalize_status(r["status"]), started_at=r["started_at"],
            mode=SimulationMode(r["mode"]), ended_at=r["ended_at"],
            duration_seconds=r["duration_seconds"], final_hp=r["final_hp"],
            notes=r["notes"], created_at=r["created_at"])

    def create_session(self, user_id: str, case_id: int, name: str, mode: SimulationMode) -> Session:
        now = iso(utc_now())
        session_id = new_id()
        with self._db() as conn:
            conn.execute(
                "INSERT INTO sessions (id, user_id, case_id, name, mode, status, started_at, created_at) "
                "VALUES (?,?,?,?,?,?,?,?)",
                (session_id, user_id, case_id, name, mode.value, SessionStatus.PLAYING.value, now, now))
        return self.get_session(session_id)

    def insert_session_record(self, session: Session, hints_used: int = 0, min_hp: Optional[int] = None):
        """Stores an already-finished session as-is (imports, fixtures)."""
        with self._db() as conn:
            conn.execute(
                "INSERT INTO sessions (id, user_id, case_id, name, mode, status, started_at, ended_at, "
                "duration_seconds, final_hp, hints_used, min_hp, notes, created_at) "
                "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (session.id, session.user_id, session.case_id, session.name, session.mode.value,
                 session.status.value, session.started_at, session.ended_at, session.duration_seconds,
                 session.final_hp, hints_used, min_hp, session.notes,
                 session.created_at or session.started_at))

    def get_session(self, session_id: str) -> Session:
        with self._db() as conn:
            r = conn.execute("SELECT * FROM sessions WHERE id=?", (session_id,)).fetchone()
        if r is None:
            raise NotFoundError(f"Session {session_id} not found")
        return self._session_from_row(r)

    def finish_session(self, session_id: str, status: SessionStatus, duration_seconds: int,
                       final_hp: int, hints_used: int, min_hp: int, notes: Optional[str] = None):
        with self._db() as conn:
            cur = conn.execute(
                "UPDATE sessions SET status=?, ended_at=?, duration_seconds=?, final_hp=?, hints_used=?, "
                "min_hp=?, notes=COALESCE(?, notes) WHERE id=?",
                (status.value, iso(utc_now()), duration_seconds, final_hp, hints_used, min_hp,
                 notes, session_id))
            if cur.rowcount == 0:
                raise NotFoundError(f"Session {session_id} not found")

    def delete_session(self, session_id: str):
        with self._db() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE id=?", (session_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Session {session_id} not found")

    def list_sessions(self, user_id: Optional[str] = None, since: Optional[str] = None,
                      until: Optional[str] = None, case_id: Optional[int] = None) -> List[Session]:
        """Newest first."""
        query = "SELECT * FROM sessions WHERE 1=1"
        args = []
        if user_id is not None:
            query += " AND user_id=?"
            args.append(user_id)
        if since is not None:
            query += " AND created_at >= ?"
            args.append(since)
        if until is not None:
            query += " AND created_at <= ?"
            args.append(until)
        if case_id is not None:
            query += " AND case_id=?"
            args.append(case_id)
        with self._db() as conn:
            rows = conn.execute(query + " ORDER BY created_at DESC, rowid DESC", args).fetchall()
        return [self._session_from_row(r) for r in rows]

    def record_treatment(self, session_id: str, treatment_id: int, simulation_time: int):
        with self._db() as conn:
            conn.execute(
                "INSERT INTO session_treatments (id, session_id, treatment_id, simulation_time, applied_at) "
                "VALUES (?,?,?,?,?)", (new_id(), session_id, treatment_id, simulation_time, iso(utc_now())))

    def session_treatments(self, session_ids: Iterable[str]) -> List[dict]:
        ids = list(session_ids)
        if not ids:
            return []
        marks = ",".join("?" for _ in ids)
        with self._db() as conn:
            rows = conn.execute(
                f"SELECT st.*, t.name AS treatment_name FROM session_treatments st "
                f"JOIN treatments t ON t.id = st.treatment_id WHERE st.session_id IN ({marks}) "
                f"ORDER BY st.simulation_time", ids).fetchall()
        return [dict(r) for r in rows]

    def record_decision(self, decision: Decision) -> Decision:
        decision.id = decision.id or new_id()
        decision.created_at = decision.created_at or iso(utc_now())
        with self._db() as conn:
            conn.execute(
                "INSERT INTO session_decisions (id, session_id, kind, simulation_time, data, hp_before, "
                "hp_after, created_at) VALUES (?,?,?,?,?,?,?,?)",
                (decision.id, decision.session_id, decision.kind, decision.simulation_time,
                 json.dumps(decision.data), decision.hp_before, decision.hp_after, decision.created_at))
        return decision

    def list_decisions(self, session_id: str) -> List[Decision]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM session_decisions WHERE session_id=? ORDER BY simulation_time, created_at, rowid",
                (session_id,)).fetchall()
        return [Decision(session_id=r["session_id"], kind=r["kind"], simulation_time=r["simulation_time"],
                         data=json.loads(r["data"]), hp_before=r["hp_before"], hp_after=r["hp_after"],
                         id=r["id"], created_at=r["created_at"]) for r in rows]

    def record_history(self, session_id: str, points: List[dict]):
        """points: [{"time": int, "values": {parameter_id: value}}]"""
        rows = [(session_id, pid, p["time"], float(v)) for p in points for pid, v in p["values"].items()]
        with self._db() as conn:
            conn.executemany(
                "INSERT INTO session_history (session_id, parameter_id, simulation_time, value) VALUES (?,?,?,?)",
                rows)

    def session_history(self, session_id: str) -> List[dict]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT parameter_id, simulation_time, value FROM session_history WHERE session_id=? "
                "ORDER BY simulation_time, parameter_id", (session_id,)).fetchall()
        grouped: Dict[int, dict] = {}
        for r in rows:
            point = grouped.setdefault(r["simulation_time"], {"time": r["simulation_time"], "values": {}})
            point["values"][r["parameter_id"]] = r["value"]
        return list(grouped.values())

    # --- 8. LEARNING GOALS ---

    def add_goal(self, goal: LearningGoal) -> LearningGoal:
        goal.id = goal.id or new_id()
        with self._db() as conn:
            conn.execute(
                "INSERT INTO learning_goals (id, case_id, title, description, goal_type, target_parameter, "
                "target_value, tolerance, time_limit_seconds, required_treatment_id, points, created_at) "
                "VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
                (goal.id, goal.case_id, goal.title, goal.description, goal.goal_type.value,
                 goal.target_parameter, goal.target_value, goal.tolerance, goal.time_limit_seconds,
                 goal.required_treatment_id, goal.points, iso(utc_now())))
        return goal

    def list_goals(self, case_id: int) -> List[LearningGoal]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM learning_goals WHERE case_id=? ORDER BY created_at",
                                (case_id,)).fetchall()
        return [LearningGoal(
            id=r["id"], case_id=r["case_id"], title=r["title"], goal_type=GoalType(r["goal_type"]),
            points=r["points"], description=r["description"], target_parameter=r["target_parameter"],
            target_value=r["target_value"], tolerance=r["tolerance"],
            time_limit_seconds=r["time_limit_seconds"],
            required_treatment_id=r["required_treatment_id"]) for r in rows]

    def record_goal_achievement(self, achievement: GoalAchievement):
        with self._db() as conn:
            conn.execute(
                "INSERT INTO goal_achievements (id, goal_id, session_id, user_id, points, elapsed_seconds, "
                "achieved_at) VALUES (?,?,?,?,?,?,?)",
                (new_id(), achievement.goal_id, achievement.session_id, achievement.user_id,
                 achievement.points, achievement.elapsed_seconds, iso(utc_now())))

    def goal_achievements(self, user_id: Optional[str] = None,
                          session_ids: Optional[Iterable[str]] = None) -> List[dict]:
        query = "SELECT * FROM goal_achievements WHERE 1=1"
        args = []
        if user_id is not None:
            query += " AND user_id=?"
            args.append(user_id)
        if session_ids is not None:
            ids = list(session_ids)
            if not ids:
                return []
            query += f" AND session_id IN ({','.join('?' for _ in ids)})"
            args.extend(ids)
        with self._db() as conn:
            rows = conn.execute(query, args).fetchall()
        return [dict(r) for r in rows]

    def goal_points_by_user(self) -> Dict[str, int]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT user_id, SUM(points) AS total FROM goal_achievements GROUP BY user_id").fetchall()
        return {r["user_id"]: int(r["total"] or 0) for r in rows}

    # --- 9. BADGES ---

    def add_badge(self, badge: Badge) -> Badge:
        badge.id = badge.id or new_id()
        with self._db() as conn:
            conn.execute(
                "INSERT INTO badges (id, name, description, icon, category, criterion, created_at) "
                "VALUES (?,?,?,?,?,?,?)",
                (badge.id, badge.name, badge.description, badge.icon, badge.category,
                 json.dumps(badge.criterion), iso(utc_now())))
        return badge

    def list_badges(self, categories: Optional[Iterable[str]] = None) -> List[Badge]:
        with self._db() as conn:
            rows = conn.execute("SELECT * FROM badges ORDER BY created_at, name").fetchall()
        badges = [Badge(id=r["id"], name=r["name"], description=r["description"], icon=r["icon"],
                        category=r["category"], criterion=json.loads(r["criterion"])) for r in rows]
        if categories is not None:
            wanted = set(categories)
            badges = [b for b in badges if b.category in wanted]
        return badges

    def user_badge_ids(self, user_id: str) -> set:
        with self._db() as conn:
            rows = conn.execute("SELECT badge_id FROM user_badges WHERE user_id=?", (user_id,)).fetchall()
        return {r["badge_id"] for r in rows}

    def award_badge(self, user_id: str, badge_id: str, session_id: Optional[str]) -> bool:
        with self._db() as conn:
            cur = conn.execute(
                "INSERT INTO user_badges (id, user_id, badge_id, session_id, earned_at) VALUES (?,?,?,?,?) "
                "ON CONFLICT(user_id, badge_id) DO NOTHING",
                (new_id(), user_id, badge_id, session_id, iso(utc_now())))
            return cur.rowcount == 1

    def user_badges(self, user_id: str) -> List[dict]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT ub.*, b.name, b.description, b.icon, b.category FROM user_badges ub "
                "JOIN badges b ON b.id = ub.badge_id WHERE ub.user_id=? ORDER BY ub.earned_at DESC",
                (user_id,)).fetchall()
        return [dict(r) for r in rows]

    # --- 10. NOTES ---

    def add_note(self, user_id: str, case_id: int, session_id: Optional[str], simulation_time: int,
                 kind: str, content: str, parameters_snapshot: Optional[dict]) -> dict:
        row = {"id": new_id(), "user_id": user_id, "case_id": case_id, "session_id": session_id,
               "simulation_time": simulation_time, "kind": kind, "content": content,
               "parameters_snapshot": json.dumps(parameters_snapshot) if parameters_snapshot is not None else None,
               "created_at": iso(utc_now())}
        with self._db() as conn:
            conn.execute(
                "INSERT INTO simulation_notes (id, user_id, case_id, session_id, simulation_time, kind, content, "
                "parameters_snapshot, created_at) VALUES (:id,:user_id,:case_id,:session_id,:simulation_time,"
                ":kind,:content,:parameters_snapshot,:created_at)", row)
        row["parameters_snapshot"] = parameters_snapshot
        return row

    def list_notes(self, user_id: str, case_id: int) -> List[dict]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM simulation_notes WHERE user_id=? AND case_id=? ORDER BY created_at DESC",
                (user_id, case_id)).fetchall()
        notes = []
        for r in rows:
            note = dict(r)
            note["parameters_snapshot"] = json.loads(r["parameters_snapshot"]) if r["parameters_snapshot"] else None
            notes.append(note)
        return notes

    def delete_note(self, note_id: str, user_id: str):
        with self._db() as conn:
            cur = conn.execute("DELETE FROM simulation_notes WHERE id=? AND user_id=?", (note_id, user_id))
            if cur.rowcount == 0:
                raise NotFoundError(f"Note {note_id} not found")

    # --- 11. WEEKLY RANKING HISTORY ---

    def upsert_weekly_entry(self, entry: dict):
        row = dict(entry)
        row.setdefault("id", new_id())
        row.setdefault("created_at", iso(utc_now()))
        with self._db() as conn:
            conn.execute(
                "INSERT INTO weekly_ranking_history (id, user_id, week_start, week_end, position, wins, "
                "total_sessions, points, win_rate, created_at) VALUES (:id,:user_id,:week_start,:week_end,"
                ":position,:wins,:total_sessions,:points,:win_rate,:created_at) "
                "ON CONFLICT(user_id, week_start) DO UPDATE SET week_end=excluded.week_end, "
                "position=excluded.position, wins=excluded.wins, total_sessions=excluded.total_sessions, "
                "points=excluded.points, win_rate=excluded.win_rate", row)

    def weekly_history(self, user_id: str, limit: int) -> List[dict]:
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM weekly_ranking_history WHERE user_id=? ORDER BY week_start DESC LIMIT ?",
                (user_id, limit)).fetchall()
        return [dict(r) for r in rows]
