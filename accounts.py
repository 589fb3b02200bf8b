"""
VetBalance: Accounts, Classes & Sharing
=======================================
Role checks, professor access keys, classes and rosters, and the share
codes students use to open a professor's case.

Authentication itself happens upstream; these functions receive an
already-authenticated user id.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import List, Optional

from models import (
    ConflictError,
    ExpiredCodeError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from constants import ACCESS_CONSTANTS, TCLE_VERSION, UserRole
from store import VetBalanceStore, iso, utc_now

logger = logging.getLogger("vetbalance.accounts")

MAX_CODE_ATTEMPTS = 5

def generate_code(length: int) -> str:
    return "".join(secrets.choice(ACCESS_CONSTANTS.CODE_ALPHABET) for _ in range(length))

def generate_access_key() -> str:
    """XXXX-XXXX-XXXX-XXXX"""
    raw = generate_code(ACCESS_CONSTANTS.KEY_LENGTH)
    step = ACCESS_CONSTANTS.KEY_GROUP
    return "-".join(raw[i:i + step] for i in range(0, len(raw), step))

def _is_expired(expires_at: Optional[str]) -> bool:
    return expires_at is not None and datetime.fromisoformat(expires_at) < utc_now()

def _expiry(days: Optional[int]) -> Optional[str]:
    if days is None:
        return None
    if days <= 0:
        raise ValidationError("Expiry must be at least one day")
    return iso(utc_now() + timedelta(days=days))

# --- 1. ROLES & REGISTRATION ---

def require_professor(store: VetBalanceStore, user_id: str):
    if store.get_role(user_id) != UserRole.PROFESSOR:
        raise PermissionDeniedError("Professor role required")

def register_student(store: VetBalanceStore, user_id: str, email: str, full_name: str) -> dict:
    if store.get_role(user_id) is not None:
        raise ConflictError("User is already registered")
    store.upsert_profile(user_id, email, full_name)
    store.set_role(user_id, UserRole.STUDENT)
    logger.info(f"Student registered: {user_id}")
    return {"user_id": user_id, "role": UserRole.STUDENT.value}

def validate_access_key(store: VetBalanceStore, access_key: str) -> dict:
    key = store.get_access_key(access_key)
    if key is None:
        raise NotFoundError("Invalid access key")
    if not key["active"]:
        raise ConflictError("Access key is inactive")
    if key["used"]:
        raise ConflictError("Access key has already been used")
    if _is_expired(key["expires_at"]):
        raise ExpiredCodeError("Access key has expired")
    return key

def register_professor(store: VetBalanceStore, user_id: str, email: str, full_name: str,
                       access_key: str) -> dict:
    key = validate_access_key(store, access_key)
    if store.get_role(user_id) == UserRole.PROFESSOR:
        raise ConflictError("User is already a professor")

    store.upsert_profile(user_id, email, full_name)
    store.mark_access_key_used(key["id"], user_id)
    store.set_role(user_id, UserRole.PROFESSOR)
    logger.info(f"Professor registered with key {key['id']}: {user_id}")
    return {"user_id": user_id, "role": UserRole.PROFESSOR.value}

def set_user_role(store: VetBalanceStore, actor_id: str, target_id: str, role: UserRole) -> dict:
    require_professor(store, actor_id)
    store.get_profile(target_id)
    if actor_id == target_id and role != UserRole.PROFESSOR:
        raise ValidationError("Professors cannot demote themselves")
    store.set_role(target_id, role)
    logger.info(f"{actor_id} set role of {target_id} to {role.value}")
    return {"user_id": target_id, "role": role.value}

# --- 2. ACCESS KEYS ---

def create_access_key(store: VetBalanceStore, professor_id: str, description: Optional[str] = None,
                      expires_in_days: Optional[int] = None) -> dict:
    require_professor(store, professor_id)
    expires_at = _expiry(expires_in_days)
    for _ in range(MAX_CODE_ATTEMPTS):
        try:
            return store.insert_access_key(generate_access_key(), professor_id, description, expires_at)
        except ConflictError:
            continue
    raise ConflictError("Could not generate a unique access key")

def list_access_keys(store: VetBalanceStore, professor_id: str) -> List[dict]:
    require_professor(store, professor_id)
    return store.list_access_keys()

def deactivate_access_key(store: VetBalanceStore, professor_id: str, key_id: str):
    require_professor(store, professor_id)
    store.set_access_key_active(key_id, False)

# --- 3. CLASSES ---

def _own_class(store: VetBalanceStore, professor_id: str, class_id: str) -> dict:
    klass = store.get_class(class_id)
    if klass["professor_id"] != professor_id:
        raise PermissionDeniedError("Class belongs to another professor")
    return klass

def create_class(store: VetBalanceStore, professor_id: str, name: str, description: Optional[str] = None,
                 period: Optional[str] = None, school_year: Optional[str] = None) -> dict:
    require_professor(store, professor_id)
    if not name or not name.strip():
        raise ValidationError("Class name is required")
    return store.insert_class(professor_id, name.strip(), description, period, school_year)

def update_class(store: VetBalanceStore, professor_id: str, class_id: str, **fields) -> dict:
    _own_class(store, professor_id, class_id)
    if "active" in fields and fields["active"] is not None:
        fields["active"] = int(bool(fields["active"]))
    store.update_class(class_id, **fields)
    return store.get_class(class_id)

def toggle_class(store: VetBalanceStore, professor_id: str, class_id: str) -> dict:
    klass = _own_class(store, professor_id, class_id)
    store.update_class(class_id, active=0 if klass["active"] else 1)
    return store.get_class(class_id)

def delete_class(store: VetBalanceStore, professor_id: str, class_id: str):
    _own_class(store, professor_id, class_id)
    store.delete_class(class_id)

def list_classes(store: VetBalanceStore, professor_id: str, active_only: bool = False) -> List[dict]:
    require_professor(store, professor_id)
    return store.list_classes(professor_id, active_only)

# --- 4. ROSTER ---

def add_student_by_email(store: VetBalanceStore, professor_id: str, email: str,
                         class_id: Optional[str] = None) -> dict:
    require_professor(store, professor_id)
    if class_id is not None:
        _own_class(store, professor_id, class_id)

    profile = store.find_profile_by_email(email)
    store.log_email_lookup(professor_id, email, found=profile is not None)
    if profile is None:
        raise NotFoundError("No user registered with this e-mail")
    if store.get_role(profile["id"]) == UserRole.PROFESSOR:
        raise ValidationError("This e-mail belongs to a professor")

    existing = store.get_roster_link(professor_id, profile["id"])
    if existing is not None:
        if existing["active"]:
            raise ConflictError("Student is already on your roster")
        store.update_roster_link(existing["id"], active=1, class_id=class_id)
        logger.info(f"Student {profile['id']} re-activated on roster of {professor_id}")
        return store.get_roster_link(professor_id, profile["id"])

    link = store.insert_roster_link(professor_id, profile["id"], class_id)
    logger.info(f"Student {profile['id']} added to roster of {professor_id}")
    return link

def _own_link(store: VetBalanceStore, professor_id: str, student_id: str) -> dict:
    link = store.get_roster_link(professor_id, student_id)
    if link is None:
        raise NotFoundError("Student is not on your roster")
    return link

def move_student(store: VetBalanceStore, professor_id: str, student_id: str, class_id: Optional[str]) -> dict:
    require_professor(store, professor_id)
    if class_id is not None:
        _own_class(store, professor_id, class_id)
    link = _own_link(store, professor_id, student_id)
    store.update_roster_link(link["id"], class_id=class_id)
    return store.get_roster_link(professor_id, student_id)

def deactivate_student(store: VetBalanceStore, professor_id: str, student_id: str):
    require_professor(store, professor_id)
    link = _own_link(store, professor_id, student_id)
    store.update_roster_link(link["id"], active=0)

def list_students(store: VetBalanceStore, professor_id: str, class_id: Optional[str] = None) -> List[dict]:
    require_professor(store, professor_id)
    return store.list_roster(professor_id, class_id)

# --- 5. SHARED CASES ---

def share_case(store: VetBalanceStore, professor_id: str, case_id: int, title: str,
               description: Optional[str] = None, expires_in_days: Optional[int] = None) -> dict:
    require_professor(store, professor_id)
    store.get_case(case_id)
    expires_at = _expiry(expires_in_days)
    for _ in range(MAX_CODE_ATTEMPTS):
        try:
            shared = store.insert_shared_case(
                case_id, professor_id, generate_code(ACCESS_CONSTANTS.SHARE_CODE_LENGTH),
                title, description, expires_at)
            logger.info(f"Case {case_id} shared by {professor_id} as {shared['access_code']}")
            return shared
        except ConflictError:
            continue
    raise ConflictError("Could not generate a unique share code")

def redeem_shared_case(store: VetBalanceStore, user_id: str, access_code: str) -> dict:
    shared = store.get_shared_case_by_code(access_code)
    if shared is None:
        raise NotFoundError("Invalid access code")
    if not shared["active"]:
        raise ConflictError("This shared case is no longer active")
    if _is_expired(shared["expires_at"]):
        raise ExpiredCodeError("This access code has expired")

    store.record_shared_access(shared["id"], user_id)
    case = store.get_case(shared["case_id"])
    return {
        "shared_case_id": shared["id"],
        "title": shared["title"],
        "description": shared["description"],
        "case_id": case.id,
        "case_name": case.name,
    }

def list_shared_cases(store: VetBalanceStore, professor_id: str) -> List[dict]:
    require_professor(store, professor_id)
    return store.list_shared_cases(professor_id)

def deactivate_shared_case(store: VetBalanceStore, professor_id: str, shared_id: str):
    require_professor(store, professor_id)
    owned = {s["id"] for s in store.list_shared_cases(professor_id)}
    if shared_id not in owned:
        raise NotFoundError(f"Shared case {shared_id} not found")
    store.set_shared_case_active(shared_id, False)

# --- 6. TCLE CONSENT ---

def consent_status(store: VetBalanceStore, user_id: str) -> dict:
    latest = store.latest_consent(user_id, TCLE_VERSION)
    return {
        "version": TCLE_VERSION,
        "has_consent": store.has_accepted_consent(user_id, TCLE_VERSION),
        "accepted": bool(latest["accepted"]) if latest else None,
        "recorded_at": latest["created_at"] if latest else None,
    }

def record_consent(store: VetBalanceStore, user_id: str, accepted: bool,
                   user_agent: Optional[str] = None) -> dict:
    """Every answer is kept; declining after accepting does not remove the earlier row."""
    store.record_consent(user_id, TCLE_VERSION, accepted, (user_agent or "")[:500] or None)
    logger.info(f"TCLE {TCLE_VERSION} {'accepted' if accepted else 'declined'} by {user_id}")
    return consent_status(store, user_id)

def require_consent(store: VetBalanceStore, user_id: str):
    """Professors are exempt; everyone else needs an accepted TCLE for the current version."""
    if store.get_role(user_id) == UserRole.PROFESSOR:
        return
    if not store.has_accepted_consent(user_id, TCLE_VERSION):
        raise PermissionDeniedError(f"Accept the consent term (TCLE {TCLE_VERSION}) before starting a simulation")

def roster_consents(store: VetBalanceStore, professor_id: str) -> List[dict]:
    """Latest answer of each linked student, pending ones first."""
    roster = list_students(store, professor_id)
    latest = store.latest_consents(s["student_id"] for s in roster)
    rows = []
    for student in roster:
        consent = latest.get(student["student_id"])
        rows.append({
            "student_id": student["student_id"],
            "full_name": student["full_name"],
            "accepted": bool(consent["accepted"]) if consent else None,
            "recorded_at": consent["created_at"] if consent else None,
            "version": consent["version"] if consent else None,
        })
    rows.sort(key=lambda r: (r["accepted"] is not None, r["full_name"] or ""))
    return rows
