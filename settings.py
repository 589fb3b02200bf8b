# settings.py
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv

DEFAULT_AI_BASE_URL = "https://ai.gateway.lovable.dev/v1"
DEFAULT_AI_MODEL = "google/gemini-2.5-flash"

@dataclass
class Settings:
    database_path: str = "vetbalance.db"
    log_level: str = "INFO"
    ai_base_url: str = DEFAULT_AI_BASE_URL
    ai_api_key: Optional[str] = None
    ai_model: str = DEFAULT_AI_MODEL
    ai_timeout_seconds: float = 30.0
    seed_catalogue: bool = True
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

def _as_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")

def load_settings() -> Settings:
    """Reads VETBALANCE_* variables, after loading a local .env if present."""
    load_dotenv()
    origins = os.getenv("VETBALANCE_CORS_ORIGINS", "*")
    return Settings(
        database_path=os.getenv("VETBALANCE_DB_PATH", "vetbalance.db"),
        log_level=os.getenv("VETBALANCE_LOG_LEVEL", "INFO").upper(),
        ai_base_url=os.getenv("VETBALANCE_AI_BASE_URL", DEFAULT_AI_BASE_URL),
        ai_api_key=os.getenv("VETBALANCE_AI_API_KEY") or None,
        ai_model=os.getenv("VETBALANCE_AI_MODEL", DEFAULT_AI_MODEL),
        ai_timeout_seconds=float(os.getenv("VETBALANCE_AI_TIMEOUT", "30")),
        seed_catalogue=_as_bool(os.getenv("VETBALANCE_SEED_CATALOGUE"), True),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
    )
