"""ADO Tracker configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    value = os.getenv(name)
    if value is None:
        return list(default)
    return [part.strip() for part in value.split(",") if part.strip()]


# Data directory (per-user, survives reinstalls)
DATA_DIR = Path(os.getenv("ADOTRACKER_DATA_DIR", str(Path.home() / ".ado-tracker")))

# Database
DB_PATH = os.getenv("ADOTRACKER_DB_PATH", str(DATA_DIR / "database.db"))

# Azure DevOps
ADO_ORG_URL = os.getenv("ADOTRACKER_ADO_ORG_URL", "")
ADO_PROJECT = os.getenv("ADOTRACKER_ADO_PROJECT", "")
ADO_PAT = os.getenv("ADOTRACKER_ADO_PAT", "")
ADO_WIQL_API_VERSION = os.getenv("ADOTRACKER_ADO_WIQL_API_VERSION", "7.1")
ADO_WORKITEM_API_VERSION = os.getenv("ADOTRACKER_ADO_WORKITEM_API_VERSION", "7.1")
ADO_FETCH_BATCH_SIZE = _env_int("ADOTRACKER_ADO_FETCH_BATCH_SIZE", 200)  # API maximum
ADO_MAX_CONCURRENT_REQUESTS = _env_int("ADOTRACKER_ADO_MAX_CONCURRENT_REQUESTS", 4)
ADO_TIMEOUT_SECONDS = _env_int("ADOTRACKER_ADO_TIMEOUT_SECONDS", 300)

# Sync tuning
SYNC_MAX_ITEMS = _env_int("ADOTRACKER_SYNC_MAX_ITEMS", 1000)
SYNC_BATCH_SIZE = _env_int("ADOTRACKER_SYNC_BATCH_SIZE", 50)
EXCLUDED_WORK_ITEM_TYPES = _env_list(
    "ADOTRACKER_EXCLUDED_WORK_ITEM_TYPES",
    ["Test Case", "Test Plan", "Test Suite", "Shared Steps", "Shared Parameter"],
)

# Tagging tuning
TAG_BATCH_SIZE = _env_int("ADOTRACKER_TAG_BATCH_SIZE", 50)
TAG_CONCURRENCY = _env_int("ADOTRACKER_TAG_CONCURRENCY", 5)
TAG_CONFIDENCE_THRESHOLD = _env_float("ADOTRACKER_TAG_CONFIDENCE_THRESHOLD", 0.5)
RETAG_CONFIDENCE_THRESHOLD = _env_float("ADOTRACKER_RETAG_CONFIDENCE_THRESHOLD", 0.8)
BACKGROUND_TAG_DELAY_SECONDS = _env_float("ADOTRACKER_BACKGROUND_TAG_DELAY_SECONDS", 2.0)

# AI tagging
AI_TAGGING_ENABLED = _env_bool("ADOTRACKER_AI_TAGGING_ENABLED", False)
OPENAI_API_KEY = os.getenv("ADOTRACKER_OPENAI_API_KEY", "")
OPENAI_BASE_URL = os.getenv("ADOTRACKER_OPENAI_BASE_URL", "")
OPENAI_MODEL = os.getenv("ADOTRACKER_OPENAI_MODEL", "gpt-4o-mini")
AZURE_OPENAI_ENDPOINT = os.getenv("ADOTRACKER_AZURE_OPENAI_ENDPOINT", "")
AZURE_OPENAI_API_VERSION = os.getenv("ADOTRACKER_AZURE_OPENAI_API_VERSION", "2024-06-01")

# Observability
OTEL_ENABLED = _env_bool("ADOTRACKER_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("ADOTRACKER_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("ADOTRACKER_OTEL_SERVICE_NAME", "ado-tracker")
PROM_PORT = _env_int("ADOTRACKER_PROM_PORT", 9464)

# Startup behavior
STARTUP_SYNC_ENABLED = _env_bool("ADOTRACKER_STARTUP_SYNC_ENABLED", False)
STARTUP_SYNC_DELAY_SECONDS = _env_int("ADOTRACKER_STARTUP_SYNC_DELAY_SECONDS", 2)
STARTUP_BACKGROUND_TAGGING = _env_bool("ADOTRACKER_STARTUP_BACKGROUND_TAGGING", True)

# Server settings
HOST = os.getenv("ADOTRACKER_HOST", "127.0.0.1")
PORT = _env_int("ADOTRACKER_PORT", 3000)

# CORS
FRONTEND_ORIGIN = os.getenv("ADOTRACKER_FRONTEND_ORIGIN", "http://localhost:3000")
