# splitlens/config.py
import os

from dotenv import load_dotenv

# Load .env variables (DATABASE_URL, DECISION_WEBHOOK_URL, MC_SEED, ...)
load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./splitlens.db")
DB_ECHO = _flag("DB_ECHO", "false")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Monte-Carlo settings for the belief model
MC_SAMPLES = int(os.getenv("MC_SAMPLES", "4096"))
MC_SEED = int(os.getenv("MC_SEED", "42"))

# Sessions can be attributed for this many days after assignment
ASSIGNMENT_TTL_DAYS = int(os.getenv("ASSIGNMENT_TTL_DAYS", "90"))

# Neither arm drops below this share while an experiment is active
MIN_EXPLORATION = float(os.getenv("MIN_EXPLORATION", "0.05"))

# External system notified on promotion / abort / cancel (optional)
DECISION_WEBHOOK_URL = os.getenv("DECISION_WEBHOOK_URL")
WEBHOOK_TIMEOUT = float(os.getenv("WEBHOOK_TIMEOUT", "10"))

# Run recompute + decision right after an order is attributed
RECOMPUTE_ON_ATTRIBUTION = _flag("RECOMPUTE_ON_ATTRIBUTION", "true")
