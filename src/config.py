"""Runtime settings loaded from .env / environment."""

import os

from dotenv import load_dotenv

load_dotenv()

# Analysis window
ANALYSIS_WINDOW_DAYS = int(os.getenv("ANALYSIS_WINDOW_DAYS", "90"))
DEFAULT_MIN_CONFIDENCE = float(os.getenv("DEFAULT_MIN_CONFIDENCE", "50"))

# Repository cache
SERIES_CACHE_TTL_SECONDS = int(os.getenv("SERIES_CACHE_TTL_SECONDS", "300"))

# Pipeline
PIPELINE_STATUS_PATH = os.getenv("PIPELINE_STATUS_PATH", "")
STRICT_PIPELINE_HEALTH = os.getenv("STRICT_PIPELINE_HEALTH", "0").strip() == "1"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
