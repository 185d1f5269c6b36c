"""
Recall - Configuration
Provider selection, resilience limits, and logging defaults
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# =============================================================================
# PATHS
# =============================================================================
PROJECT_ROOT = Path(__file__).parent
LOGS_DIR = PROJECT_ROOT / "logs"
DIAGNOSTIC_LOG_PATH = LOGS_DIR / "diagnostic.log"

# =============================================================================
# VERSION
# =============================================================================
VERSION = "0.1.0"
PROJECT_NAME = "Recall"

# =============================================================================
# PROVIDER ROUTING
# =============================================================================
# Provider names: 'anthropic' (alias 'claude'), 'openai', 'kobold'
MEMORY_LLM_PRIMARY = os.getenv("MEMORY_LLM_PRIMARY", "anthropic")
MEMORY_LLM_FALLBACK = os.getenv("MEMORY_LLM_FALLBACK", "none")  # 'none' disables fallback

# Per-provider overrides are read by name at load time:
#   MEMORY_LLM_API_KEY_<NAME>, MEMORY_LLM_MODEL_<NAME>, MEMORY_LLM_BASE_URL_<NAME>
DEFAULT_MODELS = {
    "anthropic": "claude-3-haiku-20240307",
    "openai": "gpt-3.5-turbo",
    "kobold": "koboldcpp",
}
DEFAULT_BASE_URLS = {
    "anthropic": "",
    "openai": "https://api.openai.com/v1",
    "kobold": "http://127.0.0.1:5001",
}

# Legacy provider key variables, used when no MEMORY_LLM_API_KEY_<NAME> is set
LEGACY_API_KEY_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}

# =============================================================================
# RETRY & FALLBACK
# =============================================================================
MEMORY_LLM_MAX_RETRIES = int(os.getenv("MEMORY_LLM_MAX_RETRIES", "3"))
RETRY_INITIAL_DELAY = 0.5                     # Seconds before the first retry
RETRY_BACKOFF_MULTIPLIER = 2.0
RETRY_MAX_DELAY = 8.0                         # Backoff ceiling in seconds
RETRY_JITTER = 0.2                            # Uniform +/- jitter in seconds
FALLBACK_ON_INVALID_REQUEST = os.getenv("MEMORY_LLM_FALLBACK_ON_INVALID_REQUEST", "false").lower() == "true"

# Per-call provider timeout and overall extraction deadline (seconds)
MEMORY_LLM_CALL_TIMEOUT = float(os.getenv("MEMORY_LLM_CALL_TIMEOUT", "60"))
MEMORY_LLM_STREAMING = os.getenv("MEMORY_LLM_STREAMING", "true").lower() == "true"
EXTRACTION_MAX_TOKENS = int(os.getenv("MEMORY_LLM_MAX_TOKENS", "2048"))

# =============================================================================
# CIRCUIT BREAKER
# =============================================================================
MEMORY_LLM_CIRCUIT_THRESHOLD = float(os.getenv("MEMORY_LLM_CIRCUIT_THRESHOLD", "0.5"))
MEMORY_LLM_CIRCUIT_COOLDOWN = float(os.getenv("MEMORY_LLM_CIRCUIT_COOLDOWN", "30"))
MEMORY_LLM_CIRCUIT_MIN_CALLS = int(os.getenv("MEMORY_LLM_CIRCUIT_MIN_CALLS", "10"))
CIRCUIT_WINDOW_SIZE = 20                      # Rolling window of recent outcomes

# =============================================================================
# RATE LIMITING
# =============================================================================
# Token bucket: burst capacity + sustained refill rate (tokens/second)
MEMORY_LLM_RATE_BURST = int(os.getenv("MEMORY_LLM_RATE_BURST", "5"))
MEMORY_LLM_RATE_SUSTAINED = float(os.getenv("MEMORY_LLM_RATE_SUSTAINED", "1.0"))
# Sliding window: at most N calls per W seconds
MEMORY_LLM_RATE_WINDOW_SECONDS = float(os.getenv("MEMORY_LLM_RATE_WINDOW_SECONDS", "60"))
MEMORY_LLM_RATE_WINDOW_MAX = int(os.getenv("MEMORY_LLM_RATE_WINDOW_MAX", "50"))
RATE_LIMIT_ACQUIRE_TIMEOUT = float(os.getenv("MEMORY_LLM_RATE_ACQUIRE_TIMEOUT", "30"))

# =============================================================================
# BUDGET
# =============================================================================
MEMORY_LLM_DAILY_BUDGET_USD = float(os.getenv("MEMORY_LLM_DAILY_BUDGET_USD", "0"))  # 0 disables
BUDGET_WARNING_THRESHOLDS = (70, 90, 100)     # Percent, each logged once per UTC day

# =============================================================================
# RESPONSE HANDLING
# =============================================================================
SCHEMA_VERSION = "memory_llm_response_v1"
STREAM_BUFFER_LIMIT = 100000                  # Characters
CONFIDENCE_DEFAULT = 0.5                      # Stand-in for a missing confidence side

# =============================================================================
# LOGGING
# =============================================================================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "true").lower() == "true"
LOG_TO_CONSOLE = True
METRICS_ENABLED = os.getenv("MEMORY_LLM_METRICS", "true").lower() == "true"
