"""
Config for the table generation service.
Set environment variables or put them in a .env file at the project root.
Core modules never read the environment: they receive a GenerationSettings value.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, Tuple

from dotenv import load_dotenv

# Load .env from project root
_CONFIG_DIR = os.path.dirname(os.path.abspath(__file__))
_ENV_FILE = os.path.join(_CONFIG_DIR, ".env")
load_dotenv(_ENV_FILE)
load_dotenv()


def _env_list(name, default):
    """Comma separated env var -> tuple of non-empty stripped items."""
    raw = os.environ.get(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_map(name, default=""):
    """'a=b,c=d' -> {"a": "b", "c": "d"}. Items without '=' are ignored."""
    out = {}
    for item in _env_list(name, default):
        if "=" not in item:
            continue
        key, value = item.split("=", 1)
        if key.strip() and value.strip():
            out[key.strip()] = value.strip()
    return out


# Flask
SECRET_KEY = os.environ.get("SECRET_KEY", "change-me-in-production-use-long-random-string")

# Upstream OpenAI-compatible endpoint
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_MAX_TOKENS = int(os.environ.get("OPENAI_MAX_TOKENS", "8192"))
OPENAI_TEMPERATURE = float(os.environ.get("OPENAI_TEMPERATURE", "0.3"))

# Slow models can take minutes to produce a full table
REQUEST_TIMEOUT_MS = int(os.environ.get("REQUEST_TIMEOUT_MS", "180000"))
MAX_ATTEMPTS = int(os.environ.get("MAX_ATTEMPTS", "3"))
RETRY_BACKOFF_SECONDS = float(os.environ.get("RETRY_BACKOFF_SECONDS", "2"))

# Prompt
MAX_PROMPT_LENGTH = int(os.environ.get("MAX_PROMPT_LENGTH", "2000"))
DEFAULT_ROW_COUNT = int(os.environ.get("DEFAULT_ROW_COUNT", "5"))

# Model routing
FAKE_STREAM_MARKERS = _env_list("FAKE_STREAM_MARKERS", "假流式,fake-stream")
REAL_STREAM_MARKERS = _env_list("REAL_STREAM_MARKERS", "流式,real-stream")
NON_STREAM_MARKERS = _env_list("NON_STREAM_MARKERS", "非流式,non-stream")
MODEL_ALIASES = _env_map("MODEL_ALIASES")
FAKE_STREAM_CHUNK_SIZE = int(os.environ.get("FAKE_STREAM_CHUNK_SIZE", "24"))
JSON_MODE_MODELS = _env_list("JSON_MODE_MODELS", "gpt-4,gpt-4-turbo,gpt-4o,gpt-4o-mini,gpt-3.5-turbo")

# Rate limits for the AI endpoints (per IP)
CHAT_RATE_LIMIT_PER_MINUTE = int(os.environ.get("CHAT_RATE_LIMIT_PER_MINUTE", "10"))
CHAT_DAILY_CAP = int(os.environ.get("CHAT_DAILY_CAP", "200"))

# Statistics display thresholds (view layer contract)
RATE_GOOD_THRESHOLD = float(os.environ.get("RATE_GOOD_THRESHOLD", "0.95"))
RATE_WARN_THRESHOLD = float(os.environ.get("RATE_WARN_THRESHOLD", "0.90"))
COUNT_WARN_MAX = int(os.environ.get("COUNT_WARN_MAX", "3"))

# In-memory generation sessions: idle ones expire, least recently used go first past MAX_SESSIONS
SESSION_TTL_SECONDS = int(os.environ.get("SESSION_TTL_SECONDS", "86400"))
MAX_SESSIONS = int(os.environ.get("MAX_SESSIONS", "1000"))


def get_openai_api_key():
    """Return API key; reload .env then read from env."""
    load_dotenv(_ENV_FILE)
    load_dotenv()
    return (os.environ.get("OPENAI_API_KEY") or "").strip()


@dataclass(frozen=True)
class GenerationSettings:
    """Everything the pipeline needs from the outside world, passed in explicitly."""

    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    default_model: str = "gpt-4o-mini"
    temperature: float = 0.3
    max_tokens: int = 8192
    timeout_ms: int = 180000
    max_attempts: int = 3
    retry_backoff_seconds: float = 2.0
    max_prompt_length: int = 2000
    default_row_count: int = 5
    fake_stream_markers: Tuple[str, ...] = ("假流式", "fake-stream")
    real_stream_markers: Tuple[str, ...] = ("流式", "real-stream")
    non_stream_markers: Tuple[str, ...] = ("非流式", "non-stream")
    model_aliases: Dict[str, str] = field(default_factory=dict)
    fake_stream_chunk_size: int = 24
    json_mode_models: Tuple[str, ...] = ("gpt-4", "gpt-4-turbo", "gpt-4o", "gpt-4o-mini", "gpt-3.5-turbo")
    rate_limit_per_minute: int = 10
    daily_cap: int = 200
    rate_good_threshold: float = 0.95
    rate_warn_threshold: float = 0.90
    count_warn_max: int = 3
    session_ttl_seconds: int = 86400
    max_sessions: int = 1000


def get_generation_settings(**overrides):
    """Snapshot the module config (and the current API key) into a GenerationSettings."""
    values = dict(
        api_key=get_openai_api_key(),
        base_url=OPENAI_BASE_URL,
        default_model=OPENAI_MODEL,
        temperature=OPENAI_TEMPERATURE,
        max_tokens=OPENAI_MAX_TOKENS,
        timeout_ms=REQUEST_TIMEOUT_MS,
        max_attempts=MAX_ATTEMPTS,
        retry_backoff_seconds=RETRY_BACKOFF_SECONDS,
        max_prompt_length=MAX_PROMPT_LENGTH,
        default_row_count=DEFAULT_ROW_COUNT,
        fake_stream_markers=FAKE_STREAM_MARKERS,
        real_stream_markers=REAL_STREAM_MARKERS,
        non_stream_markers=NON_STREAM_MARKERS,
        model_aliases=dict(MODEL_ALIASES),
        fake_stream_chunk_size=FAKE_STREAM_CHUNK_SIZE,
        json_mode_models=JSON_MODE_MODELS,
        rate_limit_per_minute=CHAT_RATE_LIMIT_PER_MINUTE,
        daily_cap=CHAT_DAILY_CAP,
        rate_good_threshold=RATE_GOOD_THRESHOLD,
        rate_warn_threshold=RATE_WARN_THRESHOLD,
        count_warn_max=COUNT_WARN_MAX,
        session_ttl_seconds=SESSION_TTL_SECONDS,
        max_sessions=MAX_SESSIONS,
    )
    values.update(overrides)
    return GenerationSettings(**values)
