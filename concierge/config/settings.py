# concierge/config/settings.py

from dataclasses import dataclass, field
import math
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Expose BASE_DIR for other modules
BASE_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

SYSTEM_PROMPT_PATH = BASE_DIR / "concierge" / "config" / "system_prompt.txt"

MIN_CHUNK_SIZE = 5000
DEFAULT_CHUNK_SIZE = 10000
MIN_SPEND_LIMIT_USD = 0.001

RECOVERY_POLICIES = {"placeholder", "discard"}
EMAIL_BACKENDS = {"imap", "gmail"}


@dataclass
class Settings:
    # LLM endpoint (any OpenAI-compatible chat completions API)
    openai_api_key: str = ""
    openai_base_url: str = "https://openrouter.ai/api/v1"
    model: str = "google/gemini-3-flash-preview"
    summary_model: str = "google/gemini-3-flash-preview"
    reasoning_effort: Optional[str] = "high"

    # Quality/latency tuning knobs
    openai_timeout_seconds: float = 120.0
    openai_max_attempts: int = 3

    # Storage
    data_dir: str = str(BASE_DIR / "concierge" / "data")

    # Archival
    chunk_size: int = DEFAULT_CHUNK_SIZE
    archive_multiplier: int = 2
    consolidation_group_size: int = 4
    recovery_policy: str = "placeholder"
    recovery_attempts: int = 3
    ledger_retention_days: int = 500

    # Turn loop
    max_tool_rounds: int = 25

    # Spend ceilings (USD); None disables the daily/monthly checks
    spend_limit_per_turn_usd: float = 0.20
    spend_limit_daily_usd: Optional[float] = None
    spend_limit_monthly_usd: Optional[float] = None

    # Fallback pricing when the provider does not report a cost
    prompt_price_per_mtok: float = 0.0
    completion_price_per_mtok: float = 0.0

    # Persona
    assistant_name: Optional[str] = None
    user_name: Optional[str] = None
    user_context: Optional[str] = None

    # Tool feature toggles
    email_backend: Optional[str] = None
    serper_api_key: str = ""
    disabled_tools: frozenset = field(default_factory=frozenset)

    @property
    def archive_trigger_tokens(self) -> int:
        return self.chunk_size * self.archive_multiplier

    @property
    def db_path(self) -> str:
        return str(Path(self.data_dir) / "concierge.db")

    @property
    def archive_dir(self) -> str:
        return str(Path(self.data_dir) / "archive")


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
        # safeguard: enforce positive
        return value if value > 0 and math.isfinite(value) else default
    except ValueError:
        return default


def _parse_optional_limit_env(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value) or value < MIN_SPEND_LIMIT_USD:
        return None
    return value


def _parse_int_env(name: str, default: int, min_val: int = 0, max_val: int = 10) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
        # safeguard: clamp into sane range
        return max(min_val, min(max_val, value))
    except ValueError:
        return default


def _parse_str_env(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name, "").strip()
    return raw or default


def load_settings() -> Settings:
    """
    Load configuration from environment variables (and defaults).
    Ensures the data and archive directories exist.

    The API key is not required here; the LLM client checks it when it is built,
    so tooling that only reads the archive can run without one.
    """
    # --- Chunk size (floor enforced, falls back to the default below it) ---
    raw_chunk = os.getenv("CONCIERGE_CHUNK_SIZE", "").strip()
    chunk_size = DEFAULT_CHUNK_SIZE
    if raw_chunk:
        try:
            parsed = int(raw_chunk)
            if parsed >= MIN_CHUNK_SIZE:
                chunk_size = parsed
        except ValueError:
            pass

    # --- Recovery policy (normalized + safeguarded) ---
    recovery_policy = (os.getenv("CONCIERGE_RECOVERY_POLICY", "placeholder").strip().lower()
                       or "placeholder")
    if recovery_policy not in RECOVERY_POLICIES:
        recovery_policy = "placeholder"

    # --- Email backend (None when unset or unknown) ---
    email_backend = (os.getenv("CONCIERGE_EMAIL_BACKEND", "").strip().lower() or None)
    if email_backend not in EMAIL_BACKENDS:
        email_backend = None

    disabled = os.getenv("CONCIERGE_DISABLED_TOOLS", "")
    disabled_tools = frozenset(t.strip() for t in disabled.split(",") if t.strip())

    # --- Data dir (optional override) ---
    default_data_dir = BASE_DIR / "concierge" / "data"
    data_dir = Path(_parse_str_env("CONCIERGE_DATA_DIR", str(default_data_dir)))
    (data_dir / "archive").mkdir(parents=True, exist_ok=True)

    settings = Settings(
        openai_api_key=_parse_str_env("OPENAI_API_KEY", ""),
        openai_base_url=_parse_str_env("OPENAI_BASE_URL", "https://openrouter.ai/api/v1"),
        model=_parse_str_env("CONCIERGE_MODEL", "google/gemini-3-flash-preview"),
        summary_model=_parse_str_env("CONCIERGE_SUMMARY_MODEL", "google/gemini-3-flash-preview"),
        reasoning_effort=_parse_str_env("CONCIERGE_REASONING_EFFORT", "high"),
        openai_timeout_seconds=_parse_float_env("OPENAI_TIMEOUT_SECONDS", 120.0),
        openai_max_attempts=_parse_int_env("OPENAI_MAX_ATTEMPTS", 3, min_val=1, max_val=6),
        data_dir=str(data_dir),
        chunk_size=chunk_size,
        archive_multiplier=_parse_int_env("CONCIERGE_ARCHIVE_MULTIPLIER", 2, min_val=2, max_val=8),
        consolidation_group_size=_parse_int_env("CONCIERGE_CONSOLIDATION_GROUP", 4, min_val=2, max_val=16),
        recovery_policy=recovery_policy,
        recovery_attempts=_parse_int_env("CONCIERGE_RECOVERY_ATTEMPTS", 3, min_val=1, max_val=10),
        max_tool_rounds=_parse_int_env("CONCIERGE_MAX_TOOL_ROUNDS", 25, min_val=1, max_val=200),
        spend_limit_per_turn_usd=max(
            MIN_SPEND_LIMIT_USD, _parse_float_env("CONCIERGE_SPEND_LIMIT_TURN_USD", 0.20)
        ),
        spend_limit_daily_usd=_parse_optional_limit_env("CONCIERGE_SPEND_LIMIT_DAILY_USD"),
        spend_limit_monthly_usd=_parse_optional_limit_env("CONCIERGE_SPEND_LIMIT_MONTHLY_USD"),
        prompt_price_per_mtok=_parse_float_env("CONCIERGE_PROMPT_PRICE_PER_MTOK", 0.0),
        completion_price_per_mtok=_parse_float_env("CONCIERGE_COMPLETION_PRICE_PER_MTOK", 0.0),
        assistant_name=_parse_str_env("CONCIERGE_ASSISTANT_NAME"),
        user_name=_parse_str_env("CONCIERGE_USER_NAME"),
        user_context=_parse_str_env("CONCIERGE_USER_CONTEXT"),
        email_backend=email_backend,
        serper_api_key=_parse_str_env("SERPER_API_KEY", ""),
        disabled_tools=disabled_tools,
    )

    return settings
