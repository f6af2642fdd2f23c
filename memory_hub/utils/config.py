"""
Memory Hub — Configuration
Loads settings from environment variables / .env file.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple
from ..core.errors import ConfigurationError
def _default_db_path() -> str:
    return str(Path.home() / "memory-hub" / "global.db")
@dataclass
class HubConfig:
    """All configuration for the Memory Hub daemon."""
    # Storage
    db_path: str = ""
    log_filename: str = "memory.json"             # Per-project log file, relative to the project root
    # Watching
    watch_enabled: bool = True
    watch_debounce_ms: int = 300
    watch_rearm_interval: float = 2.0
    # Scheduling
    schedule_tick_seconds: float = 60.0
    # Reports
    report_templates_dir: str = ""                # Extra JSON report templates
    working_days: Tuple[int, ...] = (1, 2, 3, 4, 5)  # ISO weekdays, Monday = 1
    # Embeddings
    embedding_strategy: str = "hash"              # "hash" or "local"
    embedding_model: str = "all-MiniLM-L6-v2"     # For local sentence-transformers
    embedding_dimensions: int = 384               # Hash vector length (MiniLM-L6-v2 output dim)
    embedding_max_attempts: int = 4
    embedding_initial_backoff: float = 0.5
    embedding_max_backoff: float = 8.0
    embedding_min_text_length: int = 3
    # Timeouts / retries for external calls
    provider_timeout: float = 30.0
    action_timeout: float = 30.0
    action_max_attempts: int = 3
    # Retrieval
    retrieval_top_k: int = 8
    # Generation
    anthropic_api_key: str = ""
    generation_model: str = "claude-haiku-4-5-20251001"
    # Logging
    log_level: str = "INFO"
    log_file: str = ""
    # Debug
    debug_mode: bool = False

    def __post_init__(self):
        if not self.db_path:
            self.db_path = _default_db_path()

    @classmethod
    def from_env(cls, env_path: str = ".env") -> "HubConfig":
        """Load configuration from environment variables."""
        # Try loading .env file if it exists
        env_file = Path(env_path)
        if env_file.exists():
            _load_dotenv(env_file)
        try:
            return cls(
                db_path=os.path.expanduser(os.getenv("MEMORY_HUB_DB_PATH", _default_db_path())),
                log_filename=os.getenv("MEMORY_HUB_LOG_FILENAME", cls.log_filename),
                watch_enabled=_flag("WATCH_ENABLED", True),
                watch_debounce_ms=int(os.getenv("WATCH_DEBOUNCE_MS", str(cls.watch_debounce_ms))),
                schedule_tick_seconds=float(os.getenv("SCHEDULE_TICK_SECONDS", str(cls.schedule_tick_seconds))),
                report_templates_dir=os.path.expanduser(os.getenv("REPORT_TEMPLATES_DIR", "")),
                working_days=_int_list("WORKING_DAYS", cls.working_days),
                embedding_strategy=os.getenv("EMBEDDING_STRATEGY", cls.embedding_strategy).lower(),
                embedding_model=os.getenv("EMBEDDING_MODEL", cls.embedding_model),
                embedding_dimensions=int(os.getenv("EMBEDDING_DIMENSIONS", str(cls.embedding_dimensions))),
                embedding_max_attempts=int(os.getenv("EMBEDDING_MAX_ATTEMPTS", str(cls.embedding_max_attempts))),
                embedding_initial_backoff=float(os.getenv("EMBEDDING_INITIAL_BACKOFF", str(cls.embedding_initial_backoff))),
                embedding_max_backoff=float(os.getenv("EMBEDDING_MAX_BACKOFF", str(cls.embedding_max_backoff))),
                provider_timeout=float(os.getenv("PROVIDER_TIMEOUT", str(cls.provider_timeout))),
                action_timeout=float(os.getenv("ACTION_TIMEOUT", str(cls.action_timeout))),
                action_max_attempts=int(os.getenv("ACTION_MAX_ATTEMPTS", str(cls.action_max_attempts))),
                retrieval_top_k=int(os.getenv("RETRIEVAL_TOP_K", str(cls.retrieval_top_k))),
                anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
                generation_model=os.getenv("GENERATION_MODEL", cls.generation_model),
                log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
                log_file=os.getenv("LOG_FILE", ""),
                debug_mode=_flag("DEBUG_MODE", False),
            )
        except ValueError as e:
            raise ConfigurationError(f"invalid configuration value: {e}") from e

    def validate(self) -> List[str]:
        """Return list of warnings (non-fatal). Empty if fully configured."""
        warnings = []
        if not self.anthropic_api_key:
            warnings.append(
                "ANTHROPIC_API_KEY not set; ask() returns raw excerpts and "
                "daily_summary / generate_report actions will fail"
            )
        if self.embedding_strategy not in ("hash", "local"):
            warnings.append(f"Unknown EMBEDDING_STRATEGY {self.embedding_strategy!r}; use 'hash' or 'local'")
        if self.watch_debounce_ms < 0:
            warnings.append("WATCH_DEBOUNCE_MS is negative; treated as 0")
        if self.schedule_tick_seconds <= 0:
            warnings.append("SCHEDULE_TICK_SECONDS must be positive")
        if not self.working_days or any(d < 1 or d > 7 for d in self.working_days):
            warnings.append("WORKING_DAYS must list ISO weekdays 1-7; reports fall back to the previous day")
        return warnings

    @property
    def has_api_key(self) -> bool:
        """Whether an Anthropic API key is configured."""
        return bool(self.anthropic_api_key)
def _flag(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").strip().lower() in ("1", "true", "yes", "on")
def _int_list(name: str, default: Tuple[int, ...]) -> Tuple[int, ...]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return tuple(int(part) for part in value.split(",") if part.strip())
def _load_dotenv(path: Path):
    """Minimal .env loader, no external dependency needed."""
    try:
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip().strip("'\"")
                if key and not os.environ.get(key):
                    os.environ[key] = value
    except OSError:
        pass  # Unreadable .env is the same as no .env
