"""
Configuration models for outline-sync.

Handles the Outline connection, watch filters, dispatcher tuning, the
periodic reconciler and the per-tree sync configuration.
"""

from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Dict, List, Optional, Set
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .records import MergePolicy


CONFIG_DIR_NAME = ".outline-sync"


def default_collection_mapping() -> Dict[str, str]:
    return {
        "projects": "Projects",
        "guides": "Guides",
        "technical": "Technical Documentation",
        "personal": "Personal Notes",
        "research": "Research",
    }


class OutlineConfig(BaseModel):
    """Outline API connection settings"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    url: str = "http://localhost:3000"
    api_key: Optional[str] = None
    timeout: float = Field(default=30.0, gt=0, le=300.0)

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Outline URL format"""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('Outline URL must start with http:// or https://')
        return v.rstrip('/')

    @property
    def api_base(self) -> str:
        return f"{self.url}/api"

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


class WatchConfig(BaseModel):
    """Which files are synchronized and how raw events are coalesced"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    include_patterns: List[str] = Field(
        default_factory=lambda: ["*.md", "*.markdown", "*.mdx"]
    )
    exclude_dirs: Set[str] = Field(
        default_factory=lambda: {
            ".git", "node_modules", ".cache", ".DS_Store",
            CONFIG_DIR_NAME, "__pycache__", ".venv", "venv",
        }
    )

    debounce_seconds: float = Field(default=2.0, ge=0.0, le=60.0)
    move_window_seconds: float = Field(default=1.0, ge=0.0, le=30.0)
    max_file_size_mb: int = Field(default=50, ge=1, le=500)
    queue_max_size: int = Field(default=1000, ge=1)

    @field_validator('include_patterns')
    @classmethod
    def validate_patterns(cls, v: List[str]) -> List[str]:
        """Validate glob patterns"""
        patterns = [pattern.strip() for pattern in v if pattern.strip()]
        if not patterns:
            raise ValueError('Pattern list cannot be empty')
        return patterns

    def should_watch(self, file_path: Path) -> bool:
        """Check if a file belongs to the synchronized tree"""
        path = Path(file_path)
        if any(part in self.exclude_dirs for part in path.parts[:-1]):
            return False
        if path.name in self.exclude_dirs:
            return False
        return any(fnmatch(path.name, pattern) for pattern in self.include_patterns)

    def is_excluded_dir(self, name: str) -> bool:
        return name in self.exclude_dirs

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


class DispatcherConfig(BaseModel):
    """Retry, rate limiting and circuit breaker tuning"""
    model_config = ConfigDict(validate_assignment=True)

    max_concurrency: int = Field(default=5, ge=1, le=64)
    max_attempts: int = Field(default=5, ge=1, le=20)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=60.0, ge=0.0)
    jitter: float = Field(default=0.5, ge=0.0, le=1.0)

    # Requests per minute per endpoint category
    rate_limits: Dict[str, float] = Field(
        default_factory=lambda: {
            "create": 100.0,
            "update": 100.0,
            "delete": 100.0,
            "list": 100.0,
        }
    )
    burst: Optional[int] = Field(default=None, ge=1)

    breaker_failure_ratio: float = Field(default=0.5, gt=0.0, le=1.0)
    breaker_window_seconds: float = Field(default=60.0, gt=0.0)
    breaker_min_calls: int = Field(default=5, ge=1)
    breaker_cooldown_seconds: float = Field(default=30.0, ge=0.0)

    conflict_reevaluations: int = Field(default=2, ge=0, le=10)

    @field_validator('rate_limits')
    @classmethod
    def validate_rate_limits(cls, v: Dict[str, float]) -> Dict[str, float]:
        for category, rate in v.items():
            if rate <= 0:
                raise ValueError(f'Rate limit for {category} must be positive')
        return v

    def rate_for(self, category: str) -> float:
        return self.rate_limits.get(category, 100.0)


class ReconcilerConfig(BaseModel):
    """Periodic full-tree reconciliation"""
    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = True
    interval_minutes: float = Field(default=360.0, gt=0)
    initial_delay_minutes: float = Field(default=1.0, ge=0)
    concurrency: int = Field(default=5, ge=1, le=64)
    timeout_minutes: float = Field(default=60.0, gt=0)

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60

    @property
    def initial_delay_seconds(self) -> float:
        return self.initial_delay_minutes * 60

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_minutes * 60


class SyncConfig(BaseModel):
    """Configuration for one synchronized markdown tree"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        use_enum_values=False
    )

    root: Path
    state_dir: Optional[Path] = None

    default_collection: str = "Inbox"
    collection_mapping: Dict[str, str] = Field(default_factory=default_collection_mapping)
    merge_policy: MergePolicy = MergePolicy.REMOTE_WINS
    lease_seconds: float = Field(default=300.0, gt=0)
    worker_count: int = Field(default=4, ge=1, le=64)

    outline: OutlineConfig = Field(default_factory=OutlineConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)

    @field_validator('root')
    @classmethod
    def validate_root(cls, v: Path) -> Path:
        """Validate the synchronized tree exists"""
        if not v.exists():
            raise ValueError(f'Sync root does not exist: {v}')
        if not v.is_dir():
            raise ValueError(f'Sync root is not a directory: {v}')
        return v.resolve()

    @field_validator('default_collection')
    @classmethod
    def validate_default_collection(cls, v: str) -> str:
        if not v:
            raise ValueError('Default collection cannot be empty')
        return v

    def get_state_dir(self) -> Path:
        """Get directory holding identity and dead-letter state"""
        state_dir = self.state_dir or (self.root / CONFIG_DIR_NAME)
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir

    def get_config_file(self) -> Path:
        return self.root / CONFIG_DIR_NAME / "config.json"

    @property
    def identity_file(self) -> Path:
        return self.get_state_dir() / "identity.json"

    @property
    def dead_letter_file(self) -> Path:
        return self.get_state_dir() / "dead_letters.json"

    @property
    def is_initialized(self) -> bool:
        return self.get_config_file().exists()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        data = self.model_dump(mode='json')
        data['watch']['exclude_dirs'] = sorted(self.watch.exclude_dirs)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncConfig':
        """Create from dictionary"""
        data = dict(data)
        if 'root' in data:
            data['root'] = Path(data['root'])
        if data.get('state_dir'):
            data['state_dir'] = Path(data['state_dir'])
        return cls(**data)


class GlobalSettings(BaseSettings):
    """Global application settings with environment variable support"""
    model_config = SettingsConfigDict(
        env_prefix="OUTLINE_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    global_config_dir: Path = Field(
        default_factory=lambda: Path.home() / ".outline-sync"
    )

    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_to_file: bool = False

    def get_log_file(self) -> Optional[Path]:
        """Get log file path if logging to file is enabled"""
        if not self.log_to_file:
            return None
        log_dir = self.global_config_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir / "outline-sync.log"
