"""Configuration management for snaptext."""

import os
import tempfile
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Literal, Mapping, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator

from .errors import ConfigurationError


LOCAL_BACKEND = "local"

# Backend ids in display order; the local engine comes first.
BACKEND_IDS = ("local", "openai", "anthropic", "gemini", "grok", "deepseek")


class BackendConfig(BaseModel):
    """Credential and tuning state for one OCR backend."""

    backend_id: str
    api_key: Optional[str] = Field(default=None, repr=False)
    model: Optional[str] = None
    max_tokens: int = 1000
    temperature: float = 0.1

    @field_validator("max_tokens")
    @classmethod
    def validate_max_tokens(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_tokens must be positive")
        return v

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        if not 0 <= v <= 2:
            raise ValueError("temperature must be between 0 and 2")
        return v

    @property
    def has_credential(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    @property
    def enabled(self) -> bool:
        """The local backend is always enabled; remote ones need a key."""
        if self.backend_id == LOCAL_BACKEND:
            return True
        return self.has_credential


class CaptureConfig(BaseModel):
    screenshot_dir: Path = Field(default_factory=lambda: Path.home() / "Desktop")
    poll_interval_s: float = 2.0
    dedup_horizon_s: float = 10.0
    max_file_age_s: float = 10.0
    image_suffixes: List[str] = Field(
        default_factory=lambda: [".png", ".jpg", ".jpeg", ".tiff", ".tif", ".bmp", ".gif", ".heic", ".webp"]
    )

    @field_validator("poll_interval_s", "dedup_horizon_s", "max_file_age_s")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("intervals must be positive")
        return v


class OCRConfig(BaseModel):
    default_backend: str = LOCAL_BACKEND
    local_timeout_s: float = 10.0
    remote_timeout_s: float = 30.0
    languages: List[str] = Field(default_factory=lambda: ["en-US"])
    accuracy: Literal["fast", "accurate"] = "accurate"
    max_retries: int = 0

    @field_validator("local_timeout_s", "remote_timeout_s")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v


class HistoryConfig(BaseModel):
    path: Path = Field(default_factory=lambda: Path.home() / ".local" / "share" / "snaptext" / "history.jsonl")
    cap: int = 100
    # None compares against the whole history
    duplicate_window_s: Optional[float] = 24 * 3600


class BulkConfig(BaseModel):
    local_concurrency: int = 4
    remote_concurrency: int = 2
    commit: Literal["none", "end_of_batch", "per_item"] = "end_of_batch"

    @field_validator("local_concurrency", "remote_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("concurrency must be at least 1")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    to_file: bool = True


def default_backends() -> Dict[str, BackendConfig]:
    models = {
        "openai": "gpt-4o",
        "anthropic": "claude-3-5-sonnet-latest",
        "gemini": "gemini-1.5-flash",
    }
    return {bid: BackendConfig(backend_id=bid, model=models.get(bid)) for bid in BACKEND_IDS}


class Config(BaseModel):
    """Main configuration for snaptext."""

    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    ocr: OCRConfig = Field(default_factory=OCRConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    bulk: BulkConfig = Field(default_factory=BulkConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    backends: Dict[str, BackendConfig] = Field(default_factory=default_backends)
    source_path: Optional[Path] = Field(default=None, exclude=True)

    @field_validator("backends", mode="before")
    @classmethod
    def fill_backend_ids(cls, v):
        # YAML keys double as backend ids
        if isinstance(v, dict):
            filled = {}
            for key, value in v.items():
                if isinstance(value, dict):
                    value = {"backend_id": key, **value}
                filled[key] = value
            return filled
        return v

    @classmethod
    def candidates(cls) -> List[Path]:
        return [
            Path("snaptext.yaml"),
            Path.home() / ".config" / "snaptext" / "config.yaml",
            Path("/etc/snaptext/config.yaml"),
        ]

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML, or defaults when no file exists."""
        if config_path is None:
            for candidate in cls.candidates():
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                logger.info("No config file found, using defaults")
                return cls(source_path=cls.candidates()[1])

        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from: {config_path}")
        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Could not parse {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping, got {type(data).__name__}")

        try:
            config = cls(**data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

        # Backends missing from the file still get defaults
        for bid, backend in default_backends().items():
            config.backends.setdefault(bid, backend)
        config.source_path = config_path
        return config

    def save(self, config_path: Optional[Path] = None) -> None:
        """Save configuration to YAML atomically."""
        config_path = Path(config_path or self.source_path or self.candidates()[1])
        _atomic_yaml_dump(self.model_dump(mode="json"), config_path)


def _atomic_yaml_dump(data: dict, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".config-", suffix=".yaml", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class BackendConfigStore:
    """
    Atomic get-all/set-all access to the per-backend configuration.

    Readers get an immutable snapshot; ``set_all`` validates the new set,
    persists it and then swaps the snapshot reference, so nobody ever sees a
    half-updated configuration.
    """

    def __init__(self, config: Config, persist: bool = True):
        self._config = config
        self._persist = persist
        self._write_lock = threading.RLock()
        self._snapshot: Mapping[str, BackendConfig] = MappingProxyType(
            {bid: backend.model_copy() for bid, backend in config.backends.items()}
        )

    def get_all(self) -> Mapping[str, BackendConfig]:
        return self._snapshot

    def get(self, backend_id: str) -> BackendConfig:
        backend = self._snapshot.get(backend_id)
        if backend is None:
            raise ConfigurationError(f"Unknown backend: {backend_id}")
        return backend

    def set_all(self, backends: Mapping[str, BackendConfig]) -> None:
        validated = {
            bid: BackendConfig.model_validate({**backend.model_dump(), "backend_id": bid})
            for bid, backend in backends.items()
        }
        with self._write_lock:
            if self._persist:
                updated = self._config.model_copy(update={"backends": validated})
                updated.save(self._config.source_path)
            self._config = self._config.model_copy(update={"backends": validated})
            self._snapshot = MappingProxyType(validated)
        logger.info(f"Backend configuration updated ({len(validated)} backends)")

    def update(self, backend_id: str, **fields) -> BackendConfig:
        """Change fields of one backend by rewriting the whole set."""
        with self._write_lock:
            current = dict(self._snapshot)
            base = current.get(backend_id) or BackendConfig(backend_id=backend_id)
            current[backend_id] = BackendConfig.model_validate({**base.model_dump(), **fields})
            self.set_all(current)
            return self._snapshot[backend_id]
