"""Runtime configuration: environment defaults, optional JSON file, CLI overrides."""

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

# Configuration defaults
DEFAULT_API_URL = os.getenv("OLLAMA_API_URL", "http://localhost:11434/api/generate")
DEFAULT_VISION_MODEL = os.getenv("VISION_MODEL", "llava:13b")
DEFAULT_TEXT_MODEL = os.getenv("TEXT_MODEL", "llama3.1:8b")
DEFAULT_API_TIMEOUT_SECONDS = float(os.getenv("API_TIMEOUT_SECONDS", "120"))
DEFAULT_MAX_RETRIES = int(os.getenv("MAX_RETRIES", "5"))
DEFAULT_RETRY_DELAY_SECONDS = float(os.getenv("RETRY_DELAY_SECONDS", "3"))
DEFAULT_MAX_PAYLOAD_MB = float(os.getenv("MAX_PAYLOAD_MB", "20"))
DEFAULT_CIRCUIT_MAX_FAILURES = int(os.getenv("CIRCUIT_MAX_FAILURES", "5"))
DEFAULT_CIRCUIT_COOLDOWN_SECONDS = float(os.getenv("CIRCUIT_COOLDOWN_SECONDS", "300"))
DEFAULT_FILENAME_MAX_LENGTH = int(os.getenv("FILENAME_MAX_LENGTH", "100"))
DEFAULT_MAX_FILE_SIZE_MB = float(os.getenv("MAX_FILE_SIZE_MB", "50"))
DEFAULT_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".bmp", ".gif", ".tif", ".tiff")
DEFAULT_EXCLUDED_FOLDERS = ("renamed", "original")

RENAMED_FOLDER = "renamed"
ORIGINAL_FOLDER = "original"


class RenamerConfig(BaseModel):
    """Every option the batch, the pipeline and the inference client consume."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    working_directory: Path = Path()
    excluded_folders: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDED_FOLDERS))
    supported_extensions: list[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    max_file_size_mb: float = Field(default=DEFAULT_MAX_FILE_SIZE_MB, gt=0)

    api_url: str = DEFAULT_API_URL
    api_timeout_seconds: float = Field(default=DEFAULT_API_TIMEOUT_SECONDS, gt=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    retry_delay_seconds: float = Field(default=DEFAULT_RETRY_DELAY_SECONDS, ge=0)
    max_payload_mb: float = Field(default=DEFAULT_MAX_PAYLOAD_MB, gt=0)
    circuit_max_failures: int = Field(default=DEFAULT_CIRCUIT_MAX_FAILURES, ge=1)
    circuit_cooldown_seconds: float = Field(default=DEFAULT_CIRCUIT_COOLDOWN_SECONDS, ge=0)

    vision_model: str = DEFAULT_VISION_MODEL
    text_model: str = DEFAULT_TEXT_MODEL

    preserve_metadata: bool = True
    filename_max_length: int = Field(default=DEFAULT_FILENAME_MAX_LENGTH, ge=30)
    randomize_order: bool = False
    add_date_prefix: bool = False
    folder_date_fallback: bool = True
    workers: int = Field(default=1, ge=1, le=16)

    @field_validator("supported_extensions")
    @classmethod
    def _normalize_extensions(cls, value: list[str]) -> list[str]:
        """
        Lowercase extensions and make sure each has a leading dot.

        Examples:
            >>> RenamerConfig(supported_extensions=["JPG", ".png", " "]).supported_extensions
            ['.jpg', '.png']

        """
        normalized = [f".{ext.strip().lstrip('.').lower()}" for ext in value if ext.strip(" .")]
        return list(dict.fromkeys(normalized))

    @field_validator("excluded_folders")
    @classmethod
    def _strip_folders(cls, value: list[str]) -> list[str]:
        return [name.strip() for name in value if name.strip()]

    @property
    def max_payload_bytes(self) -> int:
        return int(self.max_payload_mb * 1024 * 1024)

    @property
    def max_file_size_bytes(self) -> int:
        return int(self.max_file_size_mb * 1024 * 1024)

    @classmethod
    def from_file(cls, path: Path, **overrides: Any) -> "RenamerConfig":  # noqa: ANN401
        """
        Load a JSON configuration file, then apply non-None overrides on top.

        Raises:
            ConfigError: if the file cannot be read or does not validate.

        """
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            msg = f"Cannot read configuration file {path}: {exc}"
            raise ConfigError(msg) from exc
        try:
            config = cls.model_validate_json(raw)
        except ValidationError as exc:
            msg = f"Invalid configuration file {path}: {exc}"
            raise ConfigError(msg) from exc
        return config.with_overrides(**overrides)

    def with_overrides(self, **overrides: Any) -> "RenamerConfig":  # noqa: ANN401
        """Return a validated copy with every override that is not None applied."""
        updates = {key: value for key, value in overrides.items() if value is not None}
        if not updates:
            return self
        try:
            return self.model_validate({**self.model_dump(), **updates})
        except ValidationError as exc:
            msg = f"Invalid option: {exc}"
            raise ConfigError(msg) from exc
