"""Configuration management using Pydantic for validation."""

from pathlib import Path
from typing import Any, Dict, List, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderName = Literal["claude", "openai", "gemini"]

DEFAULT_DETECTION_TYPES = ["Decision", "Risk", "Action Item", "Task"]


class LLMConfig(BaseSettings):
    """LLM configuration."""

    primary_provider: ProviderName = "claude"
    fallback_provider: ProviderName | None = "openai"
    temperature: float = 0.3
    timeout: int = 60
    retry_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_backoff: float = Field(default=8.0, ge=0.0)
    jitter: float = Field(default=0.5, ge=0.0)
    openai_base_url: str | None = None
    anthropic_base_url: str | None = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    prompt_template: str = "config/extraction_prompts.yaml"

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate temperature is between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError("Temperature must be between 0 and 1")
        return v


class ContextConfig(BaseSettings):
    """Context assembly limits."""

    max_related_entities: int = 10
    max_reference_documents: int = 5
    max_conversation_turns: int = 10
    max_keywords: int = Field(default=10, ge=1, le=10)
    prompt_entity_limit: int = 5
    prompt_document_limit: int = 3


class WorkflowConfig(BaseSettings):
    """Decision engine defaults (used when a project has no sidecar settings row)."""

    auto_create_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    high_authority_level: int = Field(default=3, ge=0, le=5)
    detection_types: List[str] = Field(default_factory=lambda: list(DEFAULT_DETECTION_TYPES))
    default_approver_name: str = "Project Lead"
    max_workers: int = Field(default=1, ge=1)


class CurationConfig(BaseSettings):
    """Curation configuration."""

    enable_audit_trail: bool = True
    audit_path: str = "logs/curation_audit.jsonl"


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["json", "text"] = "text"
    file: str = "logs/sidecar.log"
    max_size_mb: int = 100
    backup_count: int = 5


class DatabaseConfig(BaseSettings):
    """Database configuration from environment variables."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    neo4j_uri: str = Field(default="bolt://localhost:7687")
    neo4j_user: str = Field(default="neo4j")
    neo4j_password: str = Field(default="sidecar2024")
    neo4j_database: str = Field(default="neo4j")


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    # Configuration sections
    llm: LLMConfig = Field(default_factory=LLMConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    curation: CurationConfig = Field(default_factory=CurationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Environment variables
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    google_ai_api_key: str = ""

    def api_key_for(self, provider: str) -> str:
        """Return the configured API key for a provider (empty string if unset)."""
        keys = {
            "claude": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "gemini": self.google_ai_api_key,
        }
        return keys.get(provider, "")

    @staticmethod
    def _deep_merge_dict(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge two dicts (overrides win).

        This is used to apply environment-derived overrides on top of YAML defaults.
        """
        merged: Dict[str, Any] = dict(base)
        for key, value in overrides.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = Config._deep_merge_dict(merged[key], value)
            else:
                merged[key] = value
        return merged

    @classmethod
    def from_yaml(cls, yaml_path: str | Path = "config/config.yaml") -> "Config":
        """Load configuration from YAML file and environment variables.

        Precedence (highest to lowest):
        1) Environment variables / .env
        2) YAML file
        3) Model defaults

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            Config instance with loaded settings

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            yaml.YAMLError: If YAML file is invalid
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        if not isinstance(yaml_config, dict):
            raise ValueError(f"YAML config root must be a mapping/dict: {yaml_path}")

        # Nested BaseSettings (like DatabaseConfig) do NOT pick up plain env vars
        # (e.g. NEO4J_PASSWORD) through the parent model, so their env overrides
        # are computed separately and merged under "database".
        env_overrides = cls().model_dump(exclude_defaults=True)

        db_env_overrides = DatabaseConfig().model_dump(exclude_defaults=True)
        if db_env_overrides:
            env_overrides["database"] = cls._deep_merge_dict(
                (
                    yaml_config.get("database", {})
                    if isinstance(yaml_config.get("database", {}), dict)
                    else {}
                ),
                db_env_overrides,
            )

        merged = cls._deep_merge_dict(yaml_config, env_overrides)

        return cls(**merged)

    def validate_config(self) -> None:
        """Validate configuration settings.

        Raises:
            ValueError: If configuration is invalid
        """
        if self.llm.fallback_provider == self.llm.primary_provider:
            raise ValueError("Fallback provider must differ from the primary provider")

        unknown = [
            t for t in self.workflow.detection_types if t not in DEFAULT_DETECTION_TYPES
        ]
        if unknown:
            raise ValueError(f"Unknown detection types: {', '.join(unknown)}")


# Global configuration instance
_config: Config | None = None


def get_config() -> Config:
    """Get or create global configuration instance.

    Returns:
        Global Config instance

    Raises:
        RuntimeError: If configuration hasn't been initialized
    """
    global _config
    if _config is None:
        raise RuntimeError("Configuration not initialized. Call load_config() first.")
    return _config


def load_config(yaml_path: str | Path = "config/config.yaml") -> Config:
    """Load and validate configuration.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        Loaded and validated Config instance
    """
    global _config
    _config = Config.from_yaml(yaml_path)
    _config.validate_config()
    return _config


def reset_config() -> None:
    """Reset global configuration (mainly for testing)."""
    global _config
    _config = None
