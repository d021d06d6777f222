"""
Centralized Configuration Management for the iris workflow.

Single source of truth for paths, API credentials, model selection and the
workflow tunables (chapter count, recent post window, CTA service targets).
Every section reads the environment and an optional .env file.

Usage:
    from iris_workflow.config import config
    limit = config.workflow.RECENT_POSTS_LIMIT
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _get_project_root() -> Path:
    """Get project root directory (works cross-platform)."""
    # This file is at iris_workflow/config.py, so parent.parent is project root
    return Path(__file__).resolve().parent.parent


class PathConfig(BaseModel):
    """Path configuration - all paths derived from PROJECT_ROOT."""
    PROJECT_ROOT: Path = Field(default_factory=_get_project_root)

    model_config = {"arbitrary_types_allowed": True}

    @computed_field
    @property
    def LOGS_DIR(self) -> Path:
        """Logs directory."""
        custom = os.getenv("IRIS_LOGS_DIR")
        path = Path(custom) if custom else self.PROJECT_ROOT / "logs"
        path.mkdir(parents=True, exist_ok=True)
        return path

    @computed_field
    @property
    def DATA_DIR(self) -> Path:
        """Directory for the local SQLite database."""
        custom = os.getenv("IRIS_DATA_DIR")
        path = Path(custom) if custom else self.PROJECT_ROOT / ".data"
        path.mkdir(parents=True, exist_ok=True)
        return path


class APIConfig(BaseSettings):
    """API keys and endpoints."""

    OPENAI_API_KEY: Optional[str] = None
    # Any OpenAI-compatible endpoint (DeepSeek proxy, Groq, ...)
    OPENAI_BASE_URL: Optional[str] = None
    DATABASE_URL: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def has_generation_key(self) -> bool:
        return bool(self.OPENAI_API_KEY)


class ModelConfig(BaseSettings):
    """Model selection for the generation client."""

    GENERATION_MODEL: str = "gpt-4o-mini"
    GENERATION_TEMPERATURE: float = 0.7

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


class WorkflowConfig(BaseModel):
    """Workflow tunables."""

    # Chapters are <span id="paragraphe-N"> blocks, N = 1..CHAPTER_COUNT
    CHAPTER_COUNT: int = 6
    RECENT_POSTS_LIMIT: int = 10
    IMAGES_PER_KEYWORD: int = 5

    # Call-to-action targets offered to the model (url + description)
    SERVICE_MAPPINGS: List[Dict[str, str]] = Field(default=[
        {
            "key": "entretien-jardin",
            "url": "https://www.jardin-iris.be/jardinier-paysagiste-service/entretien-de-jardin.html",
            "description": "entretien de jardin, tonte, taille de haies, désherbage, soin des massifs",
            "link_text": "Découvrir notre service d'entretien de jardin",
        },
        {
            "key": "creation-amenagement",
            "url": "https://www.jardin-iris.be/jardinier-paysagiste-service/creation-amenagement-de-jardin.html",
            "description": "création et aménagement de jardin, design paysager, projet d'aménagement extérieur",
            "link_text": "Découvrir notre service de création et aménagement",
        },
        {
            "key": "plantations-resilientes",
            "url": "https://www.jardin-iris.be/jardinier-paysagiste-service/plantations.html",
            "description": "plantations résilientes, arbres, arbustes adaptés au climat, végétaux durables",
            "link_text": "Découvrir notre service de plantations résilientes",
        },
        {
            "key": "taille-haie",
            "url": "https://www.jardin-iris.be/jardinier-paysagiste-service/taille-de-haie.html",
            "description": "taille de haie, élagage de haies, sculpture de haies, entretien de haies",
            "link_text": "Découvrir notre service de taille de haie",
        },
        {
            "key": "culture-potagere",
            "url": "https://www.jardin-iris.be/jardinier-paysagiste-service/culture-potagere.html",
            "description": "potager urbain, culture potagère, légumes, jardin potager",
            "link_text": "Découvrir notre service de potager urbain",
        },
        {
            "key": "tonte-pelouse",
            "url": "https://www.jardin-iris.be/jardinier-paysagiste-service/tonte-de-pelouse.html",
            "description": "tonte de pelouse, entretien de pelouse, soin de la pelouse",
            "link_text": "Découvrir notre service de tonte de pelouse",
        },
    ])

    def find_service(self, url: str) -> Optional[Dict[str, str]]:
        """Return the service mapping whose url matches, if any."""
        return next((s for s in self.SERVICE_MAPPINGS if s["url"] == url), None)


class IrisConfig(BaseSettings):
    """Main configuration class combining all config sections."""

    paths: PathConfig = Field(default_factory=PathConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    models: ModelConfig = Field(default_factory=ModelConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)

    # Application metadata
    APP_NAME: str = "iris-workflow"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development", alias="IRIS_ENV")
    LOG_LEVEL: str = Field(default="INFO", alias="IRIS_LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    def validate(self) -> Dict[str, Any]:
        """Validate configuration and return status."""
        issues = []
        warnings = []

        if not self.api.has_generation_key():
            warnings.append("OPENAI_API_KEY not set - OpenAIGenerationClient unavailable")

        if not self.api.DATABASE_URL:
            warnings.append("DATABASE_URL not set - using local SQLite under DATA_DIR")

        if self.workflow.CHAPTER_COUNT < 1:
            issues.append(f"CHAPTER_COUNT must be positive, got {self.workflow.CHAPTER_COUNT}")

        if self.workflow.RECENT_POSTS_LIMIT < 1:
            issues.append(f"RECENT_POSTS_LIMIT must be positive, got {self.workflow.RECENT_POSTS_LIMIT}")

        return {
            "valid": len(issues) == 0,
            "issues": issues,
            "warnings": warnings,
            "environment": self.ENVIRONMENT,
        }

    def __repr__(self) -> str:
        return (
            f"IrisConfig(\n"
            f"  environment={self.ENVIRONMENT},\n"
            f"  project_root={self.paths.PROJECT_ROOT},\n"
            f"  model={self.models.GENERATION_MODEL},\n"
            f"  chapter_count={self.workflow.CHAPTER_COUNT}\n"
            f")"
        )


# Singleton instance
config = IrisConfig()


def get_config() -> IrisConfig:
    """Get the configuration singleton."""
    return config
