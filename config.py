"""
Application configuration.

Values come from environment variables, optionally loaded from a ``.env``
file with python-dotenv. Use ``get_settings()`` rather than building
``Settings`` directly so the environment is read once.
"""
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from errors import ConfigurationError

load_dotenv()

GEMINI_PROVIDER = "gemini"
GITHUB_PROVIDER = "github"


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    def __init__(self):
        # AI provider
        self.ai_provider = os.environ.get("AI_PROVIDER", GEMINI_PROVIDER).strip().lower()
        self.gemini_api_key: Optional[str] = os.environ.get("GEMINI_API_KEY") or None
        self.gemini_model = os.environ.get("GEMINI_MODEL", "gemini-2.5-flash")
        self.gemini_api_url = os.environ.get(
            "GEMINI_API_URL", "https://generativelanguage.googleapis.com/v1beta"
        ).rstrip("/")
        # Alternate provider: GitHub Models through Azure AI Inference
        self.github_token: Optional[str] = os.environ.get("GITHUB_TOKEN") or None
        self.github_endpoint = os.environ.get("GITHUB_AI_ENDPOINT", "https://models.github.ai/inference")
        self.github_model = os.environ.get("GITHUB_AI_MODEL", "openai/gpt-4.1")
        self.ai_timeout = float(os.environ.get("AI_TIMEOUT_SECONDS", "60"))

        # Logging
        self.log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
        self.log_format = os.environ.get("LOG_FORMAT", "text").lower()

        # Files
        self.upload_dir = Path(os.environ.get("UPLOAD_DIR", "uploads"))
        self.export_dir = Path(os.environ.get("EXPORT_DIR", "exports"))
        self.max_file_size_mb = int(os.environ.get("MAX_FILE_SIZE_MB", "10"))
        self.max_file_size = self.max_file_size_mb * 1024 * 1024

        # Debounced AI validation
        self.ai_validation_debounce = float(os.environ.get("AI_VALIDATION_DEBOUNCE_SECONDS", "2.0"))
        self.auto_ai_validation = _env_bool("AUTO_AI_VALIDATION")

    def api_key(self) -> str:
        """Key for the configured provider; raises when it is not set."""
        if self.ai_provider == GEMINI_PROVIDER:
            if not self.gemini_api_key:
                raise ConfigurationError("GEMINI_API_KEY is not set in environment variables")
            return self.gemini_api_key
        if self.ai_provider == GITHUB_PROVIDER:
            if not self.github_token:
                raise ConfigurationError("Missing GITHUB_TOKEN env variable")
            return self.github_token
        raise ConfigurationError(f"Unknown AI_PROVIDER: {self.ai_provider!r} (expected gemini or github)")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
