"""
Configuration for Scan Review Service
=====================================

Environment variables:
- LLM_MODE: none|gemini|openrouter (default: gemini)
- GEMINI_API_KEY: API key for Gemini
- GEMINI_MODEL: Vision model to use (default: gemini-2.5-flash)
- OPENROUTER_API_KEY: API key for OpenRouter
- OPENROUTER_MODEL: Vision model to use (default: google/gemini-2.5-flash)
- LLM_TIMEOUT: Per-call timeout in seconds (default: 60)
- ANALYSIS_BATCH_SIZE: Images analyzed concurrently per batch (default: 3)
- EXPECTED_MODALITY: Scan type the images must be (default: Pelvic MRI)
- EXAM_TITLE: First line of the report template
- REQUIRE_PEER_REVIEW: Disallow finalizing straight from draft (default: false)
- STATE_NAMESPACE: Persistence key for the application state
"""

from typing import Optional, List
from pydantic_settings import BaseSettings
from functools import lru_cache

from .schemas import LLMMode


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Inference backend
    llm_mode: LLMMode = LLMMode.GEMINI

    # Gemini (native vision API)
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    # OpenRouter (OpenAI-compatible, image_url content parts)
    openrouter_api_key: Optional[str] = None
    openrouter_model: str = "google/gemini-2.5-flash"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"

    # Timeouts (seconds)
    llm_timeout: int = 60

    # Analysis settings
    analysis_batch_size: int = 3
    expected_modality: str = "Pelvic MRI"
    specialty_focus: str = "Endometriosis"
    max_tokens: int = 2048

    # Report / workflow
    exam_title: str = "MRI PELVIS FOR ENDOMETRIOSIS"
    require_peer_review: bool = False

    # Persistence
    state_namespace: str = "scan_review_state_v2"

    # Service info
    service_version: str = "1.0.0"

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def inference_api_key(self) -> Optional[str]:
        """API key for the active backend (None when not configured)"""
        if self.llm_mode == LLMMode.GEMINI:
            return self.gemini_api_key
        if self.llm_mode == LLMMode.OPENROUTER:
            return self.openrouter_api_key
        return None

    def validate_llm_config(self) -> List[str]:
        """Validate LLM configuration, return list of warnings"""
        warnings = []

        if self.llm_mode == LLMMode.NONE:
            warnings.append("LLM_MODE=none - image analysis is disabled")

        elif self.llm_mode == LLMMode.GEMINI:
            if not self.gemini_api_key:
                warnings.append("LLM_MODE=gemini but GEMINI_API_KEY not set")

        elif self.llm_mode == LLMMode.OPENROUTER:
            if not self.openrouter_api_key:
                warnings.append("LLM_MODE=openrouter but OPENROUTER_API_KEY not set")

        if self.analysis_batch_size < 1:
            warnings.append("ANALYSIS_BATCH_SIZE must be >= 1, using 1")

        return warnings


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Convenience function
def get_llm_mode() -> LLMMode:
    """Get current LLM mode"""
    return get_settings().llm_mode
