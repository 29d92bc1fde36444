"""
LLM Provider configuration for Conversational Browser.

Provides provider-specific endpoints, default models and credential checks.
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import ProviderNotConfigured


class Provider(str, Enum):
    """Supported LLM providers."""
    LM_STUDIO = "lm_studio"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


# Names accepted in LLM_PROVIDER besides the enum values
PROVIDER_ALIASES = {
    "claude": Provider.ANTHROPIC,
    "anthropic": Provider.ANTHROPIC,
    "gemini": Provider.GOOGLE,
    "google": Provider.GOOGLE,
    "vision": Provider.LM_STUDIO,
    "local": Provider.LM_STUDIO,
    "lm_studio": Provider.LM_STUDIO,
    "lmstudio": Provider.LM_STUDIO,
    "openai": Provider.OPENAI,
}

# Default endpoints for each provider
PROVIDER_ENDPOINTS = {
    Provider.LM_STUDIO: "http://127.0.0.1:1234/v1",
    Provider.OPENAI: "https://api.openai.com/v1",
    Provider.ANTHROPIC: "https://api.anthropic.com/v1",
    Provider.GOOGLE: "https://generativelanguage.googleapis.com/v1beta",
}

# Default models for each provider
PROVIDER_DEFAULT_MODELS = {
    Provider.LM_STUDIO: "qwen2.5-vl-7b-instruct",
    Provider.OPENAI: "gpt-4o-mini",
    Provider.ANTHROPIC: "claude-3-5-sonnet-20241022",
    Provider.GOOGLE: "gemini-1.5-flash",
}

# Provider display names
PROVIDER_DISPLAY_NAMES = {
    Provider.LM_STUDIO: "LM Studio (Local)",
    Provider.OPENAI: "OpenAI",
    Provider.ANTHROPIC: "Anthropic",
    Provider.GOOGLE: "Google AI",
}

# Whether provider requires API key
PROVIDER_REQUIRES_API_KEY = {
    Provider.LM_STUDIO: False,
    Provider.OPENAI: True,
    Provider.ANTHROPIC: True,
    Provider.GOOGLE: True,
}

# Environment variables read for each provider: (api key, model, endpoint)
PROVIDER_ENV_VARS = {
    Provider.LM_STUDIO: ("VISION_API_KEY", "VISION_MODEL", "VISION_ENDPOINT"),
    Provider.OPENAI: ("VISION_API_KEY", "VISION_MODEL", "VISION_ENDPOINT"),
    Provider.ANTHROPIC: ("ANTHROPIC_API_KEY", "ANTHROPIC_MODEL", "ANTHROPIC_ENDPOINT"),
    Provider.GOOGLE: ("GEMINI_API_KEY", "GEMINI_MODEL", "GEMINI_ENDPOINT"),
}


def parse_provider(name: Optional[str]) -> Provider:
    """Resolve a provider name or alias.

    Unknown or empty names fall back to Gemini, the original default.
    """
    if not name:
        return Provider.GOOGLE
    return PROVIDER_ALIASES.get(name.strip().lower(), Provider.GOOGLE)


@dataclass
class ProviderConfig:
    """Configuration for an LLM provider."""

    provider: Provider = Provider.GOOGLE
    api_key: Optional[str] = None
    model: Optional[str] = None
    custom_endpoint: Optional[str] = None
    timeout_s: float = 120.0

    @property
    def endpoint(self) -> str:
        """Get the endpoint URL for this provider."""
        if self.custom_endpoint:
            return self.custom_endpoint.rstrip("/")
        return PROVIDER_ENDPOINTS.get(self.provider, PROVIDER_ENDPOINTS[Provider.LM_STUDIO])

    @property
    def effective_model(self) -> str:
        """Get the effective model name."""
        if self.model:
            return self.model
        return PROVIDER_DEFAULT_MODELS.get(self.provider, "gemini-1.5-flash")

    @property
    def requires_api_key(self) -> bool:
        """Check if this provider requires an API key."""
        return PROVIDER_REQUIRES_API_KEY.get(self.provider, True)

    @property
    def display_name(self) -> str:
        """Get the display name for this provider."""
        return PROVIDER_DISPLAY_NAMES.get(self.provider, self.provider.value)

    def validate(self) -> tuple[bool, str]:
        """Validate the configuration.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if self.requires_api_key and not self.api_key:
            return False, f"{self.display_name} requires an API key"
        return True, ""

    def require_valid(self) -> None:
        """Raise ProviderNotConfigured if the configuration is unusable."""
        valid, message = self.validate()
        if not valid:
            raise ProviderNotConfigured(message, provider=self.provider.value)

    @classmethod
    def from_env(cls, provider_name: Optional[str] = None) -> "ProviderConfig":
        """Create from environment variables (LLM_PROVIDER and per-provider keys)."""
        provider = parse_provider(provider_name or os.getenv("LLM_PROVIDER"))
        key_var, model_var, endpoint_var = PROVIDER_ENV_VARS[provider]
        return cls(
            provider=provider,
            api_key=os.getenv(key_var) or None,
            model=os.getenv(model_var) or None,
            custom_endpoint=os.getenv(endpoint_var) or None,
            timeout_s=float(os.getenv("LLM_TIMEOUT_S", "120")),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "ProviderConfig":
        """Create from dictionary."""
        return cls(
            provider=parse_provider(data.get("provider")),
            api_key=data.get("api_key"),
            model=data.get("model"),
            custom_endpoint=data.get("custom_endpoint"),
            timeout_s=float(data.get("timeout_s", 120.0)),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for display. The API key is never included."""
        return {
            "provider": self.provider.value,
            "model": self.effective_model,
            "endpoint": self.endpoint,
            "display_name": self.display_name,
        }
