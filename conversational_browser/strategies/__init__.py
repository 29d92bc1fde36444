"""
Model strategies for Conversational Browser.

One strategy per provider family, all behind the ModelStrategy interface:
- Claude (Anthropic Messages API, native tool use)
- Gemini (Generative Language API, parallel function calls)
- Vision (OpenAI-compatible chat completions, free-text actions)
"""

from typing import Optional

import httpx

from ..providers import Provider, ProviderConfig
from .base import (
    VALIDATION_TOOL,
    VALIDATION_TOOL_NAME,
    ActionRequest,
    ModelResponse,
    ModelStrategy,
    ValidationArgs,
)
from .claude import ClaudeStrategy
from .gemini import GeminiStrategy
from .vision import VisionTextStrategy

__all__ = [
    "VALIDATION_TOOL",
    "VALIDATION_TOOL_NAME",
    "ActionRequest",
    "ClaudeStrategy",
    "GeminiStrategy",
    "ModelResponse",
    "ModelStrategy",
    "ValidationArgs",
    "VisionTextStrategy",
    "create_strategy",
]


def create_strategy(config: ProviderConfig, client: Optional[httpx.Client] = None) -> ModelStrategy:
    """Create the strategy for the configured provider.

    Args:
        config: Provider configuration
        client: Optional HTTP client to use

    Returns:
        Configured strategy

    Raises:
        ProviderNotConfigured: If the provider has no usable credentials
    """
    strategies = {
        Provider.LM_STUDIO: VisionTextStrategy,
        Provider.OPENAI: VisionTextStrategy,
        Provider.ANTHROPIC: ClaudeStrategy,
        Provider.GOOGLE: GeminiStrategy,
    }

    strategy_class = strategies.get(config.provider, GeminiStrategy)
    return strategy_class(config, client=client)
