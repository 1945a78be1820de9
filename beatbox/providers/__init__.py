from __future__ import annotations

from .litellm import LiteLLMPatternAdapter

__all__ = ["LiteLLMPatternAdapter"]
