"""
Agent providers for the relay.

- base: AgentProvider contract, callbacks, and the shared ConversationalProvider
- claude_code: Claude Code via the Claude Agent SDK
- bedrock: Claude on Amazon Bedrock
"""

import logging
from typing import Callable, Dict, List, Sequence

from .base import (
    AgentProvider,
    ConversationalProvider,
    ProviderCallbacks,
    ProviderError,
    ProviderUnavailableError,
    RunHandle,
    SessionHistory,
)

logger = logging.getLogger(__name__)


def _claude_code(**kwargs) -> AgentProvider:
    from .claude_code import ClaudeCodeProvider
    return ClaudeCodeProvider(**kwargs)


def _bedrock(**kwargs) -> AgentProvider:
    from .bedrock import BedrockProvider
    return BedrockProvider(**{k: v for k, v in kwargs.items() if k != "working_directory"})


# Provider name -> factory. Factories raise ProviderUnavailableError when
# their backend can't be set up.
PROVIDER_FACTORIES: Dict[str, Callable[..., AgentProvider]] = {
    "claude-code": _claude_code,
    "bedrock": _bedrock,
}


def build_providers(names: Sequence[str], **kwargs) -> List[AgentProvider]:
    """Construct the named providers, skipping (and logging) any that fail."""
    providers: List[AgentProvider] = []
    for name in names:
        factory = PROVIDER_FACTORIES.get(name)
        if factory is None:
            logger.warning(f"Unknown provider '{name}'. Available: {', '.join(PROVIDER_FACTORIES)}")
            continue
        try:
            providers.append(factory(**kwargs))
        except Exception as e:
            logger.warning(f"Provider '{name}' not available, relay will run without it: {e}")
    return providers


__all__ = [
    "AgentProvider",
    "ConversationalProvider",
    "ProviderCallbacks",
    "ProviderError",
    "ProviderUnavailableError",
    "RunHandle",
    "SessionHistory",
    "PROVIDER_FACTORIES",
    "build_providers",
]
