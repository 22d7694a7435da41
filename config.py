"""
Configuration module for Inspector Relay.
Handles all environment variables for the broker, the client and the agent providers.
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DEFAULT_PORT = 4722


def _split_names(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class RelayConfig:
    """Broker process configuration"""
    host: str = os.getenv("RELAY_HOST", "127.0.0.1")
    port: int = int(os.getenv("RELAY_PORT", str(DEFAULT_PORT)))
    providers: str = os.getenv("RELAY_PROVIDERS", "claude-code")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    working_directory: str = os.getenv("RELAY_WORKING_DIRECTORY", ".")

    @property
    def provider_names(self) -> List[str]:
        return _split_names(self.providers)


@dataclass
class ReconnectConfig:
    """Client reconnect policy.

    The n-th consecutive failed attempt waits ``min(max_delay, delay * backoff**n)``
    with +/- ``jitter`` (a fraction of the delay). ``backoff=1`` and ``jitter=0``
    gives a fixed delay.
    """
    delay: float = float(os.getenv("RELAY_RECONNECT_DELAY", "3"))
    max_delay: float = float(os.getenv("RELAY_RECONNECT_MAX_DELAY", "30"))
    backoff: float = float(os.getenv("RELAY_RECONNECT_BACKOFF", "2"))
    jitter: float = float(os.getenv("RELAY_RECONNECT_JITTER", "0.1"))

    def delay_for(self, attempt: int, rand: float = 0.5) -> float:
        """Delay before reconnect attempt number ``attempt`` (0-based).

        ``rand`` is a uniform sample in [0, 1) used for jitter.
        """
        base = min(self.max_delay, self.delay * (self.backoff ** attempt))
        spread = base * self.jitter
        return max(0.0, base - spread + 2 * spread * rand)


@dataclass
class ClientConfig:
    """Relay client settings"""
    max_history: int = int(os.getenv("RELAY_MAX_HISTORY", "50"))


@dataclass
class ClaudeCodeConfig:
    """Claude Code (Agent SDK) provider settings"""
    model: Optional[str] = os.getenv("CLAUDE_CODE_MODEL") or None
    permission_mode: str = os.getenv("CLAUDE_CODE_PERMISSION_MODE", "acceptEdits")
    max_turns: Optional[int] = int(os.getenv("CLAUDE_CODE_MAX_TURNS", "")) if os.getenv("CLAUDE_CODE_MAX_TURNS") else None
    timeout: float = float(os.getenv("AGENT_TIMEOUT", "600"))


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class BedrockModelConfig:
    """Bedrock provider model settings"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "16000"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None
    timeout: float = float(os.getenv("AGENT_TIMEOUT", "600"))


# ============================================================
# Model Specifications -- Anthropic Claude on Bedrock
# Only the fields the relay needs: output limits and whether
# the id must be routed through a cross-region inference profile.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-opus-4-5-20251101-v1:0",
        "base_id": "anthropic.claude-opus-4-5-20251101-v1:0",
        "name": "Claude Opus 4.5",
        "max_output_tokens": 128000,
        "requires_profile": True,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "base_id": "anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "max_output_tokens": 64000,
        "requires_profile": True,
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "base_id": "anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "max_output_tokens": 64000,
        "requires_profile": True,
    },
]


# Create global config instances
relay_config = RelayConfig()
reconnect_config = ReconnectConfig()
client_config = ClientConfig()
claude_code_config = ClaudeCodeConfig()
aws_config = AWSConfig()
bedrock_model_config = BedrockModelConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the configuration for a model, with a fallback for unknown IDs."""
    model = get_model_by_id(model_id)
    if model:
        return model
    return {
        "id": model_id,
        "base_id": model_id,
        "name": model_id,
        "max_output_tokens": 4096,
        "requires_profile": False,
    }


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def requires_inference_profile(model_id: str) -> bool:
    return get_model_config(model_id).get("requires_profile", False)


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default AWS credential chain"
