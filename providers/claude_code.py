"""
Claude Code agent provider using the Claude Agent SDK (claude-agent-sdk).

Streams a Claude Code turn via the SDK's query() API. Assistant text and
tool calls are surfaced as status updates; the final ResultMessage ends the
request. The SDK's own session id is remembered per relay session and passed
back as ``resume`` so follow-ups continue the same agent conversation.
"""

import logging
import os
from typing import Any, Dict, Optional

from config import claude_code_config, relay_config
from providers.base import ConversationalProvider, ProviderError, ProviderUnavailableError, RunHandle

logger = logging.getLogger(__name__)

# Status lines longer than this are truncated
_STATUS_PREVIEW_CHARS = 200


def _preview(text: str) -> str:
    text = " ".join(text.split())
    if len(text) > _STATUS_PREVIEW_CHARS:
        return text[:_STATUS_PREVIEW_CHARS] + "..."
    return text


class ClaudeCodeProvider(ConversationalProvider):
    name = "claude-code"

    def __init__(
        self,
        working_directory: Optional[str] = None,
        model: Optional[str] = None,
        permission_mode: Optional[str] = None,
        max_turns: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(timeout=timeout if timeout is not None else claude_code_config.timeout)
        try:
            import claude_agent_sdk
        except ImportError:
            raise ProviderUnavailableError(
                "claude-agent-sdk not installed. Run: pip install claude-agent-sdk"
            )
        self._sdk = claude_agent_sdk
        self.working_directory = os.path.abspath(working_directory or relay_config.working_directory)
        self.model = model or claude_code_config.model
        self.permission_mode = permission_mode or claude_code_config.permission_mode
        self.max_turns = max_turns if max_turns is not None else claude_code_config.max_turns
        # relay session id -> Claude Code session id
        self._sdk_sessions: Dict[str, str] = {}

    def _build_options(self, session_id: str) -> Any:
        return self._sdk.ClaudeAgentOptions(
            cwd=self.working_directory,
            model=self.model,
            permission_mode=self.permission_mode,
            max_turns=self.max_turns,
            resume=self._sdk_sessions.get(session_id),
        )

    async def _execute(self, session_id: str, prompt: str, run: RunHandle) -> str:
        sdk = self._sdk
        run.status("Connecting to Claude Code...")
        run.status("Processing...")

        result: Optional[str] = None
        async for message in sdk.query(prompt=prompt, options=self._build_options(session_id)):
            if run.aborted:
                break

            if isinstance(message, sdk.AssistantMessage):
                for block in message.content:
                    if isinstance(block, sdk.TextBlock) and block.text.strip():
                        run.status(_preview(block.text))
                    elif isinstance(block, sdk.ToolUseBlock):
                        run.status(f"Using {block.name}...")

            elif isinstance(message, sdk.ResultMessage):
                if message.session_id:
                    self._sdk_sessions[session_id] = message.session_id
                if message.is_error:
                    raise ProviderError(message.result or f"Claude Code failed ({message.subtype})")
                result = message.result or ""

        if result is None and not run.aborted:
            raise ProviderError("Claude Code ended without a result")
        return result or ""
