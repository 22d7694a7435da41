"""
Amazon Bedrock agent provider.

Sends the browser context and prompt to Claude on Bedrock and streams the
answer back. Keeps the per-session message list so undo, redo and resume
follow-ups carry the full conversation.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from bedrock_service import BedrockService, BedrockError, GenerationConfig
from config import bedrock_model_config
from providers.base import ConversationalProvider, ProviderUnavailableError, RunHandle

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a coding assistant working on a web UI. The user selected elements "
    "in their browser; you receive the component context captured from the page "
    "and an instruction. Describe the change you make concisely."
)

# Keep this many messages (user + assistant) per session
_MAX_MESSAGES = 40


class BedrockProvider(ConversationalProvider):
    name = "bedrock"

    def __init__(
        self,
        service: Optional[BedrockService] = None,
        model_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(timeout=timeout if timeout is not None else bedrock_model_config.timeout)
        if service is None:
            try:
                service = BedrockService(model_id=model_id)
            except BedrockError as e:
                raise ProviderUnavailableError(str(e))
        self.service = service
        self.generation = GenerationConfig(
            max_tokens=bedrock_model_config.max_tokens,
            temperature=bedrock_model_config.temperature,
        )
        self._messages: Dict[str, List[Dict[str, Any]]] = {}

    async def _execute(self, session_id: str, prompt: str, run: RunHandle) -> str:
        loop = asyncio.get_running_loop()
        messages = list(self._messages.get(session_id, []))
        messages.append({"role": "user", "content": prompt})

        run.status("Connecting to Bedrock...")

        def _stream() -> str:
            chunks: List[str] = []
            for event in self.service.stream_text(messages, system_prompt=SYSTEM_PROMPT, config=self.generation):
                if run.aborted:
                    break
                if event["type"] == "text_start":
                    loop.call_soon_threadsafe(run.status, "Processing...")
                elif event["type"] == "text":
                    chunks.append(event["content"])
            return "".join(chunks)

        result = await asyncio.to_thread(_stream)
        if run.aborted:
            return result

        messages.append({"role": "assistant", "content": result})
        self._messages[session_id] = messages[-_MAX_MESSAGES:]
        return result
