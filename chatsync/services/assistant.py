"""
Chat-completion client for the in-room assistant.

This module provides a backend-agnostic way to ask a language model about a
conversation: the caller passes the prompt plus the most recent messages of
the room and gets plain text back.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from chatsync.core.errors import Unavailable
from chatsync.models.models import AI_ASSISTANT_ID, Message

logger = logging.getLogger(__name__)

CONTEXT_MESSAGES = 3
NO_REPLY = "No response could be generated."

REQUEST_KEYWORDS = [
    ("translate", ("translate", "translation")),
    ("grammar", ("grammar",)),
    ("summary", ("summary", "summarize", "summarise")),
    ("code", ("code",)),
]

SYSTEM_PROMPTS = {
    "translate": (
        "You are a professional translator. Give an accurate, natural translation "
        "that respects cultural context, followed by a short note.\n\n"
        "Format:\n**Translation:** [translated text]\n**Notes:** [short explanation]"
    ),
    "grammar": (
        "You are a language expert. Find and fix grammar mistakes and suggest more "
        "natural phrasing.\n\n"
        "Format:\n**Corrected:** [corrected sentence]\n**Explanation:** [what changed and why]"
    ),
    "summary": (
        "You summarise conversations. Keep it short and clear, and call out any "
        "decisions or action items separately.\n\n"
        "Format:\n**Summary:** [key points]\n**Highlights:** [important items]"
    ),
    "code": (
        "You are a programming expert. Analyse the problem, propose a concrete fix "
        "and show the improved code.\n\n"
        "Format:\n**Problem:** [analysis]\n**Fix:** [solution]\n**Code:** [improved code]"
    ),
    "general": (
        "You are a friendly, helpful assistant in a group chat. Answer accurately "
        "and concisely while giving enough detail to be useful."
    ),
}


class CompletionClient(Protocol):
    async def complete(self, prompt: str, recent_context: Sequence[Message]) -> str:
        ...


def analyze_request_type(prompt: str) -> str:
    lowered = prompt.lower()
    for request_type, keywords in REQUEST_KEYWORDS:
        if any(k in lowered for k in keywords):
            return request_type
    return "general"


def build_messages(
    prompt: str, recent_context: Sequence[Message], context_size: int = CONTEXT_MESSAGES
) -> List[Dict[str, str]]:
    """System prompt, the last few room messages, then the question."""
    messages = [{"role": "system", "content": SYSTEM_PROMPTS[analyze_request_type(prompt)]}]
    if context_size > 0:
        for message in list(recent_context)[-context_size:]:
            role = "assistant" if message.sender_id == AI_ASSISTANT_ID else "user"
            messages.append({"role": role, "content": f"{message.sender_name} : {message.content}"})
    messages.append({"role": "user", "content": prompt})
    return messages


class OpenAICompletionClient:
    """Client for an OpenAI-compatible ``/v1/chat/completions`` endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com",
        model: str = "gpt-3.5-turbo",
        timeout: float = 30.0,
        max_tokens: int = 500,
        temperature: float = 0.7,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: Bearer key for the API
            base_url: Scheme and host of the API
            model: Model name sent with every request
            timeout: Connect/read/write timeout in seconds
            max_tokens: Reply length cap
            temperature: Sampling temperature
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.transport = transport

    async def complete(self, prompt: str, recent_context: Sequence[Message]) -> str:
        """
        Ask the model about ``prompt`` given the recent room messages.

        Raises:
            Unavailable: Missing API key, transport failure, non-200 status
            (message taken from the API's error body when present), or a
            response without choices
        """
        if not self.api_key:
            raise Unavailable("Assistant API key is not configured")

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": build_messages(prompt, recent_context),
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        start_time = time.time()
        logger.debug("Assistant request: %s...", prompt[:50])

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    "/v1/chat/completions",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Assistant request failed: {e}")
            raise Unavailable("Assistant request failed") from e

        if response.status_code != 200:
            logger.error(f"Assistant API error: {response.status_code} - {response.text}")
            raise Unavailable(self._error_message(response))

        try:
            body = response.json()
            reply = body["choices"][0]["message"]["content"] or NO_REPLY
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Malformed assistant response: {e}")
            raise Unavailable("Assistant returned a malformed response") from e

        usage = body.get("usage") or {}
        logger.info(
            "Assistant replied in %.2fs (%s tokens)",
            time.time() - start_time,
            usage.get("total_tokens", 0),
        )
        return reply

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            return f"Assistant API error ({response.status_code})"
