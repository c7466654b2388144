from __future__ import annotations

import logging
import os
from typing import Any, Protocol

from .config import BurstclaimConfig
from .errors import ResponderError
from .store.types import CombinedBatch

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_ANTHROPIC_MODEL = "claude-3-5-haiku-latest"
NO_REPLY_SENTINEL = "NO_REPLY"

SYSTEM_PROMPT = (
    "You are a personal finance assistant that texts the user about their spending. "
    "Keep replies short and casual, like a text message. "
    f"If the messages need no answer (for example a bare reaction), reply with {NO_REPLY_SENTINEL}."
)


class ResponseGenerator(Protocol):
    def generate(self, batch: CombinedBatch) -> str | None: ...


def build_user_prompt(batch: CombinedBatch) -> str:
    parts = [batch.text or "[User sent content]"]
    if batch.attachments:
        parts.append("[Attachments: " + ", ".join(str(a) for a in batch.attachments) + "]")
    if batch.has_reaction:
        parts.append("[This wave includes a reaction to an earlier message]")
    return "\n".join(parts)


class LLMResponder:
    def __init__(
        self,
        *,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        max_tokens: int = 600,
        fallback_reply: str | None = None,
    ) -> None:
        resolved = (provider or "").lower()
        if resolved not in {"openai", "anthropic"}:
            resolved = "anthropic" if (model or "").startswith("claude") else "openai"
        self.provider = resolved
        if model:
            self.model = model
        elif resolved == "anthropic":
            self.model = DEFAULT_ANTHROPIC_MODEL
        else:
            self.model = DEFAULT_OPENAI_MODEL
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.fallback_reply = fallback_reply
        self.client: Any | None = None

    def _client(self) -> Any:
        if self.client is not None:
            return self.client
        if self.provider == "anthropic":
            api_key = self.api_key or os.getenv("ANTHROPIC_API_KEY")
            if not api_key:
                raise ResponderError("missing anthropic api key")
            import anthropic

            self.client = anthropic.Anthropic(api_key=api_key)
        else:
            api_key = self.api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ResponderError("missing openai api key")
            from openai import OpenAI

            self.client = OpenAI(api_key=api_key)
        return self.client

    def _call(self, prompt: str) -> str | None:
        client = self._client()
        try:
            if self.provider == "anthropic":
                resp = client.messages.create(
                    model=self.model,
                    system=SYSTEM_PROMPT,
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=self.max_tokens,
                )
                text = "".join(getattr(block, "text", "") for block in resp.content)
                return text or None
            resp = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=self.max_tokens,
            )
            return resp.choices[0].message.content
        except Exception as exc:
            raise ResponderError(f"{self.provider} call failed: {exc}") from exc

    def generate(self, batch: CombinedBatch) -> str | None:
        try:
            raw = self._call(build_user_prompt(batch))
        except ResponderError as exc:
            if self.fallback_reply is None:
                raise
            logger.exception(
                "responder failed, using fallback reply",
                extra={"provider": self.provider, "model": self.model, "group_key": batch.group_key},
                exc_info=exc,
            )
            return self.fallback_reply
        text = (raw or "").strip()
        if not text or text == NO_REPLY_SENTINEL:
            return None
        return text


def build_responder(cfg: BurstclaimConfig) -> LLMResponder | None:
    if not cfg.responder_provider and not cfg.responder_model:
        return None
    return LLMResponder(
        provider=cfg.responder_provider,
        model=cfg.responder_model,
        api_key=cfg.responder_api_key,
        max_tokens=cfg.responder_max_tokens,
        fallback_reply=cfg.fallback_reply,
    )
