"""
LLM client: OpenAI (primary) or Hugging Face router (fallback).

When OPENAI_API_KEY is set, uses OpenAI chat completions; otherwise, or when
OpenAI returns nothing, uses the HF router. Used for query analysis/expansion
(complete) and answer generation (stream_generate / generate).
"""

import logging
from typing import Any, AsyncIterator

import httpx
from openai import AsyncOpenAI

from citerag.core.config import (
    HF_API_KEY,
    HF_CHAT_URL,
    HF_LLM_MODEL,
    LLM_API_TIMEOUT,
    OPENAI_ANALYSIS_MODEL,
    OPENAI_API_KEY,
    OPENAI_LLM_MODEL,
    GENERATION_MAX_TOKENS,
)
from citerag.core.errors import ServiceUnavailableError

logger = logging.getLogger(__name__)


def build_messages(system_prompt: str, user_prompt: str, history: list[dict[str, Any]]) -> list[dict[str, str]]:
    messages = [{"role": "system", "content": system_prompt}]
    for m in history or []:
        role = (m.get("role") or "user").strip().lower()
        content = (m.get("content") or "").strip()
        if role in ("user", "assistant") and content:
            messages.append({"role": role, "content": content})
    messages.append({"role": "user", "content": user_prompt})
    return messages


class LLMClient:
    def __init__(
        self,
        openai_api_key: str = OPENAI_API_KEY,
        hf_api_key: str = HF_API_KEY,
        timeout: float = LLM_API_TIMEOUT,
    ) -> None:
        self._openai = AsyncOpenAI(api_key=openai_api_key, timeout=timeout) if openai_api_key else None
        self._hf_api_key = hf_api_key
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return self._openai is not None or bool(self._hf_api_key)

    async def _call_openai(
        self,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
        json_mode: bool = False,
    ) -> str:
        kwargs: dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self._openai.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            **kwargs,
        )
        msg = response.choices[0].message if response.choices else None
        out = ((msg.content if msg else None) or "").strip()
        logger.info("[llm:openai] OUT model=%s response_len=%d", model, len(out))
        return out

    async def _call_hf(self, messages: list[dict[str, str]], max_tokens: int, temperature: float) -> str:
        if not self._hf_api_key:
            logger.warning("[llm:hf] no HF_API_KEY")
            return ""
        headers = {"Authorization": f"Bearer {self._hf_api_key}", "Content-Type": "application/json"}
        payload = {
            "model": HF_LLM_MODEL,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(HF_CHAT_URL, json=payload, headers=headers)
            if response.status_code != 200:
                logger.warning("[llm:hf] HF LLM error %s: %s", response.status_code, response.text[:200])
                return ""
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("[llm:hf] request failed: %s", e)
            return ""
        choices = data.get("choices") or []
        if choices and isinstance(choices[0], dict):
            out = ((choices[0].get("message") or {}).get("content") or "").strip()
            logger.info("[llm:hf] OUT response_len=%d", len(out))
            return out
        return ""

    async def _chat(
        self,
        model: str,
        messages: list[dict[str, str]],
        max_tokens: int,
        temperature: float,
        json_mode: bool = False,
    ) -> str:
        if not self.configured:
            raise ServiceUnavailableError("Language model is not configured (OPENAI_API_KEY / HF_API_KEY missing).")
        if self._openai is not None:
            try:
                out = await self._call_openai(model, messages, max_tokens, temperature, json_mode)
            except Exception as e:
                logger.warning("[llm] OpenAI call failed: %s", e)
                out = ""
            if out:
                return out
            logger.info("[llm] OpenAI returned empty; falling back to Hugging Face")
        return await self._call_hf(messages, max_tokens, temperature)

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int,
        temperature: float = 0.0,
        json_mode: bool = False,
    ) -> str:
        """One-shot completion with the analysis model."""
        logger.info("[llm:complete] IN  prompt_len=%d max_tokens=%d temperature=%.1f json=%s", len(prompt), max_tokens, temperature, json_mode)
        return await self._chat(
            OPENAI_ANALYSIS_MODEL, [{"role": "user", "content": prompt}], max_tokens, temperature, json_mode
        )

    async def generate(self, system_prompt: str, user_prompt: str, history: list[dict[str, Any]]) -> str:
        """Non-streaming answer generation."""
        messages = build_messages(system_prompt, user_prompt, history)
        logger.info("[llm:generate] IN  messages=%d", len(messages))
        return await self._chat(OPENAI_LLM_MODEL, messages, GENERATION_MAX_TOKENS, 0.2)

    async def stream_generate(
        self, system_prompt: str, user_prompt: str, history: list[dict[str, Any]]
    ) -> AsyncIterator[str]:
        """
        Yield answer text deltas. Streams from OpenAI when configured; with only
        HF available the whole answer arrives as one delta.
        """
        messages = build_messages(system_prompt, user_prompt, history)
        logger.info("[llm:stream_generate] IN  messages=%d", len(messages))
        if self._openai is None:
            text = await self._chat(OPENAI_LLM_MODEL, messages, GENERATION_MAX_TOKENS, 0.2)
            if text:
                yield text
            return
        stream = await self._openai.chat.completions.create(
            model=OPENAI_LLM_MODEL,
            messages=messages,
            max_tokens=GENERATION_MAX_TOKENS,
            temperature=0.2,
            stream=True,
        )
        total = 0
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if getattr(delta, "content", None):
                total += len(delta.content)
                yield delta.content
        logger.info("[llm:stream_generate] OUT content_len=%d", total)
