"""Completion backends behind LocalHost.generate_quiet_prompt.

Talk-control llm replies become one quiet prompt each. LocalHost hands the
rendered prompt to an LLM callable and posts whatever text comes back.
"""

from __future__ import annotations

import logging
import os
from typing import Literal, Protocol

import httpx

logger = logging.getLogger(__name__)

ProviderFormat = Literal["koboldcpp", "openai"]

# format -> (endpoint path, length field, response list key)
_WIRE = {
    "koboldcpp": ("/api/v1/generate", "max_length", "results"),
    "openai": ("/v1/completions", "max_tokens", "choices"),
}


class LLMError(RuntimeError):
    """The completion backend was unreachable or answered with something unusable."""


class LLM(Protocol):
    # stage names the caller and only shows up in logs
    async def __call__(self, stage: str, prompt: str) -> str: ...


# ── HTTP backend ─────────────────────────────────────────


class HttpLLM:
    """Posts quiet prompts to a KoboldCpp or OpenAI-style completions endpoint.

    max_tokens caps every generated reply; model is only sent in openai format.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        max_tokens: int = 200,
        timeout: float = 120.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._max_tokens = max_tokens
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _request(self, prompt: str) -> tuple[str, dict]:
        path, length_field, _ = _WIRE[self._format]
        body: dict = {"prompt": prompt, length_field: self._max_tokens}
        if self._format == "openai" and self._model:
            body["model"] = self._model
        return self._base_url + path, body

    def _completion_text(self, data: dict) -> str:
        items = data.get(_WIRE[self._format][2])
        if not items or "text" not in items[0]:
            raise LLMError(f"Unexpected response format from {self._format} backend")
        return items[0]["text"]

    async def __call__(self, stage: str, prompt: str) -> str:
        url, body = self._request(prompt)
        logger.debug("Quiet generation (%s) -> %s, %d prompt chars", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"LLM backend returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e

        text = self._completion_text(resp.json())
        logger.debug("Quiet generation (%s) returned %d chars", stage, len(text))
        return text


# ── Offline ──────────────────────────────────────────────


class EchoLLM:
    """Always answers with the same line. Lets talk control run without a model."""

    def __init__(self, reply: str = "(no model configured)") -> None:
        self._reply = reply

    async def __call__(self, stage: str, prompt: str) -> str:
        logger.debug("EchoLLM answering %s (%d prompt chars)", stage, len(prompt))
        return self._reply


def build_llm() -> LLM:
    """HttpLLM from LLM_PROVIDER_URL and friends, or EchoLLM when unset."""
    url = os.getenv("LLM_PROVIDER_URL", "")
    if not url:
        logger.info("LLM_PROVIDER_URL not set; llm replies will use EchoLLM")
        return EchoLLM()
    provider_format = os.getenv("LLM_PROVIDER_FORMAT", "koboldcpp")
    if provider_format not in _WIRE:
        logger.warning("Unknown LLM_PROVIDER_FORMAT %r; using koboldcpp", provider_format)
        provider_format = "koboldcpp"
    return HttpLLM(
        provider_url=url,
        api_key=os.getenv("LLM_API_KEY", ""),
        provider_format=provider_format,
        model=os.getenv("LLM_MODEL", ""),
    )
