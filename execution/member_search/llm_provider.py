"""
Structured-Extraction Provider

Calls an OpenAI-compatible chat completion endpoint (NVIDIA NIM by default)
and parses the reply as a JSON object matching the extraction schema.

Providers are arranged in a priority chain guarded by circuit breakers.
A single request makes at most one provider call: the chain picks the
first provider whose circuit is closed, so a failing primary is bypassed
on later requests rather than retried within the same one.
"""

import os
import re
import json
import logging
from typing import Optional
from dataclasses import dataclass

from .errors import ProviderTimeoutError, ProviderUnavailableError
from .retry import CircuitBreaker
from .extraction_patterns import EXTRACTION_SYSTEM_PROMPT, EXTRACTION_CONTEXT_TEMPLATE

logger = logging.getLogger(__name__)

NVIDIA_BASE_URL = "https://integrate.api.nvidia.com/v1"


@dataclass
class LLMProviderConfig:
    """Configuration for one chat completion provider."""
    name: str = "nvidia"
    base_url: str = NVIDIA_BASE_URL
    model: str = "meta/llama-3.3-70b-instruct"
    api_key_env: str = "NVIDIA_API_KEY"
    timeout: float = 10.0  # Client-level ceiling; per-call budget comes from RetryPolicy
    max_tokens: int = 400


def parse_json_payload(content: str) -> dict:
    """
    Pull a JSON object out of a model reply.

    Accepts bare JSON, JSON wrapped in markdown fences, or JSON surrounded
    by prose. Raises ValueError when no object can be decoded.
    """
    if not content:
        raise ValueError("Empty completion")

    text = content.strip()
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1)

    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise ValueError(f"No JSON object in completion: {content[:80]!r}")
        payload = json.loads(text[start:end + 1])

    if not isinstance(payload, dict):
        raise ValueError("Completion JSON is not an object")
    return payload


class OpenAICompatibleProvider:
    """Structured extraction over an OpenAI-compatible chat API."""

    def __init__(self, config: Optional[LLMProviderConfig] = None, client=None):
        self.config = config or LLMProviderConfig()
        self._client = client

    @property
    def name(self) -> str:
        return self.config.name

    def _get_client(self):
        """Get or create the cached OpenAI client."""
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(
                base_url=self.config.base_url,
                api_key=os.getenv(self.config.api_key_env),
                timeout=self.config.timeout,
            )
        return self._client

    def _build_messages(self, text: str, schema: dict, history: Optional[list[str]]) -> list[dict]:
        context = ""
        if history:
            context = EXTRACTION_CONTEXT_TEMPLATE.format(turns="\n".join(f"- {t}" for t in history))
        system_prompt = EXTRACTION_SYSTEM_PROMPT.format(
            schema=json.dumps(schema),
            context=context,
        )
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": text},
        ]

    def extract_structured(self, text: str, schema: dict, history: Optional[list[str]] = None) -> dict:
        """
        Extract a JSON object for ``text`` following ``schema``.

        Raises:
            ProviderTimeoutError: the API timed out
            ProviderUnavailableError: any other API failure or an unparseable reply
        """
        import openai

        try:
            response = self._get_client().chat.completions.create(
                model=self.config.model,
                messages=self._build_messages(text, schema, history),
                max_tokens=self.config.max_tokens,
                temperature=0.0,
            )
        except openai.APITimeoutError as e:
            raise ProviderTimeoutError(f"{self.name} timed out", provider=self.name, cause=e)
        except openai.OpenAIError as e:
            raise ProviderUnavailableError(f"{self.name} request failed: {e}", provider=self.name, cause=e)

        content = response.choices[0].message.content if response.choices else ""
        try:
            return parse_json_payload(content)
        except ValueError as e:
            raise ProviderUnavailableError(f"{self.name} returned invalid JSON: {e}", provider=self.name, cause=e)


class StructuredExtractionChain:
    """
    Priority chain of extraction providers with circuit breakers.

    Each call goes to exactly one provider: the first whose circuit is
    closed. Success and failure feed that provider's breaker.
    """

    def __init__(self, providers: list, failure_threshold: int = 5, reset_timeout: float = 60.0):
        if not providers:
            raise ValueError("StructuredExtractionChain needs at least one provider")
        self._providers = providers
        self._breakers = {
            p.name: CircuitBreaker(p.name, failure_threshold, reset_timeout) for p in providers
        }

    @property
    def name(self) -> str:
        return "+".join(p.name for p in self._providers)

    def _select(self):
        for provider in self._providers:
            if not self._breakers[provider.name].is_open():
                return provider
        return None

    def extract_structured(self, text: str, schema: dict, history: Optional[list[str]] = None) -> dict:
        provider = self._select()
        if provider is None:
            raise ProviderUnavailableError("All extraction providers have open circuits", provider=self.name)

        breaker = self._breakers[provider.name]
        try:
            payload = provider.extract_structured(text, schema, history=history)
        except Exception:
            breaker.record_failure()
            raise
        breaker.record_success()
        return payload

    def get_provider_status(self) -> list[dict]:
        return [self._breakers[p.name].status() for p in self._providers]


def get_extraction_provider() -> Optional[StructuredExtractionChain]:
    """
    Build the provider chain from environment variables.

    Returns None when no API key is configured, which leaves the extractor
    on its fast path only.
    """
    if not os.getenv("NVIDIA_API_KEY"):
        logger.warning("NVIDIA_API_KEY not found. Slow-path extraction disabled.")
        return None

    base_url = os.getenv("LLM_BASE_URL", NVIDIA_BASE_URL)
    providers = [
        OpenAICompatibleProvider(LLMProviderConfig(
            name="primary",
            base_url=base_url,
            model=os.getenv("LLM_MODEL", "meta/llama-3.3-70b-instruct"),
        )),
    ]
    fallback_model = os.getenv("LLM_FALLBACK_MODEL")
    if fallback_model:
        providers.append(OpenAICompatibleProvider(LLMProviderConfig(
            name="fallback",
            base_url=base_url,
            model=fallback_model,
        )))

    logger.info(f"Extraction provider chain: {[p.config.model for p in providers]}")
    return StructuredExtractionChain(providers)
