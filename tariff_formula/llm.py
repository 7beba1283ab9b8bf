"""Generative provider used when no deterministic rule matches a rate.

The fallback compiler only needs ``complete(prompt, schema) -> str``; the
OpenAI-compatible implementation below talks to ``/chat/completions`` over
``requests`` and asks for strict JSON-schema output. Responses are checked
against pydantic models that forbid extra keys and coercion.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Protocol

import requests
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tariff_formula.errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5.2"
DEFAULT_API_BASE = "https://api.openai.com/v1"
DEFAULT_TIMEOUT_SECONDS = 60.0
SYSTEM_MESSAGE = "You are a customs duty rate parser. Respond with JSON only."

_FORMULA_PROPERTIES: Dict[str, Any] = {
    "formula": {"type": "string"},
    "variables": {"type": "array", "items": {"type": "string"}},
    "confidence": {"type": "number"},
}

FORMULA_RESPONSE_SCHEMA: Dict[str, Any] = {
    "name": "formula_response",
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {**_FORMULA_PROPERTIES, "explanation": {"type": ["string", "null"]}},
        "required": ["formula", "variables", "confidence", "explanation"],
        "additionalProperties": False,
    },
}

# Strict structured output needs an object at the root, so the rows sit under "formulas".
FORMULA_BATCH_RESPONSE_SCHEMA: Dict[str, Any] = {
    "name": "formula_batch_response",
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {
            "formulas": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"index": {"type": "integer"}, **_FORMULA_PROPERTIES},
                    "required": ["index", "formula", "variables", "confidence"],
                    "additionalProperties": False,
                },
            }
        },
        "required": ["formulas"],
        "additionalProperties": False,
    },
}


class FormulaResponse(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    formula: str
    variables: List[str]
    confidence: float = Field(ge=0, le=1, allow_inf_nan=False)
    explanation: Optional[str] = None

    @field_validator("formula")
    @classmethod
    def _formula_not_blank(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("formula must not be blank")
        return cleaned


class FormulaBatchItem(FormulaResponse):
    index: int = Field(ge=0)


class FormulaProvider(Protocol):
    """Anything that can turn a prompt plus JSON schema into raw JSON text."""

    def complete(self, prompt: str, schema: Dict[str, Any], *, timeout: Optional[float] = None) -> str:
        ...


def strip_json_fence(raw: str) -> str:
    text = (raw or "").strip()
    if text.startswith("```"):
        lines = text.splitlines()
        if len(lines) >= 3:
            logger.warning("LLM response wrapped in a Markdown fence despite structured output; unwrapping")
            return "\n".join(lines[1:-1]).strip()
    return text


def _timeout_from_env() -> float:
    raw = os.getenv("FORMULA_LLM_TIMEOUT")
    if not raw:
        return DEFAULT_TIMEOUT_SECONDS
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric FORMULA_LLM_TIMEOUT=%r", raw)
        return DEFAULT_TIMEOUT_SECONDS


class OpenAIFormulaProvider:
    """Thin wrapper around an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.model = model or os.getenv("OPENAI_MODEL", DEFAULT_MODEL)
        self.base_url = (base_url or os.getenv("OPENAI_API_BASE", DEFAULT_API_BASE)).rstrip("/")
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.timeout = timeout if timeout is not None else _timeout_from_env()
        self.session = session or requests.Session()
        if not self.api_key:
            raise ProviderError("OPENAI_API_KEY (or explicit api_key) is required for LLM calls")

    def complete(self, prompt: str, schema: Dict[str, Any], *, timeout: Optional[float] = None) -> str:
        payload = {
            "model": self.model,
            "temperature": 0.1,
            "response_format": {"type": "json_schema", "json_schema": schema},
            "messages": [
                {"role": "system", "content": SYSTEM_MESSAGE},
                {"role": "user", "content": prompt},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self.session.post(
                f"{self.base_url}/chat/completions",
                headers=headers,
                json=payload,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"LLM transport error: {exc}") from exc
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise ProviderError(f"LLM HTTP error: {exc} -> {response.text}") from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(f"LLM response is not JSON: {response.text[:200]}") from exc
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError(f"Unexpected LLM response structure: {data}") from exc
        if not isinstance(content, str) or not content.strip():
            raise ProviderError("LLM returned an empty response")
        return content
