from pathlib import Path
import sys

import pytest
import requests

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from tariff_formula.errors import ProviderError
from tariff_formula.llm import (
    FORMULA_BATCH_RESPONSE_SCHEMA,
    FORMULA_RESPONSE_SCHEMA,
    FormulaResponse,
    OpenAIFormulaProvider,
    strip_json_fence,
)


class _Response:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class _Session:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def _completion(content):
    return _Response(payload={"choices": [{"message": {"content": content}}]})


def test_complete_posts_strict_schema_request():
    session = _Session(_completion('{"formula": "value * 0.05"}'))
    provider = OpenAIFormulaProvider(
        model="test-model", base_url="https://llm.example/v1/", api_key="secret", timeout=7, session=session
    )

    content = provider.complete("prompt text", FORMULA_RESPONSE_SCHEMA)

    assert content == '{"formula": "value * 0.05"}'
    url, kwargs = session.requests[0]
    assert url == "https://llm.example/v1/chat/completions"
    assert kwargs["timeout"] == 7
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    body = kwargs["json"]
    assert body["model"] == "test-model"
    assert body["response_format"] == {"type": "json_schema", "json_schema": FORMULA_RESPONSE_SCHEMA}
    assert body["messages"][-1] == {"role": "user", "content": "prompt text"}


def test_complete_per_call_timeout_overrides_default():
    session = _Session(_completion("{}"))
    provider = OpenAIFormulaProvider(api_key="secret", timeout=7, session=session)
    provider.complete("prompt", FORMULA_BATCH_RESPONSE_SCHEMA, timeout=2)
    assert session.requests[0][1]["timeout"] == 2


@pytest.mark.parametrize(
    "session",
    [
        _Session(error=requests.ConnectionError("connection refused")),
        _Session(_Response(status_code=500, payload={}, text="upstream failure")),
        _Session(_Response(payload=None, text="<html>")),
        _Session(_Response(payload={"choices": []})),
        _Session(_completion("   ")),
        _Session(_completion(None)),
    ],
)
def test_complete_failures_raise_provider_error(session):
    provider = OpenAIFormulaProvider(api_key="secret", session=session)
    with pytest.raises(ProviderError):
        provider.complete("prompt", FORMULA_RESPONSE_SCHEMA)


def test_configuration_comes_from_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")
    monkeypatch.setenv("OPENAI_MODEL", "env-model")
    monkeypatch.setenv("OPENAI_API_BASE", "https://env.example/v1")
    monkeypatch.setenv("FORMULA_LLM_TIMEOUT", "12.5")
    provider = OpenAIFormulaProvider(session=_Session())
    assert provider.api_key == "env-key"
    assert provider.model == "env-model"
    assert provider.base_url == "https://env.example/v1"
    assert provider.timeout == 12.5


def test_missing_api_key_is_rejected(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ProviderError):
        OpenAIFormulaProvider(session=_Session())


def test_response_model_is_strict():
    parsed = FormulaResponse.model_validate_json('{"formula": " value * 0.1 ", "variables": [], "confidence": 1}')
    assert parsed.formula == "value * 0.1"
    assert parsed.explanation is None


def test_strip_json_fence():
    assert strip_json_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_json_fence('  {"a": 1} ') == '{"a": 1}'
