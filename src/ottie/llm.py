"""
LLM client for the Ottie config generator.

Auto-detects provider from environment:
  OPENAI_API_KEY  -> OpenAI (default: gpt-4o-mini)
  GEMINI_API_KEY  -> Google Gemini via its OpenAI-compatible layer
  LLM_URL         -> Local llama.cpp / Ollama compatible endpoint

LLM_MODEL env var overrides the model name for any provider.
"""

import json
import logging
import os
import re
import time
from dataclasses import dataclass, field

import httpx

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Provider detection
# ---------------------------------------------------------------------------

def _detect_provider() -> tuple[str, str, str]:
    """Return (base_url, model, api_key) based on environment variables.

    Reads env at call time so that load_env() called in the CLI bootstrap is
    always visible here.
    """
    openai_key = os.environ.get("OPENAI_API_KEY", "")
    gemini_key = os.environ.get("GEMINI_API_KEY", "")
    local_url = os.environ.get("LLM_URL", "")
    model_override = os.environ.get("LLM_MODEL", "")

    if local_url:
        return (
            local_url.rstrip("/"),
            model_override or "local-model",
            os.environ.get("LLM_API_KEY", ""),
        )

    if openai_key:
        return (
            "https://api.openai.com/v1",
            model_override or "gpt-4o-mini",
            openai_key,
        )

    if gemini_key:
        return (
            "https://generativelanguage.googleapis.com/v1beta/openai",
            model_override or "gemini-2.0-flash",
            gemini_key,
        )

    raise RuntimeError(
        "No LLM provider configured. "
        "Set OPENAI_API_KEY, GEMINI_API_KEY, or LLM_URL in your environment."
    )


def llm_configured() -> bool:
    """True when any LLM provider env var is set (used by doctor)."""
    return any(os.environ.get(k) for k in ("OPENAI_API_KEY", "GEMINI_API_KEY", "LLM_URL"))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

_MAX_RETRIES = 5
_TIMEOUT = 120  # seconds

# Base wait on first 429/503 (doubles each retry, caps at 60s)
_RATE_LIMIT_BASE_WAIT = 10


@dataclass
class LLMResponse:
    """Assistant text plus the provider's token usage and wall time."""
    text: str
    usage: dict = field(default_factory=dict)
    duration_ms: int = 0


class LLMClient:
    """Thin client for an OpenAI-compatible chat completions endpoint."""

    def __init__(self, base_url: str, model: str, api_key: str,
                 transport: httpx.BaseTransport | None = None) -> None:
        self.base_url = base_url
        self.model = model
        self.api_key = api_key
        self._client = httpx.Client(timeout=_TIMEOUT, transport=transport)

    def _post(self, payload: dict) -> httpx.Response:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        resp = self._client.post(
            f"{self.base_url}/chat/completions",
            json=payload,
            headers=headers,
        )
        resp.raise_for_status()
        return resp

    @staticmethod
    def _retry_wait(resp: httpx.Response, attempt: int) -> float:
        retry_after = (
            resp.headers.get("Retry-After")
            or resp.headers.get("X-RateLimit-Reset-Requests")
        )
        if retry_after:
            try:
                return float(retry_after)
            except (ValueError, TypeError):
                pass
        return min(_RATE_LIMIT_BASE_WAIT * (2 ** attempt), 60)

    def chat(
        self,
        messages: list[dict],
        temperature: float = 0.0,
        max_tokens: int = 4096,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Send a chat completion request.

        Rate limits (429/503) and timeouts are retried with back-off; any
        other HTTP error is raised immediately.

        Returns:
            LLMResponse with the assistant text and token usage.
        """
        payload: dict = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        t0 = time.time()
        for attempt in range(_MAX_RETRIES):
            try:
                resp = self._post(payload)
                data = resp.json()
                text = data["choices"][0]["message"]["content"] or ""
                return LLMResponse(
                    text=text,
                    usage=data.get("usage") or {},
                    duration_ms=int((time.time() - t0) * 1000),
                )

            except httpx.HTTPStatusError as exc:
                resp = exc.response
                if resp.status_code in (429, 503) and attempt < _MAX_RETRIES - 1:
                    wait = self._retry_wait(resp, attempt)
                    log.warning(
                        "LLM rate limited (HTTP %s). Waiting %ds before retry %d/%d.",
                        resp.status_code, wait, attempt + 1, _MAX_RETRIES,
                    )
                    time.sleep(wait)
                    continue
                raise

            except httpx.TimeoutException:
                if attempt < _MAX_RETRIES - 1:
                    wait = min(_RATE_LIMIT_BASE_WAIT * (2 ** attempt), 60)
                    log.warning(
                        "LLM request timed out, retrying in %ds (attempt %d/%d)",
                        wait, attempt + 1, _MAX_RETRIES,
                    )
                    time.sleep(wait)
                    continue
                raise

        raise RuntimeError("LLM request failed after all retries")

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def extract_json(text: str) -> dict:
    """Extract a JSON object from an LLM response.

    Handles think tags, code fences, prose around the object, stray
    backslash escapes and trailing garbage after the closing brace.

    Raises:
        json.JSONDecodeError: If nothing parseable is found.
    """
    if "<think>" in text:
        after = text.split("</think>")[-1].strip()
        if after:
            text = after
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        text = text.split("```")[1].split("```")[0]
    text = text.strip()

    start = text.find("{")
    if start > 0:
        text = text[start:]

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    text = re.sub(r'\\([^"\\\/bfnrtu])', r"\1", text)
    end = text.rfind("}")
    if end != -1:
        text = text[:end + 1]
    while text.endswith("}"):
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            text = text[:-1].rstrip()
    raise json.JSONDecodeError("Could not parse JSON", text, 0)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_instance: LLMClient | None = None


def get_client() -> LLMClient:
    """Return (or create) the module-level LLMClient singleton."""
    global _instance
    if _instance is None:
        base_url, model, api_key = _detect_provider()
        log.info("LLM provider: %s  model: %s", base_url, model)
        _instance = LLMClient(base_url, model, api_key)
    return _instance


def set_client(client) -> None:
    """Replace the singleton (tests inject a fake with a compatible chat())."""
    global _instance
    _instance = client
