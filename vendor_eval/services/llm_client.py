"""
vendor_eval/services/llm_client.py

Async LLM client for OpenAI and Google Gemini, used by the specialist executor.

Design goals:
- Single call_llm() coroutine taking a system + user message pair.
- JSON-constrained output: OpenAI `response_format={"type": "json_object"}`,
  Gemini `response_mime_type="application/json"`.
- Return consistent structure:
    {
      "text": "<best text output>",
      "raw": <raw provider response object>,
      "structured": <parsed JSON object, else None>,
      "provider": "openai" | "gemini",
      "model": "<model name>",
      "total_tokens": <int>
    }
- Errors from the SDKs are not caught here; the caller owns timeouts and fallbacks.
"""

from __future__ import annotations
import json
import logging
from typing import Any, Dict, Optional

from vendor_eval.config import cfg

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Lazy clients to avoid hard SDK initialisation at import time.
_openai_client = None
_genai_module = None


def _init_openai():
    global _openai_client
    if _openai_client is not None:
        return _openai_client

    from openai import AsyncOpenAI
    kwargs: Dict[str, Any] = {}
    if cfg.OPENAI_API_KEY:
        kwargs["api_key"] = cfg.OPENAI_API_KEY
    if cfg.OPENAI_BASE_URL:
        kwargs["base_url"] = cfg.OPENAI_BASE_URL
    _openai_client = AsyncOpenAI(**kwargs)
    logger.debug("AsyncOpenAI client initialized")
    return _openai_client


def _init_genai():
    global _genai_module
    if _genai_module is not None:
        return _genai_module

    import google.generativeai as genai
    genai.configure(api_key=cfg.GEMINI_API_KEY)
    _genai_module = genai
    logger.debug("google.generativeai client initialized")
    return _genai_module


def reset_clients() -> None:
    """Forget cached SDK clients (used after config changes and in tests)."""
    global _openai_client, _genai_module
    _openai_client = None
    _genai_module = None


def _extract_json_from_text(text: str) -> Optional[Any]:
    """
    Try to extract a JSON object from the given text.
    Returns parsed JSON or None.
    """
    if not text or not isinstance(text, str):
        return None
    s = text.strip()
    try:
        return json.loads(s)
    except ValueError:
        pass
    # find first { and last }
    start = s.find("{")
    end = s.rfind("}")
    if start != -1 and end != -1 and end > start:
        fragment = s[start:end + 1]
        try:
            return json.loads(fragment)
        except ValueError:
            try:
                # Remove trailing commas
                cleaned = fragment.replace(",}", "}").replace(",]", "]")
                return json.loads(cleaned)
            except ValueError:
                return None
    return None


def choose_provider(provider: Optional[str] = None) -> str:
    chosen = provider or cfg.LLM_PROVIDER
    if not chosen:
        if cfg.OPENAI_API_KEY:
            chosen = "openai"
        elif cfg.GEMINI_API_KEY:
            chosen = "gemini"
        else:
            raise RuntimeError("No LLM provider configured (set OPENAI_API_KEY or GEMINI_API_KEY in env)")
    return chosen.lower()


async def call_llm(system: str,
                   user: str,
                   provider: Optional[str] = None,
                   model: Optional[str] = None,
                   temperature: Optional[float] = None,
                   max_tokens: Optional[int] = None) -> Dict[str, Any]:
    """
    One JSON-constrained completion.

    Parameters
    ----------
    system: str
        System message (role instructions).
    user: str
        User message (requirements, proposal and any enrichment sections).
    provider: Optional[str]
        "openai" or "gemini". Defaults to LLM_PROVIDER, then whichever key is present.
    model: Optional[str]
        Provider-specific model override. Defaults to EVAL_MODEL for OpenAI
        and GEMINI_MODEL for Gemini.
    temperature: Optional[float]
        Sampling temperature, EVAL_TEMPERATURE if None.
    max_tokens: Optional[int]
        Upper bound on completion tokens, provider default if None.
    """
    chosen_provider = choose_provider(provider)
    temperature = cfg.EVAL_TEMPERATURE if temperature is None else temperature

    if chosen_provider == "openai":
        model = model or cfg.EVAL_MODEL
        client = _init_openai()
        kwargs: Dict[str, Any] = {}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        resp = await client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            response_format={"type": "json_object"},
            temperature=temperature,
            **kwargs,
        )
        content = resp.choices[0].message.content or ""
        usage = getattr(resp, "usage", None)
        return {
            "text": content,
            "raw": resp,
            "structured": _extract_json_from_text(content),
            "provider": chosen_provider,
            "model": model,
            "total_tokens": getattr(usage, "total_tokens", 0) or 0,
        }

    if chosen_provider == "gemini":
        model = model or cfg.GEMINI_MODEL
        genai = _init_genai()
        model_instance = genai.GenerativeModel(model, system_instruction=system)
        generation_config: Dict[str, Any] = {
            "temperature": temperature,
            "response_mime_type": "application/json",
        }
        if max_tokens:
            generation_config["max_output_tokens"] = max_tokens
        resp = await model_instance.generate_content_async(
            user,
            generation_config=genai.GenerationConfig(**generation_config),
        )
        text = getattr(resp, "text", "") or ""
        usage = getattr(resp, "usage_metadata", None)
        return {
            "text": text,
            "raw": resp,
            "structured": _extract_json_from_text(text),
            "provider": chosen_provider,
            "model": model,
            "total_tokens": getattr(usage, "total_token_count", 0) or 0,
        }

    raise ValueError(f"Unsupported provider: {chosen_provider}")
