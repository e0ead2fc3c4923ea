"""
Platform-agnostic LLM chat using Google Generative AI (Gemini).
Uses LLM_API_KEY from environment (Gemini API key from Google AI Studio).
"""
import asyncio
import json
import logging
import os
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

LLM_API_KEY = os.environ.get("LLM_API_KEY")
DEFAULT_MODEL = "gemini-2.0-flash"


def _get_api_key() -> Optional[str]:
    return LLM_API_KEY


def is_configured() -> bool:
    return bool(_get_api_key())


def _sync_chat(system_prompt: str, user_text: str, model: str = DEFAULT_MODEL) -> str:
    """Synchronous chat completion using Google Generative AI."""
    import google.generativeai as genai
    api_key = _get_api_key()
    if not api_key:
        raise ValueError("LLM_API_KEY not found in environment")
    genai.configure(api_key=api_key)
    model_name = model if model and "gemini" in model else DEFAULT_MODEL
    gemini = genai.GenerativeModel(
        model_name,
        system_instruction=system_prompt,
    )
    response = gemini.generate_content(user_text)
    if not response or not response.text:
        raise ValueError("Empty response from LLM")
    return response.text


def parse_json_reply(text: str) -> Dict[str, Any]:
    """Parse a JSON object reply, tolerating a markdown code fence."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.split("\n", 1)[1] if "\n" in cleaned else ""
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    parsed = json.loads(cleaned)
    if not isinstance(parsed, dict):
        raise ValueError("LLM reply is not a JSON object")
    return parsed


async def chat(
    system_prompt: str,
    user_text: str,
    model: str = DEFAULT_MODEL,
) -> str:
    """Async chat completion. Runs sync SDK in thread pool."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(
        None,
        lambda: _sync_chat(system_prompt, user_text, model),
    )


async def chat_json(
    system_prompt: str,
    user_text: str,
    model: str = DEFAULT_MODEL,
) -> Dict[str, Any]:
    """Chat completion whose reply must be a JSON object."""
    reply = await chat(system_prompt, user_text, model)
    return parse_json_reply(reply)
