from __future__ import annotations
import asyncio
from typing import List, Optional, Tuple
from groq import Groq
from ..config import settings

_client: Groq | None = None
_client_key: Optional[str] = None

def _get_client(api_key: Optional[str] = None) -> Groq:
    global _client, _client_key
    key = api_key or settings.GROQ_API_KEY
    if _client is None or key != _client_key:
        _client = Groq(api_key=key)
        _client_key = key
    return _client

async def chat(
    messages: List[dict],
    *,
    model: str | None = None,
    temperature: float = 0.2,
    max_tokens: int = 900,
    api_key: Optional[str] = None,
) -> Tuple[str, int, int]:
    """
    Returns (text, prompt_tokens, completion_tokens)
    """
    client = _get_client(api_key)

    def _call():
        return client.chat.completions.create(
            model=model or settings.GROQ_MODEL,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    resp = await asyncio.to_thread(_call)
    text = resp.choices[0].message.content or ""
    usage = getattr(resp, "usage", None)
    prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
    completion_tokens = getattr(usage, "completion_tokens", 0) or 0
    return text, prompt_tokens, completion_tokens

def summary_messages(prompt: str, text: str, chunk_label: str = "") -> List[dict]:
    head = f"{prompt}\n\n({chunk_label})" if chunk_label else prompt
    return [
        {"role": "system", "content": "You are a careful summarizer. Do not invent facts."},
        {"role": "user", "content": f"{head}\n\n---\n{text}"},
    ]
