from __future__ import annotations

from typing import Any

DEFAULT_TARGET_MODEL = "deepseek/deepseek-r1-0528:free"
DEFAULT_EMBEDDING_MODEL = "text-embedding-ada-002"

OPENROUTER_PROVIDER = "openrouter"
GEMINI_PROVIDER = "gemini"

MODEL_MAPPING: dict[str, str] = {
    "gpt-3.5-turbo": DEFAULT_TARGET_MODEL,
    "gpt-3.5-turbo-instruct": DEFAULT_TARGET_MODEL,
    "gpt-3.5-turbo-16k": DEFAULT_TARGET_MODEL,
    "gpt-4": DEFAULT_TARGET_MODEL,
    "gpt-4-turbo": DEFAULT_TARGET_MODEL,
    "gpt-4o": "qwen/qwen3-235b-a22b:free",
    "gpt-4o-mini": "qwen/qwen3-next-80b-a3b-instruct:free",
    "gpt-4o-mini-2024-07-18": "qwen/qwen3-next-80b-a3b-instruct:free",
    "text-embedding-ada-002": "mistralai/mistral-embed:free",
    "text-davinci-003": "mistralai/mistral-embed:free",
    "gpt-4-vision-preview": "qwen/qwen3-vl-235b-a22b-thinking:free",
    "gpt-4-vision": "qwen/qwen3-vl-30b-a3b-thinking:free",
    "gpt-4o-vision": "qwen/qwen3-vl-235b-a22b-thinking:free",
    "gpt-4-code": "qwen/qwen3-coder:free",
    "code-davinci-002": "qwen/qwen3-coder:free",
    "mistral-small": "mistralai/mistral-small-3.1-24b-instruct:free",
    "mistral-tiny": "mistralai/mistral-small-2501:free",
    "llama-3.2": "meta-llama/llama-3.2-3b-instruct:free",
    "llama-3.3": "meta-llama/llama-3.3-70b-instruct:free",
    "gemma-7b": "google/gemma-2-9b-it:free",
    "gemma-2b": "google/gemma-2-2b-it:free",
    "gemini-3-flash": "gemini-3-flash-preview",
    "gemini-3-pro": "gemini-3-pro-preview",
    "gemini-2.0-flash": "gemini-2.0-flash-exp",
    "gemini-1.5-flash": "gemini-1.5-flash",
    "gemini-1.5-pro": "gemini-1.5-pro",
    "default": DEFAULT_TARGET_MODEL,
}

FALLBACK_CHAIN: dict[str, str] = {
    DEFAULT_TARGET_MODEL: "qwen/qwen3-235b-a22b:free",
    "qwen/qwen3-235b-a22b:free": "qwen/qwen3-next-80b-a3b-instruct:free",
    "qwen/qwen3-next-80b-a3b-instruct:free": (
        "mistralai/mistral-small-3.1-24b-instruct:free"
    ),
    "qwen/qwen3-coder:free": "mistralai/mistral-small-3.1-24b-instruct:free",
    "qwen/qwen3-vl-235b-a22b-thinking:free": "qwen/qwen3-vl-30b-a3b-thinking:free",
    "qwen/qwen3-vl-30b-a3b-thinking:free": (
        "mistralai/mistral-small-3.1-24b-instruct:free"
    ),
    "mistralai/mistral-small-3.1-24b-instruct:free": (
        "mistralai/mistral-small-2501:free"
    ),
    "mistralai/mistral-small-2501:free": "meta-llama/llama-3.3-70b-instruct:free",
    "meta-llama/llama-3.3-70b-instruct:free": "meta-llama/llama-3.2-3b-instruct:free",
    "meta-llama/llama-3.2-3b-instruct:free": "google/gemma-2-9b-it:free",
    "google/gemma-2-9b-it:free": "google/gemma-2-2b-it:free",
}

MODEL_PROVIDERS: dict[str, str] = {
    "gemini-3-flash-preview": GEMINI_PROVIDER,
    "gemini-3-pro-preview": GEMINI_PROVIDER,
    "gemini-2.0-flash-exp": GEMINI_PROVIDER,
    "gemini-1.5-flash": GEMINI_PROVIDER,
    "gemini-1.5-pro": GEMINI_PROVIDER,
}

GEMINI_GENERATION_DEFAULTS: dict[str, Any] = {
    "max_output_tokens": 2048,
    "temperature": 0.7,
    "top_p": 0.95,
}
