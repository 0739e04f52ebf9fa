from __future__ import annotations

from llm_gateway.providers.base import ProviderClient, normalize_openai_body
from llm_gateway.providers.gemini import GeminiProviderClient
from llm_gateway.providers.rest import RestProviderClient, build_http_client

__all__ = [
    "GeminiProviderClient",
    "ProviderClient",
    "RestProviderClient",
    "build_http_client",
    "normalize_openai_body",
]
