from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from llm_gateway import defaults
from llm_gateway.settings import Settings


class ProviderDescriptor(BaseModel):
    name: str
    kind: Literal["rest", "gemini", "custom"] = "custom"
    endpoint: str = ""
    api_keys: list[str] = Field(default_factory=list)
    api_key_env: str | None = None
    api_key_header: str = "Authorization"
    model_prefix: str = ""
    namespaces: list[str] = Field(default_factory=list)
    supports_streaming: bool = True
    supports_embeddings: bool = True
    extra_headers: dict[str, str] = Field(default_factory=dict)
    builtin: bool = False

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("provider name must not be empty")
        return normalized

    @field_validator("api_keys", "namespaces", mode="before")
    @classmethod
    def _coerce_string_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, list):
            raise ValueError("expected a list of strings")
        return [str(item).strip() for item in value if str(item).strip()]

    @model_validator(mode="after")
    def _check_endpoint(self) -> ProviderDescriptor:
        if self.kind != "gemini" and not self.endpoint.strip():
            raise ValueError(f"provider '{self.name}' requires an endpoint")
        if self.kind == "gemini":
            self.supports_streaming = False
            self.supports_embeddings = False
        return self

    def resolved_api_keys(self) -> list[str]:
        keys: list[str] = []
        if self.api_key_env:
            for item in os.getenv(self.api_key_env, "").split(","):
                item = item.strip()
                if item and item not in keys:
                    keys.append(item)
        for key in self.api_keys:
            if key not in keys:
                keys.append(key)
        return keys

    def upstream_model(self, target_model: str) -> str:
        if self.model_prefix and target_model.startswith(self.model_prefix):
            return target_model[len(self.model_prefix) :]
        return target_model

    def public_view(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "endpoint": self.endpoint,
            "api_key_header": self.api_key_header,
            "model_prefix": self.model_prefix,
            "namespaces": list(self.namespaces),
            "supports_streaming": self.supports_streaming,
            "supports_embeddings": self.supports_embeddings,
            "builtin": self.builtin,
            "configured": bool(self.resolved_api_keys()),
        }


class GatewayConfig(BaseModel):
    model_mapping: dict[str, str] = Field(
        default_factory=lambda: dict(defaults.MODEL_MAPPING)
    )
    fallback_chain: dict[str, str] = Field(
        default_factory=lambda: dict(defaults.FALLBACK_CHAIN)
    )
    providers: list[ProviderDescriptor] = Field(default_factory=list)
    model_providers: dict[str, str] = Field(
        default_factory=lambda: dict(defaults.MODEL_PROVIDERS)
    )
    default_provider: str = defaults.OPENROUTER_PROVIDER
    default_embedding_model: str = defaults.DEFAULT_EMBEDDING_MODEL

    @field_validator("model_mapping")
    @classmethod
    def _require_default(cls, value: dict[str, str]) -> dict[str, str]:
        target = value.get("default", "")
        if not isinstance(target, str) or not target.strip():
            raise ValueError("model_mapping must contain a non-empty 'default' entry")
        return value

    @model_validator(mode="after")
    def _check_providers(self) -> GatewayConfig:
        names = [provider.name for provider in self.providers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate provider names: {', '.join(duplicates)}")
        if self.providers and self.default_provider not in names:
            raise ValueError(
                f"default_provider '{self.default_provider}' is not a configured provider"
            )
        unknown = sorted(
            {name for name in self.model_providers.values() if name not in names}
        )
        if self.providers and unknown:
            raise ValueError(f"model_providers references unknown providers: {unknown}")
        return self


def builtin_providers(settings: Settings) -> list[ProviderDescriptor]:
    return [
        ProviderDescriptor(
            name=defaults.OPENROUTER_PROVIDER,
            kind="rest",
            endpoint=settings.openrouter_base_url,
            api_keys=settings.openrouter_api_keys_list,
            extra_headers={
                "HTTP-Referer": settings.gateway_referer,
                "X-Title": settings.gateway_title,
            },
            builtin=True,
        ),
        ProviderDescriptor(
            name=defaults.GEMINI_PROVIDER,
            kind="gemini",
            api_keys=settings.gemini_api_keys_list,
            namespaces=["gemini"],
            builtin=True,
        ),
    ]


def load_yaml_dict(path: str | Path, *, error_message: str | None = None) -> dict[str, Any]:
    resolved = Path(path)
    with resolved.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if isinstance(payload, dict):
        return payload
    raise ValueError(error_message or f"Expected YAML object in '{resolved}'.")


class GatewayConfigLoader:
    def __init__(self, config_path: str | Path) -> None:
        self._path = Path(config_path)
        self._config_path = str(config_path)

    def load_overlay(self) -> dict[str, Any]:
        if not self._path.exists():
            raise FileNotFoundError(
                f"Gateway config not found at '{self._config_path}'. "
                "Create it or unset GATEWAY_CONFIG_PATH.",
            )
        return load_yaml_dict(
            self._path,
            error_message=f"Expected YAML object in '{self._config_path}'.",
        )


def build_gateway_config(
    settings: Settings, overlay: dict[str, Any] | None = None
) -> GatewayConfig:
    if overlay is None and settings.gateway_config_path:
        overlay = GatewayConfigLoader(settings.gateway_config_path).load_overlay()
    overlay = overlay or {}

    model_mapping = dict(defaults.MODEL_MAPPING)
    model_mapping.update(_string_map(overlay.get("model_mapping"), "model_mapping"))
    fallback_chain = dict(defaults.FALLBACK_CHAIN)
    fallback_chain.update(_string_map(overlay.get("fallback_chain"), "fallback_chain"))
    model_providers = dict(defaults.MODEL_PROVIDERS)
    model_providers.update(
        _string_map(overlay.get("model_providers"), "model_providers")
    )

    providers: dict[str, ProviderDescriptor] = {
        provider.name: provider for provider in builtin_providers(settings)
    }
    raw_providers = overlay.get("providers") or []
    if not isinstance(raw_providers, list):
        raise ValueError("'providers' must be a list of provider descriptors.")
    for raw in raw_providers:
        descriptor = ProviderDescriptor.model_validate(raw)
        existing = providers.get(descriptor.name)
        if existing is not None and existing.builtin:
            # Overlay entries may re-point a built-in but keep its settings keys.
            merged_keys = [*existing.api_keys, *descriptor.api_keys]
            descriptor = descriptor.model_copy(
                update={"api_keys": merged_keys, "builtin": True}
            )
        providers[descriptor.name] = descriptor

    return GatewayConfig(
        model_mapping=model_mapping,
        fallback_chain=fallback_chain,
        providers=list(providers.values()),
        model_providers=model_providers,
        default_provider=str(
            overlay.get("default_provider") or defaults.OPENROUTER_PROVIDER
        ),
        default_embedding_model=str(
            overlay.get("default_embedding_model") or defaults.DEFAULT_EMBEDDING_MODEL
        ),
    )


def _string_map(value: Any, field_name: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"'{field_name}' must be a mapping of strings.")
    cleaned: dict[str, str] = {}
    for key, target in value.items():
        if not isinstance(key, str) or not isinstance(target, str):
            raise ValueError(f"'{field_name}' must be a mapping of strings.")
        if key.strip() and target.strip():
            cleaned[key.strip()] = target.strip()
    return cleaned
