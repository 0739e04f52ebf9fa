from __future__ import annotations

from llm_gateway.config import GatewayConfig, ProviderDescriptor
from llm_gateway.errors import ConfigurationError, RequestValidationError


class ModelResolver:
    def __init__(
        self,
        model_mapping: dict[str, str],
        *,
        default_embedding_model: str | None = None,
    ) -> None:
        if not model_mapping.get("default"):
            raise ValueError("model mapping must contain a 'default' entry")
        self._mapping = dict(model_mapping)
        self._default_embedding_model = default_embedding_model

    @property
    def default_target(self) -> str:
        return self._mapping["default"]

    def resolve(self, requested_model: str | None) -> str:
        name = (requested_model or "").strip()
        if name:
            target = self._mapping.get(name)
            if target:
                return target
        return self._mapping["default"]

    def resolve_embedding(self, requested_model: str | None) -> str:
        name = (requested_model or "").strip()
        if name and self._mapping.get(name):
            return self._mapping[name]
        if self._default_embedding_model:
            return self.resolve(self._default_embedding_model)
        return self._mapping["default"]

    def mapping(self) -> dict[str, str]:
        return dict(self._mapping)

    def client_models(self) -> list[str]:
        return sorted(name for name in self._mapping if name != "default")

    def set_mapping(self, name: str, target: str) -> None:
        name = name.strip()
        target = target.strip()
        if not name or not target:
            raise RequestValidationError(
                "Mapping name and target must be non-empty strings."
            )
        self._mapping[name] = target

    def remove_mapping(self, name: str) -> bool:
        if name == "default":
            raise RequestValidationError(
                "The 'default' mapping cannot be removed.", code="default_required"
            )
        return self._mapping.pop(name, None) is not None


class ProviderRegistry:
    def __init__(
        self,
        providers: list[ProviderDescriptor],
        *,
        model_providers: dict[str, str] | None = None,
        default_provider: str,
    ) -> None:
        self._providers: dict[str, ProviderDescriptor] = {
            provider.name: provider for provider in providers
        }
        self._model_providers = dict(model_providers or {})
        self._default_provider = default_provider
        self._key_index: dict[str, int] = {}

    @classmethod
    def from_config(cls, config: GatewayConfig) -> ProviderRegistry:
        return cls(
            config.providers,
            model_providers=config.model_providers,
            default_provider=config.default_provider,
        )

    def lookup(self, target_model: str) -> ProviderDescriptor:
        explicit = self._model_providers.get(target_model)
        if explicit is not None:
            return self._require(explicit, target_model)

        for provider in self._providers.values():
            if provider.model_prefix and target_model.startswith(provider.model_prefix):
                return provider

        namespace, sep, _ = target_model.partition("/")
        if sep:
            for provider in self._providers.values():
                if namespace in provider.namespaces:
                    return provider
        else:
            for provider in self._providers.values():
                if any(
                    target_model.startswith(f"{prefix}-") for prefix in provider.namespaces
                ):
                    return provider

        return self._require(self._default_provider, target_model)

    def _require(self, name: str, target_model: str) -> ProviderDescriptor:
        provider = self._providers.get(name)
        if provider is None:
            raise ConfigurationError(
                f"No provider named '{name}' is registered for model '{target_model}'.",
                code="provider_not_found",
            )
        return provider

    def next_api_key(self, provider: ProviderDescriptor) -> str:
        keys = provider.resolved_api_keys()
        if not keys:
            raise ConfigurationError(
                f"Provider '{provider.name}' has no API key configured.",
            )
        index = self._key_index.get(provider.name, 0)
        self._key_index[provider.name] = (index + 1) % len(keys)
        return keys[index % len(keys)]

    def get(self, name: str) -> ProviderDescriptor | None:
        return self._providers.get(name)

    def providers(self) -> list[ProviderDescriptor]:
        return list(self._providers.values())

    def register(self, descriptor: ProviderDescriptor) -> None:
        existing = self._providers.get(descriptor.name)
        if existing is not None and existing.builtin:
            raise RequestValidationError(
                f"Built-in provider '{descriptor.name}' cannot be replaced.",
                code="builtin_provider",
            )
        self._providers[descriptor.name] = descriptor.model_copy(
            update={"builtin": False}
        )
        self._key_index.pop(descriptor.name, None)

    def remove(self, name: str) -> bool:
        existing = self._providers.get(name)
        if existing is None:
            return False
        if existing.builtin:
            raise RequestValidationError(
                f"Built-in provider '{name}' cannot be removed.",
                code="builtin_provider",
            )
        del self._providers[name]
        self._key_index.pop(name, None)
        for model, provider_name in list(self._model_providers.items()):
            if provider_name == name:
                del self._model_providers[model]
        return True
