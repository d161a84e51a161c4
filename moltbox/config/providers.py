"""
Model provider selection.

Exactly one provider is configured per materialisation. Each variant has a
resolver; resolvers run in fixed precedence and the first match wins:

1. MOONSHOT_API_KEY             -> AlternateProvider (Kimi, OpenAI-compatible)
2. base URL with a known suffix -> SuffixCatalogProvider (e.g. .../openai)
3. any other base URL           -> CustomDefaultProvider (Anthropic at that URL)
4. nothing                      -> BuiltinDefaultProvider (gateway's own catalog)
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .catalogs import (
    ANTHROPIC_BUILTIN_CATALOG,
    ANTHROPIC_CATALOG,
    MOONSHOT_CATALOG,
    SUFFIX_CATALOGS,
    ProviderCatalog,
)
from .document import ensure_object
from .errors import CatalogInvariantError

DEFAULT_MOONSHOT_BASE_URL = "https://api.moonshot.cn/v1"


@dataclass(frozen=True)
class AlternateProvider:
    api_key: str
    base_url: str = DEFAULT_MOONSHOT_BASE_URL
    catalog: ProviderCatalog = MOONSHOT_CATALOG

    def provider_section(self) -> dict[str, Any] | None:
        return {
            "baseUrl": self.base_url,
            "api": self.catalog.api,
            "apiKey": self.api_key,
            "models": [m.to_config() for m in self.catalog.models],
        }


@dataclass(frozen=True)
class SuffixCatalogProvider:
    base_url: str
    catalog: ProviderCatalog

    def provider_section(self) -> dict[str, Any] | None:
        # No apiKey: the gateway falls back to the provider's own env var.
        return {
            "baseUrl": self.base_url,
            "api": self.catalog.api,
            "models": [m.to_config() for m in self.catalog.models],
        }


@dataclass(frozen=True)
class CustomDefaultProvider:
    base_url: str
    api_key: str | None = None
    catalog: ProviderCatalog = ANTHROPIC_CATALOG

    def provider_section(self) -> dict[str, Any] | None:
        section: dict[str, Any] = {
            "baseUrl": self.base_url,
            "api": self.catalog.api,
            "models": [m.to_config() for m in self.catalog.models],
        }
        if self.api_key:
            section["apiKey"] = self.api_key
        return section


@dataclass(frozen=True)
class BuiltinDefaultProvider:
    catalog: ProviderCatalog = ANTHROPIC_BUILTIN_CATALOG

    def provider_section(self) -> dict[str, Any] | None:
        return None


ProviderSelection = (
    AlternateProvider | SuffixCatalogProvider | CustomDefaultProvider | BuiltinDefaultProvider
)


def override_base_url(env: Mapping[str, str]) -> str:
    raw = env.get("AI_GATEWAY_BASE_URL") or env.get("ANTHROPIC_BASE_URL") or ""
    return raw.rstrip("/")


def resolve_alternate(env: Mapping[str, str]) -> AlternateProvider | None:
    api_key = env.get("MOONSHOT_API_KEY")
    if not api_key:
        return None
    base_url = (env.get("MOONSHOT_BASE_URL") or DEFAULT_MOONSHOT_BASE_URL).rstrip("/")
    return AlternateProvider(api_key=api_key, base_url=base_url)


def resolve_suffix_catalog(env: Mapping[str, str]) -> SuffixCatalogProvider | None:
    base_url = override_base_url(env)
    if not base_url:
        return None
    for suffix, catalog in SUFFIX_CATALOGS.items():
        if base_url.endswith(suffix):
            return SuffixCatalogProvider(base_url=base_url, catalog=catalog)
    return None


def resolve_custom_default(env: Mapping[str, str]) -> CustomDefaultProvider | None:
    base_url = override_base_url(env)
    if not base_url:
        return None
    return CustomDefaultProvider(base_url=base_url, api_key=env.get("ANTHROPIC_API_KEY") or None)


def resolve_builtin_default(env: Mapping[str, str]) -> BuiltinDefaultProvider:
    return BuiltinDefaultProvider()


RESOLVERS: tuple[Callable[[Mapping[str, str]], ProviderSelection | None], ...] = (
    resolve_alternate,
    resolve_suffix_catalog,
    resolve_custom_default,
    resolve_builtin_default,
)


def select_provider(env: Mapping[str, str]) -> ProviderSelection:
    for resolver in RESOLVERS:
        selection = resolver(env)
        if selection is not None:
            return selection
    raise CatalogInvariantError("no provider resolver matched")


def apply_provider(config: dict[str, Any], selection: ProviderSelection) -> None:
    """Write the selected provider, its model allow-list and the primary model."""
    catalog = selection.catalog
    defaults = config["agents"]["defaults"]

    section = selection.provider_section()
    if section is not None:
        providers = ensure_object(ensure_object(config, "models"), "providers")
        providers[catalog.provider] = section

    # Registering the catalog makes the models show up in /models
    allowed = ensure_object(defaults, "models")
    for model in catalog.models:
        allowed[catalog.qualified(model)] = {"alias": model.alias}

    defaults["model"]["primary"] = catalog.qualified(catalog.default_model)

    primary = defaults["model"]["primary"]
    if primary not in catalog.qualified_ids:
        raise CatalogInvariantError(
            f"primary model {primary!r} is not in the {catalog.provider} catalog"
        )
