"""Built-in model catalogs for the providers the sandbox knows how to configure."""

from pydantic import BaseModel, ConfigDict, Field


class ModelEntry(BaseModel):
    """One model in a provider catalog, serialised in the gateway's camelCase shape."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    alias: str
    context_window: int = Field(alias="contextWindow")
    max_tokens: int | None = Field(default=None, alias="maxTokens")

    def to_config(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"alias"})


class ProviderCatalog(BaseModel):
    """A provider key, its wire API and its models. The first model is the default."""

    model_config = ConfigDict(frozen=True)

    provider: str
    api: str
    models: tuple[ModelEntry, ...]

    @property
    def default_model(self) -> ModelEntry:
        return self.models[0]

    def qualified(self, model: ModelEntry) -> str:
        return f"{self.provider}/{model.id}"

    @property
    def qualified_ids(self) -> tuple[str, ...]:
        return tuple(self.qualified(m) for m in self.models)


MOONSHOT_CATALOG = ProviderCatalog(
    provider="moonshot",
    api="openai-completions",
    models=(
        ModelEntry(
            id="kimi-k2.5",
            name="Kimi K2.5",
            alias="Kimi K2.5",
            contextWindow=256000,
            maxTokens=8192,
        ),
        ModelEntry(
            id="kimi-k2-0905-preview",
            name="Kimi K2 0905 Preview",
            alias="Kimi K2 0905",
            contextWindow=256000,
            maxTokens=8192,
        ),
        ModelEntry(
            id="kimi-k2-turbo-preview",
            name="Kimi K2 Turbo",
            alias="Kimi K2 Turbo",
            contextWindow=256000,
            maxTokens=8192,
        ),
        ModelEntry(
            id="kimi-k2-thinking",
            name="Kimi K2 Thinking",
            alias="Kimi K2 Thinking",
            contextWindow=256000,
            maxTokens=8192,
        ),
        ModelEntry(
            id="kimi-k2-thinking-turbo",
            name="Kimi K2 Thinking Turbo",
            alias="Kimi K2 Thinking Turbo",
            contextWindow=256000,
            maxTokens=8192,
        ),
    ),
)

OPENAI_CATALOG = ProviderCatalog(
    provider="openai",
    api="openai-responses",
    models=(
        ModelEntry(id="gpt-5.2", name="GPT-5.2", alias="GPT-5.2", contextWindow=200000),
        ModelEntry(id="gpt-5", name="GPT-5", alias="GPT-5", contextWindow=200000),
        ModelEntry(
            id="gpt-4.5-preview",
            name="GPT-4.5 Preview",
            alias="GPT-4.5",
            contextWindow=128000,
        ),
    ),
)

# Pinned model versions for a custom Anthropic-compatible endpoint.
ANTHROPIC_CATALOG = ProviderCatalog(
    provider="anthropic",
    api="anthropic-messages",
    models=(
        ModelEntry(
            id="claude-opus-4-5-20251101",
            name="Claude Opus 4.5",
            alias="Opus 4.5",
            contextWindow=200000,
        ),
        ModelEntry(
            id="claude-sonnet-4-5-20250929",
            name="Claude Sonnet 4.5",
            alias="Sonnet 4.5",
            contextWindow=200000,
        ),
        ModelEntry(
            id="claude-haiku-4-5-20251001",
            name="Claude Haiku 4.5",
            alias="Haiku 4.5",
            contextWindow=200000,
        ),
    ),
)

# Aliases resolved by the gateway's own catalog; never written as a provider section.
ANTHROPIC_BUILTIN_CATALOG = ProviderCatalog(
    provider="anthropic",
    api="anthropic-messages",
    models=(
        ModelEntry(
            id="claude-opus-4-5",
            name="Claude Opus 4.5",
            alias="Opus 4.5",
            contextWindow=200000,
        ),
        ModelEntry(
            id="claude-sonnet-4-5",
            name="Claude Sonnet 4.5",
            alias="Sonnet 4.5",
            contextWindow=200000,
        ),
        ModelEntry(
            id="claude-haiku-4-5",
            name="Claude Haiku 4.5",
            alias="Haiku 4.5",
            contextWindow=200000,
        ),
    ),
)

# Base-URL suffixes that select a non-default catalog (AI gateway routes).
SUFFIX_CATALOGS: dict[str, ProviderCatalog] = {
    "/openai": OPENAI_CATALOG,
}
