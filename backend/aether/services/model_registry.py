import logging
from dataclasses import dataclass, field
from typing import Iterable

from aether.core.config import Settings, get_settings
from aether.core.exceptions import ModelNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider: str
    # identifier sent to the provider's API
    api_model: str
    capabilities: tuple[str, ...] = ()
    # public | account_required | premium_required
    access_tier: str = "public"
    credits: int = 0
    is_api_key_only: bool = False

    @property
    def supports_reasoning(self) -> bool:
        return "reasoning" in self.capabilities

    @property
    def supports_tools(self) -> bool:
        return "tools" in self.capabilities


DEFAULT_CATALOG: tuple[ModelInfo, ...] = (
    ModelInfo("gemini-2.5-flash", "Gemini 2.5 Flash", "gemini", "gemini-2.5-flash",
              ("vision", "tools", "reasoning", "documents")),
    ModelInfo("gemini-2.0-flash", "Gemini 2.0 Flash", "gemini", "gemini-2.0-flash",
              ("vision", "tools", "documents")),
    ModelInfo("gemini-2.5-pro", "Gemini 2.5 Pro", "gemini", "gemini-2.5-pro",
              ("vision", "tools", "reasoning", "documents"), access_tier="premium_required"),
    ModelInfo("gpt-5", "GPT 5", "openai", "gpt-5",
              ("tools", "reasoning", "vision"), access_tier="premium_required", is_api_key_only=True),
    ModelInfo("gpt-5-mini", "GPT 5 Mini", "openai", "gpt-5-mini",
              ("tools", "reasoning", "vision"), access_tier="account_required", is_api_key_only=True),
    ModelInfo("gpt-4o-mini", "GPT-4o Mini", "openai", "gpt-4o-mini",
              ("tools", "vision", "documents"), access_tier="account_required", is_api_key_only=True),
    ModelInfo("moonshotai/kimi-k2:free", "Kimi K2 0711", "openrouter", "moonshotai/kimi-k2:free",
              ("tools",)),
    ModelInfo("kimi-k2-0711-preview", "Kimi K2 (Moonshot)", "moonshot", "kimi-k2-0711-preview",
              ("tools",), is_api_key_only=True),
    ModelInfo("deepseek/deepseek-r1-0528:free", "DeepSeek: R1 0528", "openrouter",
              "deepseek/deepseek-r1-0528:free", ("reasoning",)),
    ModelInfo("deepseek-r1-distill-llama-70b", "DeepSeek R1 Distill Llama 70B", "groq",
              "deepseek-r1-distill-llama-70b", ("reasoning",), access_tier="account_required"),
    ModelInfo("z-ai/glm-4.5-air:free", "GLM 4.5 Air", "openrouter", "z-ai/glm-4.5-air:free",
              ("tools", "reasoning")),
    ModelInfo("gpt-oss-120b", "GPT OSS 120B", "groq", "openai/gpt-oss-120b",
              ("tools", "reasoning"), access_tier="account_required"),
    ModelInfo("claude-4-sonnet", "Claude 4 Sonnet", "openrouter", "anthropic/claude-sonnet-4",
              ("tools", "reasoning", "documents", "vision"), access_tier="premium_required", credits=5),
)


@dataclass(frozen=True)
class RegistryPolicy:
    fallback_model_ids: tuple[str, ...] = ("gemini-2.5-flash", "gemini-2.0-flash", "google/gemini-flash-1.5")
    fallback_provider: str = "gemini"

    @classmethod
    def from_settings(cls, settings: Settings) -> "RegistryPolicy":
        return cls(
            fallback_model_ids=tuple(settings.fallback_model_ids),
            fallback_provider=settings.fallback_provider,
        )


@dataclass
class ModelRegistry:
    """Static model catalog with a fallback policy for unknown ids."""

    models: tuple[ModelInfo, ...] = DEFAULT_CATALOG
    policy: RegistryPolicy = field(default_factory=RegistryPolicy)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, models: Iterable[ModelInfo] | None = None) -> "ModelRegistry":
        settings = settings or get_settings()
        return cls(
            models=tuple(models) if models is not None else DEFAULT_CATALOG,
            policy=RegistryPolicy.from_settings(settings),
        )

    def find(self, model_id: str | None) -> ModelInfo | None:
        if not model_id:
            return None
        for model in self.models:
            if model.id == model_id:
                return model
        return None

    def fallback(self) -> ModelInfo:
        for model_id in self.policy.fallback_model_ids:
            model = self.find(model_id)
            if model:
                return model
        for model in self.models:
            if model.provider == self.policy.fallback_provider:
                return model
        if self.models:
            return self.models[0]
        raise ModelNotFound(", ".join(self.policy.fallback_model_ids) or "<empty catalog>")

    def resolve(self, model_id: str | None) -> ModelInfo:
        """Return the requested model, or the fallback model when it is unknown."""
        model = self.find(model_id)
        if model:
            return model
        fallback = self.fallback()
        logger.warning("Model %r not in catalog, falling back to %s", model_id, fallback.id)
        return fallback

    def supports_reasoning(self, model_id: str) -> bool:
        model = self.find(model_id)
        return bool(model and model.supports_reasoning)
