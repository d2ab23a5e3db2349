"""Routing helpers for selecting the model provider and per-stage models.

The router does not couple directly to concrete SDK clients; instead it
selects a provider configuration that the backend uses to instantiate the
chat client. This keeps the selection policy unit-testable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Set, Tuple

from ..domain.models import ModelTier, Stage


@dataclass(frozen=True)
class ProviderSelection:
    """Returned details about the provider and model that should handle a stage."""

    name: str
    model: str
    api_key_env: Optional[str]
    base_url_env: Optional[str] = None
    default_base_url: Optional[str] = None
    requires_api_key: bool = True


class ModelRouter:
    """Policy-based router: first available provider, then a model by tier."""

    PROVIDER_CONFIG: Dict[str, Dict[str, Optional[str] | bool]] = {
        "openai": {
            "api_key_env": "OPENAI_API_KEY",
            "base_url_env": "OPENAI_BASE_URL",
            "model_env": "OPENAI_MODEL",
            "fast_model": "gpt-4o-mini",
            "quality_model": "gpt-4o",
            "default_base_url": "https://api.openai.com/v1",
        },
        "xai": {
            "api_key_env": "XAI_API_KEY",
            "base_url_env": "XAI_BASE_URL",
            "model_env": "XAI_MODEL",
            "fast_model": "grok-3-mini",
            "quality_model": "grok-2-latest",
            "default_base_url": "https://api.x.ai/v1",
        },
        "gemini": {
            "api_key_env": "GEMINI_API_KEY",
            "base_url_env": "GEMINI_BASE_URL",
            "model_env": "GEMINI_MODEL",
            "fast_model": "gemini-2.5-flash",
            "quality_model": "gemini-2.5-pro",
            "default_base_url": "https://generativelanguage.googleapis.com/v1beta/openai/",
        },
        "local": {
            "api_key_env": "LOCAL_API_KEY",
            "base_url_env": "LOCAL_BASE_URL",
            "model_env": "LOCAL_MODEL",
            "fast_model": "gpt-oss:20b",
            "quality_model": "gpt-oss:120b",
            "default_base_url": "http://127.0.0.1:11434/v1",
            "requires_api_key": False,
        },
    }

    PROVIDER_PRIORITY: Tuple[str, ...] = ("openai", "xai", "gemini", "local")

    # Which stages get the quality model under each tier.
    TIER_QUALITY_STAGES: Dict[str, Tuple[Stage, ...]] = {
        "fast": (),
        "balanced": (Stage.CODE,),
        "quality": (Stage.INTENT, Stage.ARCHITECTURE, Stage.CODE, Stage.CONTEXT),
    }

    def __init__(
        self,
        env: Optional[Mapping[str, str]] = None,
        allowed_providers: Optional[Iterable[str]] = None,
    ) -> None:
        self._env = env if env is not None else os.environ
        self._allowed: Optional[Set[str]] = set(allowed_providers) if allowed_providers else None
        preferred = (self._env.get("GENSTREAM_MODEL_PROVIDER") or "").strip().lower()
        self._preferred_provider = preferred if preferred in self.PROVIDER_CONFIG else None

    # ------------------------------------------------------------------
    # Provider resolution helpers
    # ------------------------------------------------------------------
    def _provider_available(self, provider: str) -> bool:
        cfg = self.PROVIDER_CONFIG.get(provider)
        if not cfg:
            return False
        if self._allowed is not None and provider not in self._allowed:
            return False
        if bool(cfg.get("requires_api_key", True)):
            api_key_env = cfg.get("api_key_env")
            return bool(api_key_env and self._env.get(str(api_key_env)))
        # Keyless providers need an explicit endpoint.
        base_url_env = cfg.get("base_url_env")
        return bool(base_url_env and self._env.get(str(base_url_env)))

    def model_for(self, provider: str, stage: Stage, tier: ModelTier) -> str:
        cfg = self.PROVIDER_CONFIG[provider]
        override = self._env.get(str(cfg.get("model_env") or ""))
        if override:
            return override
        quality_stages = self.TIER_QUALITY_STAGES.get(tier, self.TIER_QUALITY_STAGES["balanced"])
        key = "quality_model" if stage in quality_stages else "fast_model"
        return str(cfg.get(key) or "")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def select_provider(self, stage: Stage, tier: ModelTier = "balanced") -> ProviderSelection:
        """Return the provider and model selected for ``stage``.

        Raises
        ------
        RuntimeError
            If no configured provider is currently available.
        """

        priority = list(self.PROVIDER_PRIORITY)
        if self._preferred_provider:
            priority = [self._preferred_provider] + [p for p in priority if p != self._preferred_provider]
        for provider in priority:
            if self._provider_available(provider):
                cfg = self.PROVIDER_CONFIG[provider]
                return ProviderSelection(
                    name=provider,
                    model=self.model_for(provider, stage, tier),
                    api_key_env=cfg.get("api_key_env"),  # type: ignore[arg-type]
                    base_url_env=cfg.get("base_url_env"),  # type: ignore[arg-type]
                    default_base_url=cfg.get("default_base_url"),  # type: ignore[arg-type]
                    requires_api_key=bool(cfg.get("requires_api_key", True)),
                )
        raise RuntimeError("No active model provider available for this task.")

    def maybe_select_provider(self, stage: Stage, tier: ModelTier = "balanced") -> Optional[ProviderSelection]:
        """Like :meth:`select_provider` but returns ``None`` on failure."""

        try:
            return self.select_provider(stage, tier)
        except RuntimeError:
            return None
