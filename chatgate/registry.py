"""
Provider registry for Chatgate.

Maps a requested model id to a backend family and its transport mode. The
tables below are plain data: adding a backend means adding rows, not code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from chatgate.config import GatewayConfig, get_model_overrides
from chatgate.schemas import Route, TransportMode


logger = logging.getLogger("chatgate.registry")


class ProviderFamily(str, Enum):
    """Upstream backend families."""
    DEEPSEEK = "deepseek"
    CLAUDE = "claude"
    MISTRAL = "mistral"
    GROQ = "groq"
    QWEN = "qwen"


@dataclass(frozen=True)
class FamilySpec:
    """How a family is reached."""
    transport: TransportMode
    function: str  # Edge function name under the functions base URL


# =============================================================================
# DEFAULT TABLES
# =============================================================================

DEFAULT_FAMILIES: Dict[str, FamilySpec] = {
    ProviderFamily.DEEPSEEK.value: FamilySpec(TransportMode.STREAM, "deepseek-chat"),
    ProviderFamily.CLAUDE.value: FamilySpec(TransportMode.BATCH, "claude-chat"),
    ProviderFamily.MISTRAL.value: FamilySpec(TransportMode.BATCH, "mistral-chat"),
    ProviderFamily.GROQ.value: FamilySpec(TransportMode.BATCH, "groq-chat"),
    ProviderFamily.QWEN.value: FamilySpec(TransportMode.BATCH, "qwen-chat"),
}

# Unknown model ids fall back to the most common streaming family.
DEFAULT_FAMILY = ProviderFamily.DEEPSEEK.value

DEFAULT_MODELS: Dict[str, str] = {
    # DeepSeek
    "DeepSeek-V3": "deepseek",
    "DeepSeek-R1": "deepseek",
    # Claude
    "claude-3-haiku-20240307": "claude",
    # Mistral
    "mistral-medium-latest": "mistral",
    "mistral-small-latest": "mistral",
    "mistral-large-latest": "mistral",
    "codestral-latest": "mistral",
    "magistral-medium-latest": "mistral",
    "magistral-small-latest": "mistral",
    "devstral-medium-2507": "mistral",
    "devstral-small-latest": "mistral",
    "pixtral-large-latest": "mistral",
    "pixtral-12b": "mistral",
    "mistral-nemo": "mistral",
    "mistral-saba-latest": "mistral",
    "open-mistral-7b": "mistral",
    "open-mixtral-8x7b": "mistral",
    "open-mixtral-8x22b": "mistral",
    "ministral-8b-latest": "mistral",
    "ministral-3b-latest": "mistral",
    # Groq
    "llama-3.1-8b-instant": "groq",
    "llama-3.3-70b-versatile": "groq",
    "openai/gpt-oss-20b": "groq",
    "openai/gpt-oss-120b": "groq",
    # Qwen
    "qwen-max": "qwen",
    "qwen-plus": "qwen",
    "qwen-flash": "qwen",
    "qwen-turbo": "qwen",
    "qwq-plus": "qwen",
    "qwen3-coder-plus": "qwen",
    "qwen3-coder-flash": "qwen",
}


class ProviderRouter:
    """
    Resolves model ids to routes.

    Example:
        ```python
        router = ProviderRouter(GatewayConfig(base_url="https://xyz.supabase.co"))
        route = router.resolve("mistral-small-latest")
        route.transport   # TransportMode.BATCH
        route.endpoint    # "https://xyz.supabase.co/functions/v1/mistral-chat"
        ```
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        models: Optional[Dict[str, str]] = None,
        families: Optional[Dict[str, FamilySpec]] = None,
        default_family: str = DEFAULT_FAMILY,
    ):
        """
        Initialize the router.

        Args:
            config: Gateway configuration (functions base URL).
            models: Model id -> family table. Defaults to DEFAULT_MODELS plus
                any CHATGATE_MODELS_JSON overrides.
            families: Family -> FamilySpec table.
            default_family: Family used for unknown model ids.
        """
        self.config = config or GatewayConfig()
        self.families = dict(families or DEFAULT_FAMILIES)
        self.models: Dict[str, str] = {}
        if models is None:
            self.models.update(DEFAULT_MODELS)
            for model_id, family in get_model_overrides().items():
                if family not in self.families:
                    logger.warning("Ignoring override for '%s': unknown family '%s'", model_id, family)
                    continue
                self.models[model_id] = family
        else:
            for model_id, family in models.items():
                self.register(model_id, family)

        if default_family not in self.families:
            raise ValueError(f"Unknown default family: {default_family}")
        self.default_family = default_family

    def register(self, model_id: str, family: str) -> None:
        """Add or replace a model id mapping."""
        if family not in self.families:
            raise ValueError(f"Unknown provider family '{family}' for model '{model_id}'")
        self.models[model_id] = family

    def register_family(self, family: str, spec: FamilySpec) -> None:
        """Add or replace a backend family."""
        self.families[family] = spec

    def family_for(self, model_id: str) -> str:
        family = self.models.get(model_id)
        if family is None:
            logger.debug("Unknown model '%s'; routing to %s", model_id, self.default_family)
            return self.default_family
        return family

    def resolve(self, model_id: str) -> Route:
        """
        Map a model id to its route.

        Unknown ids are routed to the default streaming family rather than
        rejected, so newer model names keep working.
        """
        family = self.family_for(model_id)
        spec = self.families[family]
        return Route(
            model_id=model_id,
            family=family,
            transport=spec.transport,
            endpoint=f"{self.config.functions_url}/{spec.function}",
        )

    def list_models(self) -> list[dict]:
        """All known models with their family and transport."""
        return [
            {
                "model": model_id,
                "family": family,
                "transport": self.families[family].transport.value,
            }
            for model_id, family in sorted(self.models.items())
        ]
