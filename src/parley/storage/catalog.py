"""
Catalog of the actors a conversation refers to.

Providers, models, personas and MCP server configurations are owned by the
host application. The engine only reads them, through this lookup object.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from parley.core.exceptions import CatalogLookupError
from parley.models.chat_models import ModelRef, Participant, Persona, Provider
from parley.models.mcp_models import McpServerConfig


@dataclass
class Catalog:
    """In-memory lookup of providers, models, personas and tool servers."""

    providers: dict[str, Provider] = field(default_factory=dict)
    models: dict[str, ModelRef] = field(default_factory=dict)
    personas: dict[str, Persona] = field(default_factory=dict)
    mcp_servers: list[McpServerConfig] = field(default_factory=list)
    # None enables the tools that are on by default
    enabled_builtin_tools: list[str] | None = None

    def add_provider(self, provider: Provider) -> Provider:
        self.providers[provider.id] = provider
        return provider

    def add_model(self, model: ModelRef) -> ModelRef:
        self.models[model.id] = model
        return model

    def add_persona(self, persona: Persona) -> Persona:
        self.personas[persona.id] = persona
        return persona

    def get_model(self, model_id: str) -> ModelRef:
        try:
            return self.models[model_id]
        except KeyError:
            raise CatalogLookupError(f"Model not found: {model_id}") from None

    def get_provider(self, provider_id: str) -> Provider:
        try:
            return self.providers[provider_id]
        except KeyError:
            raise CatalogLookupError(f"Provider not found: {provider_id}") from None

    def get_persona(self, persona_id: str | None) -> Persona | None:
        return self.personas.get(persona_id) if persona_id else None

    def participant_label(self, participant: Participant) -> str:
        """Display name of a participant: persona name, else model name."""
        persona = self.get_persona(participant.persona_id)
        if persona is not None:
            return persona.name
        model = self.models.get(participant.model_id)
        return model.label if model is not None else participant.model_id
