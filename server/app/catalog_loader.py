"""YAML catalog loader.

Seeds providers, models and task affinities into the metering store from a
catalog file:

    providers:
      - id: prov-anthropic
        name: anthropic
        display_name: Anthropic
        priority: 10
        cost_per_1k_input_tokens: 0.003
        cost_per_1k_output_tokens: 0.015
        models:
          - id: model-claude-sonnet
            model_id: claude-3-5-sonnet-20240620
            display_name: Claude 3.5 Sonnet
            max_tokens: 8192
            capabilities: [code_generation, debugging]
    task_affinity:
      - task_type: debugging
        model_id: model-claude-sonnet
        score: 0.9
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from server.app.exceptions import ValidationError
from server.app.llm.providers import parse_provider
from server.app.models import Model, Provider, TaskType
from server.app.storage.backend import CatalogStore

logger = structlog.get_logger(__name__)


class ModelEntry(BaseModel):
    """A model as written in the catalog file."""

    id: str
    model_id: str
    display_name: str
    description: str = ""
    is_active: bool = True
    max_tokens: int = Field(4096, ge=1)
    context_window: int = Field(0, ge=0)
    capabilities: list[str] = Field(default_factory=list)
    cost_multiplier: float = Field(1.0, ge=0)

    def to_core(self, provider_id: str) -> Model:
        return Model(
            id=self.id,
            provider_id=provider_id,
            model_id=self.model_id,
            display_name=self.display_name,
            description=self.description,
            is_active=self.is_active,
            max_tokens=self.max_tokens,
            context_window=self.context_window,
            capabilities=tuple(self.capabilities),
            cost_multiplier=self.cost_multiplier,
        )


class ProviderEntry(BaseModel):
    """A provider and its models as written in the catalog file."""

    id: str
    name: str
    display_name: str
    is_active: bool = True
    api_key_required: bool = True
    cost_per_1k_input_tokens: float = Field(0.0, ge=0)
    cost_per_1k_output_tokens: float = Field(0.0, ge=0)
    priority: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    models: list[ModelEntry] = Field(default_factory=list)

    def to_core(self) -> Provider:
        return Provider(
            id=self.id,
            name=self.name,
            display_name=self.display_name,
            is_active=self.is_active,
            api_key_required=self.api_key_required,
            cost_per_1k_input_tokens=self.cost_per_1k_input_tokens,
            cost_per_1k_output_tokens=self.cost_per_1k_output_tokens,
            priority=self.priority,
            metadata=self.metadata,
        )


class AffinityEntry(BaseModel):
    """An explicit task affinity score."""

    task_type: TaskType
    model_id: str
    score: float


class CatalogFile(BaseModel):
    """Top-level catalog document."""

    providers: list[ProviderEntry] = Field(default_factory=list)
    task_affinity: list[AffinityEntry] = Field(default_factory=list)


@dataclass
class SeedResult:
    """Counts of records written by a seed run."""

    providers: int = 0
    models: int = 0
    affinities: int = 0


def load_catalog(path: Path) -> CatalogFile:
    """Parse and validate a catalog file.

    Raises:
        ValidationError: The file is missing, not YAML, or fails validation.
    """
    if not path.exists():
        raise ValidationError("catalog", f"File not found: {path}")

    try:
        with open(path, "r") as f:
            content = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValidationError("catalog", f"Invalid YAML in {path}: {e}") from e

    try:
        catalog = CatalogFile.model_validate(content)
    except PydanticValidationError as e:
        raise ValidationError("catalog", str(e)) from e

    for provider in catalog.providers:
        if parse_provider(provider.name) is None:
            raise ValidationError("catalog", f"Unknown provider '{provider.name}' ({provider.id})")

    model_ids = {m.id for p in catalog.providers for m in p.models}
    for affinity in catalog.task_affinity:
        if affinity.model_id not in model_ids:
            raise ValidationError("catalog", f"Affinity references unknown model '{affinity.model_id}'")

    return catalog


async def seed_catalog(
    store: CatalogStore, catalog: CatalogFile, path: Optional[Path] = None
) -> SeedResult:
    """Upsert every catalog record into the store."""
    result = SeedResult()
    for entry in catalog.providers:
        await store.upsert_provider(entry.to_core())
        result.providers += 1
        for model in entry.models:
            await store.upsert_model(model.to_core(entry.id))
            result.models += 1

    for affinity in catalog.task_affinity:
        await store.set_task_affinity(affinity.task_type.value, affinity.model_id, affinity.score)
        result.affinities += 1

    logger.info(
        "Catalog seeded",
        path=str(path) if path else None,
        providers=result.providers,
        models=result.models,
        affinities=result.affinities,
    )
    return result
