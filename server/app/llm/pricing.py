"""Cost calculation from catalog prices.

Provider prices are per 1K tokens; a model's multiplier scales the
provider's base rates.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from server.app.storage.backend import CatalogStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateCard:
    """Per-1K token rates for one model."""

    input_per_1k: float = 0.0
    output_per_1k: float = 0.0
    multiplier: float = 1.0

    def estimate(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Estimate cost for given token counts.

        Negative counts are treated as zero.

        Args:
            prompt_tokens: Number of prompt tokens.
            completion_tokens: Number of completion tokens.

        Returns:
            Estimated cost in USD.
        """
        prompt_tokens = max(0, prompt_tokens)
        completion_tokens = max(0, completion_tokens)
        return (
            (prompt_tokens / 1000) * self.input_per_1k
            + (completion_tokens / 1000) * self.output_per_1k
        ) * self.multiplier


class CostCalculator:
    """Computes turn cost from the catalog.

    Example:
        calculator = CostCalculator(store)
        cost = await calculator.calculate_cost("model-gpt4", 1200, 350, provider_id="prov-openai")
    """

    def __init__(self, catalog: CatalogStore) -> None:
        self._catalog = catalog

    async def rate_card(self, model_id: str, provider_id: str | None = None) -> RateCard | None:
        """Resolve the rates for a catalog model, or None if unknown."""
        model = await self._catalog.get_model(model_id)
        if model is None:
            return None
        if provider_id is not None and model.provider_id != provider_id:
            logger.warning(
                "Model belongs to another provider",
                model_id=model_id,
                provider_id=provider_id,
                owner=model.provider_id,
            )
            return None
        provider = await self._catalog.get_provider(model.provider_id)
        if provider is None:
            return None
        return RateCard(
            input_per_1k=provider.cost_per_1k_input_tokens,
            output_per_1k=provider.cost_per_1k_output_tokens,
            multiplier=model.cost_multiplier,
        )

    async def calculate_cost(
        self,
        model_id: str,
        prompt_tokens: int,
        completion_tokens: int,
        provider_id: str | None = None,
    ) -> float:
        """Cost of a turn in USD, or 0.0 when the model cannot be priced.

        When ``provider_id`` is given the model must belong to that provider.
        """
        try:
            card = await self.rate_card(model_id, provider_id)
        except Exception as e:
            logger.warning("Cost lookup failed", model_id=model_id, error=str(e))
            return 0.0

        if card is None:
            logger.debug("No rate card for model", model_id=model_id, provider_id=provider_id)
            return 0.0
        return card.estimate(prompt_tokens, completion_tokens)
