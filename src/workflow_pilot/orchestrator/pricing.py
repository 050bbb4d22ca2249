"""Token cost estimation from a configured pricing table."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


PricingTable = dict[tuple[str, str], ModelPricing]


def parse_pricing_table(raw: str) -> PricingTable:
    """Parse `WORKFLOW_PILOT_PRICING`.

    Format: `provider:model:input_per_1m:output_per_1m`, entries separated by `,`.
    Provider and model accept the `*` wildcard. Malformed entries are skipped with a warning.
    """

    parsed: PricingTable = {}
    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 4:
            logger.warning("Skipping malformed pricing entry %r", value)
            continue
        provider, model, input_price, output_price = parts
        try:
            pricing = ModelPricing(
                input_per_1m=float(input_price),
                output_per_1m=float(output_price),
            )
        except ValueError:
            logger.warning("Skipping pricing entry with non-numeric price %r", value)
            continue
        parsed[(provider.lower(), model)] = pricing
    return parsed


def lookup_pricing(table: PricingTable, *, provider: str, model: str) -> ModelPricing | None:
    """Resolve pricing with `provider:model`, then `provider:*`, then `*:*`."""

    provider_key = provider.strip().lower()
    for key in ((provider_key, model.strip()), (provider_key, "*"), ("*", "*")):
        pricing = table.get(key)
        if pricing is not None:
            return pricing
    return None


def estimate_cost_usd(
    table: PricingTable,
    *,
    provider: str,
    model: str,
    prompt_tokens: int | None,
    completion_tokens: int | None,
    total_tokens: int | None,
) -> float | None:
    """Estimate invocation cost in USD, or None when pricing or usage is unknown."""

    pricing = lookup_pricing(table, provider=provider, model=model)
    if pricing is None:
        return None

    if prompt_tokens is not None and completion_tokens is not None:
        return (
            (prompt_tokens / 1_000_000) * pricing.input_per_1m
            + (completion_tokens / 1_000_000) * pricing.output_per_1m
        )
    if total_tokens is not None:
        average_per_1m = (pricing.input_per_1m + pricing.output_per_1m) / 2
        return (total_tokens / 1_000_000) * average_per_1m
    return None
