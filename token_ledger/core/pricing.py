"""
Token pricing rules and cost resolution.

Unit costs are integers; batch totals go through the feature's batch policy
and are never assumed to be unit * count.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, Tuple

from .errors import UnknownActionError, ValidationError
from .features import Feature


class PricingRule(Protocol):
    """Anything that can price count items of a feature/action."""

    def cost(self, feature: Feature, action: str, count: int, is_batch: bool) -> int:
        ...


@dataclass(frozen=True)
class BatchDiscount:
    """Percentage discount for batches of at least min_size items."""
    min_size: int
    percent: int

    def __post_init__(self):
        """Validate discount bounds."""
        if self.min_size < 2:
            raise ValueError("min_size must be >= 2")
        if not 0 <= self.percent < 100:
            raise ValueError("percent must be between 0 and 99")

    def apply(self, unit: int, count: int) -> int:
        linear = unit * count
        if count < self.min_size:
            return linear
        # ceil(linear * (100 - percent) / 100) without floats
        return -(-linear * (100 - self.percent) // 100)


@dataclass(frozen=True)
class TieredSurcharge:
    """Per-item surcharge that kicks in at batch size thresholds.

    tiers is a tuple of (threshold, extra_per_item); the highest threshold
    reached wins.
    """
    tiers: Tuple[Tuple[int, int], ...]

    def __post_init__(self):
        """Validate tiers are positive."""
        for threshold, extra in self.tiers:
            if threshold < 2:
                raise ValueError("tier threshold must be >= 2")
            if extra < 0:
                raise ValueError("tier surcharge cannot be negative")

    def apply(self, unit: int, count: int) -> int:
        extra = 0
        for threshold, tier_extra in sorted(self.tiers):
            if count >= threshold:
                extra = tier_extra
        return (unit + extra) * count


@dataclass(frozen=True)
class RuleTable:
    """Fixed table of per-action unit costs with optional batch policies."""
    costs: Dict[Feature, Dict[str, int]]
    batch_policies: Dict[Feature, object] = field(default_factory=dict)

    def unit_cost(self, feature: Feature, action: str) -> int:
        """Get the unit cost for a feature/action.

        Raises:
            UnknownActionError: If no cost is configured
        """
        actions = self.costs.get(feature, {})
        if action not in actions:
            raise UnknownActionError(feature.value, action)
        return actions[action]

    def cost(self, feature: Feature, action: str, count: int, is_batch: bool) -> int:
        unit = self.unit_cost(feature, action)
        policy = self.batch_policies.get(feature)
        if not is_batch or policy is None:
            return unit * count
        return policy.apply(unit, count)


DEFAULT_RULES = RuleTable({
    Feature.SITERANK: {"domain_analysis": 1},
    Feature.BATCHOPEN: {"url_access": 1, "http": 1, "puppeteer": 2},
    Feature.CHANGELINK: {"link_replace": 2, "update_ad": 1, "extract_link": 1},
})


@dataclass(frozen=True)
class CostQuote:
    """Resolved cost of a request."""
    total: int
    unit: int


class PricingResolver:
    """Turns feature/action/batch size into a total token cost."""

    def __init__(self, rule: PricingRule = DEFAULT_RULES):
        self.rule = rule

    def resolve(
        self,
        feature: Feature,
        action: str,
        batch_size: int,
        explicit_amount: Optional[int] = None,
        has_explicit_operations: bool = False,
    ) -> CostQuote:
        """Resolve total and unit cost.

        An explicit amount is trusted as the true per-item cost and bypasses
        the rule (and any batch discount) entirely.

        Args:
            feature: Feature being consumed
            action: Action name within the feature
            batch_size: Number of items, 1 for a single operation
            explicit_amount: Caller-supplied per-item cost (internal callers only)
            has_explicit_operations: Caller supplies per-operation amounts

        Returns:
            CostQuote with integer total and unit

        Raises:
            ValidationError: On a bad batch size or amount
            UnknownActionError: If the rule has no price for the action
        """
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
            raise ValidationError(f"batch_size must be a positive integer, got {batch_size!r}")

        if explicit_amount is not None:
            if (isinstance(explicit_amount, bool) or not isinstance(explicit_amount, int)
                    or explicit_amount <= 0):
                raise ValidationError(
                    f"custom amount must be a positive integer, got {explicit_amount!r}"
                )
            return CostQuote(total=explicit_amount * max(1, batch_size), unit=explicit_amount)

        unit = self.rule.cost(feature, action, 1, False)
        if batch_size == 1:
            return CostQuote(total=unit, unit=unit)
        if has_explicit_operations:
            return CostQuote(total=unit * batch_size, unit=unit)
        total = self.rule.cost(feature, action, batch_size, True)
        return CostQuote(total=total, unit=unit)
