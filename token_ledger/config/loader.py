"""
Configuration management and loading.

Loads pricing rules, notification thresholds and permission grants from a
YAML file with strict validation.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Dict, FrozenSet, Optional

import yaml

from token_ledger.core.features import Feature, normalize_feature
from token_ledger.core.notifications import NotificationPolicy
from token_ledger.core.pricing import DEFAULT_RULES, BatchDiscount, RuleTable, TieredSurcharge


@dataclass(frozen=True)
class LedgerConfig:
    """Complete ledger configuration."""
    pricing: RuleTable = DEFAULT_RULES
    notifications: NotificationPolicy = field(default_factory=NotificationPolicy)
    permissions: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    subscription_period_days: int = 30

    def __post_init__(self):
        """Validate ledger settings."""
        if self.subscription_period_days <= 0:
            raise ValueError("subscription_period_days must be > 0")


def load_ledger_config(path: Optional[str] = None) -> LedgerConfig:
    """Load and validate ledger configuration from a YAML file.

    Every section is optional. Pricing entries replace the default actions
    of the features they name; other features keep their defaults.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return LedgerConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Ledger config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return LedgerConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'pricing', 'notifications', 'permissions', 'ledger'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    pricing = _parse_pricing(raw_config.get('pricing') or {})
    notifications = _parse_notifications(raw_config.get('notifications') or {})
    permissions = _parse_permissions(raw_config.get('permissions') or {})

    ledger_data = raw_config.get('ledger') or {}
    _check_section(ledger_data, 'ledger', {'subscription_period_days'})
    period = ledger_data.get('subscription_period_days', 30)
    if not _is_int(period) or period <= 0:
        raise ValueError("'ledger.subscription_period_days' must be a positive integer")

    return LedgerConfig(
        pricing=pricing,
        notifications=notifications,
        permissions=permissions,
        subscription_period_days=period
    )


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_section(data, path: str, allowed_keys: set) -> None:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_pricing(data: Dict) -> RuleTable:
    """Parse the pricing section on top of the default rule table.

    Raises:
        ValueError: If a feature, cost or batch policy is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")

    costs: Dict[Feature, Dict[str, int]] = {
        feature: dict(actions) for feature, actions in DEFAULT_RULES.costs.items()
    }
    policies: Dict[Feature, object] = dict(DEFAULT_RULES.batch_policies)

    for feature_name, feature_data in data.items():
        path = f"pricing.{feature_name}"
        feature = normalize_feature(str(feature_name))
        _check_section(feature_data, path, {'actions', 'batch'})

        actions = feature_data.get('actions')
        if not isinstance(actions, dict) or not actions:
            raise ValueError(f"'{path}.actions' must be a non-empty dictionary")
        for action, cost in actions.items():
            if not _is_int(cost) or cost <= 0:
                raise ValueError(f"'{path}.actions.{action}' must be a positive integer")
        costs[feature] = {str(action): cost for action, cost in actions.items()}

        if 'batch' in feature_data:
            policies[feature] = _parse_batch_policy(feature_data['batch'], f"{path}.batch")

    return RuleTable(costs=costs, batch_policies=policies)


def _parse_batch_policy(data, path: str):
    _check_section(data, path, {'discount', 'tiers'})
    if len(data) != 1:
        raise ValueError(f"'{path}' must define exactly one of: discount, tiers")

    if 'discount' in data:
        discount = data['discount']
        _check_section(discount, f"{path}.discount", {'min_size', 'percent'})
        min_size = discount.get('min_size')
        percent = discount.get('percent')
        if not _is_int(min_size) or not _is_int(percent):
            raise ValueError(f"'{path}.discount' needs integer min_size and percent")
        return BatchDiscount(min_size=min_size, percent=percent)

    tiers = data['tiers']
    if not isinstance(tiers, list) or not tiers:
        raise ValueError(f"'{path}.tiers' must be a non-empty list")
    parsed = []
    for tier in tiers:
        if (not isinstance(tier, (list, tuple)) or len(tier) != 2
                or not all(_is_int(v) for v in tier)):
            raise ValueError(f"'{path}.tiers' entries must be [threshold, extra] integer pairs")
        parsed.append((tier[0], tier[1]))
    return TieredSurcharge(tiers=tuple(parsed))


def _parse_notifications(data: Dict) -> NotificationPolicy:
    _check_section(data, 'notifications', {'low_balance_threshold', 'dedupe_window_hours'})
    threshold = data.get('low_balance_threshold', 5)
    hours = data.get('dedupe_window_hours', 24)
    if not _is_int(threshold) or threshold <= 0:
        raise ValueError("'notifications.low_balance_threshold' must be a positive integer")
    if not isinstance(hours, (int, float)) or isinstance(hours, bool) or hours <= 0:
        raise ValueError("'notifications.dedupe_window_hours' must be > 0")
    return NotificationPolicy(
        low_balance_threshold=threshold,
        dedupe_window=timedelta(hours=hours)
    )


def _parse_permissions(data: Dict) -> Dict[str, FrozenSet[str]]:
    if not isinstance(data, dict):
        raise ValueError("'permissions' must be a dictionary")
    permissions = {}
    for actor, grants in data.items():
        if not isinstance(grants, list) or not all(isinstance(g, str) for g in grants):
            raise ValueError(f"'permissions.{actor}' must be a list of strings")
        for grant in grants:
            if grant.count(':') != 1:
                raise ValueError(f"Invalid grant '{grant}' for {actor}; expected resource:action")
        permissions[str(actor)] = frozenset(grants)
    return permissions
