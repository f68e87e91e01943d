"""
Metered features and token types.

Maps free-text feature names onto the closed Feature enum.
"""

from enum import Enum

from .errors import UnknownFeatureError, ValidationError


class Feature(Enum):
    """Features whose usage is billed in tokens."""
    SITERANK = "SITERANK"
    BATCHOPEN = "BATCHOPEN"
    CHANGELINK = "CHANGELINK"
    ADMIN = "ADMIN"  # admin audit rows only, never consumed


class TokenType(Enum):
    """Source of credited tokens; decides expiry in the priority ledger."""
    SUBSCRIPTION = "SUBSCRIPTION"
    PURCHASED = "PURCHASED"
    BONUS = "BONUS"
    ACTIVITY = "ACTIVITY"


_ALIASES = {
    "siterank": Feature.SITERANK,
    "batchopen": Feature.BATCHOPEN,
    "adscenter": Feature.CHANGELINK,
    "changelink": Feature.CHANGELINK,
}


def normalize_feature(feature) -> Feature:
    """Resolve a feature name to a consumable Feature.

    Args:
        feature: Feature enum member or case-insensitive name/alias

    Returns:
        The matching Feature

    Raises:
        UnknownFeatureError: If the name is unmapped or names ADMIN
    """
    if isinstance(feature, Feature):
        resolved = feature
    else:
        key = (feature or "").strip().lower()
        resolved = _ALIASES.get(key)
        if resolved is None:
            raise UnknownFeatureError(str(feature))
    if resolved is Feature.ADMIN:
        raise UnknownFeatureError(str(feature))
    return resolved


def parse_token_type(value) -> TokenType:
    """Parse a token type name (case-insensitive)."""
    if isinstance(value, TokenType):
        return value
    try:
        return TokenType(str(value).upper())
    except ValueError:
        valid = [t.value for t in TokenType]
        raise ValidationError(f"token_type must be one of: {valid}")
