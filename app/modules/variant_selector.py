# -*- coding: utf-8 -*-
"""
Incentra - Variant selector

Eligibility is a map of entity attribute -> expected value:
    {"role": "manager"}                  equality (case-insensitive, trimmed)
    {"store_type": ["flagship", "mall"]} membership
    {}                                   matches every entity
Variants are tried in declared order and the first match wins. No match
(fall back to the first variant) or several matches both raise the
ambiguous_selection flag.
"""

from dataclasses import dataclass, field
from typing import Any, List, Mapping, Sequence

from app.errors import VariantSelectionAmbiguity
from app.modules.plan_schema import Variant
from app.modules.values import coerce

AMBIGUOUS_SELECTION = 'ambiguous_selection'


@dataclass
class VariantSelection:
    variant: Variant
    reason: str
    matched: List[str] = field(default_factory=list)
    flags: List[str] = field(default_factory=list)


def _key(value: Any) -> str:
    return coerce(value).join_key()


def is_eligible(eligibility: Mapping[str, Any], attributes: Mapping[str, Any]) -> bool:
    for attribute, expected in eligibility.items():
        if attribute not in attributes:
            return False
        actual = attributes[attribute]
        if isinstance(actual, (dict, list, tuple, set)):
            return False
        if isinstance(expected, (list, tuple, set)):
            if _key(actual) not in {_key(e) for e in expected}:
                return False
        elif _key(actual) != _key(expected):
            return False
    return True


def select_variant(entity_id: str, attributes: Mapping[str, Any],
                   variants: Sequence[Variant]) -> VariantSelection:
    """
    Pick the variant that applies to an entity.

    Args:
        entity_id: used in the ambiguity message
        attributes: raw entity attribute bag
        variants: plan variants in declared order

    Returns:
        VariantSelection (variant, human-readable reason, flags)
    """
    matched = [v for v in variants if is_eligible(v.eligibility, attributes)]

    if not matched:
        ambiguity = VariantSelectionAmbiguity(entity_id, [])
        return VariantSelection(
            variant=variants[0],
            reason=f"{ambiguity}; defaulted to '{variants[0].name}'",
            flags=[AMBIGUOUS_SELECTION],
        )

    names = [v.name for v in matched]
    if len(matched) > 1:
        ambiguity = VariantSelectionAmbiguity(entity_id, names)
        return VariantSelection(
            variant=matched[0],
            reason=f"{ambiguity}; first match '{matched[0].name}' used",
            matched=names,
            flags=[AMBIGUOUS_SELECTION],
        )

    criteria = ', '.join(f"{k}={v}" for k, v in matched[0].eligibility.items()) or 'no criteria'
    return VariantSelection(
        variant=matched[0],
        reason=f"eligible for '{matched[0].name}' ({criteria})",
        matched=names,
    )
