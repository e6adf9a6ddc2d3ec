"""
Blood type compatibility table.

Keys are donor blood types, values the recipient blood types each donor may serve.
"""
from __future__ import annotations

from typing import Dict, FrozenSet

COMPATIBILITY_MATRIX: Dict[str, FrozenSet[str]] = {
    "O-": frozenset({"O-", "O+", "A-", "A+", "B-", "B+", "AB-", "AB+"}),  # universal donor
    "O+": frozenset({"O+", "A+", "B+", "AB+"}),
    "A-": frozenset({"A-", "A+", "AB-", "AB+"}),
    "A+": frozenset({"A+", "AB+"}),
    "B-": frozenset({"B-", "B+", "AB-", "AB+"}),
    "B+": frozenset({"B+", "AB+"}),
    "AB-": frozenset({"AB-", "AB+"}),
    "AB+": frozenset({"AB+"}),
}

BLOOD_TYPES = tuple(COMPATIBILITY_MATRIX)


def canonical_blood_type(blood_type) -> str | None:
    if blood_type is None:
        return None
    value = getattr(blood_type, "value", blood_type)
    return "".join(str(value).split()).upper() or None


def compatible_recipient_types(donor_type) -> FrozenSet[str]:
    """Blood types that can receive from ``donor_type``. Unknown types give an empty set."""
    return COMPATIBILITY_MATRIX.get(canonical_blood_type(donor_type), frozenset())


def compatible_donor_types(recipient_type) -> FrozenSet[str]:
    """Blood types that can donate to ``recipient_type``. Unknown types give an empty set."""
    recipient = canonical_blood_type(recipient_type)
    return frozenset(donor for donor, recipients in COMPATIBILITY_MATRIX.items() if recipient in recipients)


def is_compatible(donor_type, recipient_type) -> bool:
    return canonical_blood_type(recipient_type) in compatible_recipient_types(donor_type)
