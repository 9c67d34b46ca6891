"""Rewrite of the retired ``main_personality`` / ``ally`` card types.

Older records stored the personality role in ``cardType``. Every entry point
(normalizer, validator, card schema, migrations) funnels through
:func:`normalize_legacy_card_type` so the mapping lives in one place.
"""
from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional

LEGACY_MAIN_PERSONALITY = "main_personality"
LEGACY_ALLY = "ally"
LEGACY_CARD_TYPES = frozenset({LEGACY_MAIN_PERSONALITY, LEGACY_ALLY})


def card_type_token(value: Any) -> Optional[str]:
    """Lower-case, underscore-joined card type token or ``None``."""

    if not isinstance(value, str):
        return None
    token = re.sub(r"\s+", "_", value.strip().lower())
    return token or None


def normalize_legacy_card_type(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``record`` with legacy card types mapped to flags.

    Idempotent: already-clean records come back unchanged.
    """

    result = dict(record)
    token = card_type_token(result.get("cardType"))
    if token not in LEGACY_CARD_TYPES:
        return result

    result["cardType"] = "personality"
    if token == LEGACY_ALLY and not isinstance(result.get("isAlly"), bool):
        result["isAlly"] = True
    if not isinstance(result.get("isMainPersonality"), bool):
        result["isMainPersonality"] = token == LEGACY_MAIN_PERSONALITY
    return result
