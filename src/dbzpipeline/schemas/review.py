"""Review queue entries for candidates that were not accepted."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import SetCode

Confidence = Annotated[float, Field(ge=0, le=1)]


class ConfidenceSnapshot(BaseModel):
    overall: Confidence
    fields: Dict[str, Confidence] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class ReviewQueueItem(BaseModel):
    """A rejected candidate, keyed by ``(cardId, imagePath)``."""

    cardId: str = Field(..., min_length=1)
    setCode: SetCode
    imagePath: str = Field(..., min_length=1)
    failedFields: List[str] = Field(default_factory=list)
    reasons: List[str] = Field(default_factory=list)
    candidateValues: Dict[str, Any] = Field(default_factory=dict)
    confidenceSnapshot: ConfidenceSnapshot
    createdAt: datetime

    model_config = ConfigDict(extra="forbid")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def _clamp(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def create_review_queue_item(
    *,
    card_id: str,
    set_code: str,
    image_path: str,
    failed_fields: Iterable[str],
    reasons: Iterable[str],
    candidate_values: Dict[str, Any],
    overall_confidence: float,
    field_confidence: Dict[str, Any],
    created_at: Optional[datetime] = None,
) -> ReviewQueueItem:
    return ReviewQueueItem(
        cardId=card_id,
        setCode=set_code,
        imagePath=image_path,
        failedFields=list(failed_fields),
        reasons=list(reasons),
        candidateValues=candidate_values,
        confidenceSnapshot=ConfidenceSnapshot(
            overall=_clamp(overall_confidence),
            fields={key: _clamp(value) for key, value in field_confidence.items()},
        ),
        createdAt=created_at or datetime.now(timezone.utc),
    )
