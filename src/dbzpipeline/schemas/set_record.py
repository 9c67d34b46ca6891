"""Per-set statistics written to ``sets.json``."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import SetCode


class ParseRunMetadata(BaseModel):
    startedAt: datetime
    finishedAt: datetime
    acceptedCards: int = Field(..., ge=0)
    reviewCards: int = Field(..., ge=0)
    parseModel: str = Field(..., min_length=1)
    minConfidence: float = Field(..., ge=0, le=1)

    model_config = ConfigDict(extra="forbid")


class SetRecord(BaseModel):
    setCode: SetCode
    setName: str = Field(..., min_length=1)
    cardCountExpected: Optional[int] = Field(default=None, ge=0)
    cardCountParsed: int = Field(..., ge=0)
    sourceFolders: List[str] = Field(default_factory=list)
    parseRunMetadata: ParseRunMetadata

    model_config = ConfigDict(extra="forbid")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
