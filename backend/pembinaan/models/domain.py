"""
Pembinaan Engine - Value Objects

Plain dataclasses passed between services and collaborators.
None of these are persisted directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional

from .db_models import MatchType, ViolationCategory, SessionType


@dataclass(frozen=True)
class CatalogEntry:
    """Read-only snapshot of a catalog row, the matcher's only input."""
    id: str
    name: str
    category: ViolationCategory
    weight: int
    description: Optional[str] = None


@dataclass(frozen=True)
class MatchResult:
    """Outcome of classifying one free-text description."""
    violation_id: Optional[str]
    match_type: MatchType
    confidence: int
    explanation: str
    matched_terms: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "violation_id": self.violation_id,
            "match_type": self.match_type.value,
            "match_confidence": self.confidence,
            "match_explanation": self.explanation,
            "matched_terms": list(self.matched_terms),
        }


@dataclass
class CatalogRow:
    """One row yielded by a document-extraction collaborator."""
    name: str
    category: str
    weight: int
    description: Optional[str] = None


@dataclass
class ImportSummary:
    """Result of a bulk catalog import."""
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    locked: List[str] = field(default_factory=list)
    skipped: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "locked": list(self.locked),
            "skipped": list(self.skipped),
        }


@dataclass(frozen=True)
class SlotStatus:
    """A counselor slot annotated for display (bookingStatus[] entry)."""
    counselor_id: str
    full_name: str
    username: str
    specialty: Optional[str]
    slot_date: str
    slot_time: str
    session_type: SessionType
    booked: bool

    def to_dict(self) -> dict:
        return {
            "bkId": self.counselor_id,
            "fullName": self.full_name,
            "username": self.username,
            "specialty": self.specialty,
            "date": self.slot_date,
            "time": self.slot_time,
            "sessionType": self.session_type.value,
            "available": not self.booked,
            "booked": self.booked,
        }
