"""
Violation Matcher

Classifies a free-text incident description (kasus) against the catalog.

Rule priority (first hit wins):
1. EXACT     - normalized description equals a catalog name        -> 100
2. KEYWORD   - best overlap of a name's significant tokens >= threshold
3. CATEGORY  - lexicon infers a category; heaviest entry in it      -> fixed
4. NONE      - no signal                                            -> 0

MANUAL is never produced here; it is an operator override recorded by the
escalation workflow.

The matcher is deterministic and never raises for bad input. Store failures
are the catalog's concern and surface as InfrastructureError.
"""
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ..config import CATEGORY_MATCH_CONFIDENCE, KEYWORD_MATCH_THRESHOLD
from ..models.db_models import MatchType, ViolationCategory
from ..models.domain import CatalogEntry, MatchResult
from .catalog import ViolationCatalog
from .text_utils import normalize_text, significant_tokens, tokenize

logger = logging.getLogger(__name__)


# =============================================================================
# CATEGORY LEXICON
# =============================================================================
#
# Single-token stems per category. Order of this dict is the tie-break order
# when two categories score the same number of hits.
#
# =============================================================================

CATEGORY_LEXICON: Dict[ViolationCategory, frozenset] = {
    ViolationCategory.ATTENDANCE: frozenset({
        "terlambat", "telat", "bolos", "membolos", "alpa", "alpha", "absen",
        "mangkir", "kabur", "cabut",
    }),
    ViolationCategory.UNIFORM: frozenset({
        "seragam", "atribut", "sepatu", "rambut", "dasi", "sabuk", "topi",
        "kaos", "rok", "celana", "badge", "kuku", "tato", "tindik", "anting",
        "makeup", "aksesoris",
    }),
    ViolationCategory.PERSONAL_CONDUCT: frozenset({
        "berkelahi", "perkelahian", "bertengkar", "tawuran", "memukul", "bully",
        "bullying", "merundung", "perundungan", "mengejek", "menghina", "mencuri",
        "pencurian", "berbohong", "menyontek", "mencontek", "kasar", "melawan",
        "membantah", "mengancam", "pacaran", "pornografi",
    }),
    ViolationCategory.ORDER: frozenset({
        "gaduh", "ribut", "keributan", "mencoret", "coret", "vandalisme",
        "merusak", "sampah", "hp", "ponsel", "handphone", "gadget",
        "game", "parkir", "kantin", "berjudi", "judi", "senjata", "tajam",
    }),
    ViolationCategory.HEALTH: frozenset({
        "merokok", "rokok", "vape", "vapor", "narkoba", "narkotika", "obat",
        "miras", "alkohol", "mabuk",
    }),
}


# =============================================================================
# MATCH RULES
# =============================================================================

def _no_match(explanation: str) -> MatchResult:
    return MatchResult(
        violation_id=None,
        match_type=MatchType.NONE,
        confidence=0,
        explanation=explanation,
    )


def _exact_rule(normalized: str, catalog: Sequence[CatalogEntry]) -> Optional[MatchResult]:
    for entry in catalog:
        if normalize_text(entry.name) == normalized:
            return MatchResult(
                violation_id=entry.id,
                match_type=MatchType.EXACT,
                confidence=100,
                explanation=f"exact: description equals catalog entry '{entry.name}'",
            )
    return None


def _keyword_rule(
    input_tokens: Iterable[str],
    catalog: Sequence[CatalogEntry],
    threshold: float,
) -> Optional[MatchResult]:
    tokens = set(input_tokens)
    candidates = []

    for entry in catalog:
        name_tokens = significant_tokens(entry.name)
        if not name_tokens:
            continue

        overlap = [t for t in name_tokens if t in tokens]
        fraction = len(overlap) / len(name_tokens)
        if overlap and fraction >= threshold:
            candidates.append((fraction, entry, overlap, len(name_tokens)))

    if not candidates:
        return None

    # Higher fraction, then heavier weight, then name and id for stability
    candidates.sort(key=lambda c: (-c[0], -c[1].weight, normalize_text(c[1].name), c[1].id))
    fraction, entry, overlap, total = candidates[0]

    terms = ", ".join(f"'{t}'" for t in overlap)
    return MatchResult(
        violation_id=entry.id,
        match_type=MatchType.KEYWORD,
        confidence=int(round(fraction * 100)),
        explanation=(
            f"keyword: matched {terms} ({len(overlap)}/{total} significant terms) "
            f"of catalog entry '{entry.name}'"
        ),
        matched_terms=list(overlap),
    )


def infer_category(input_tokens: Iterable[str]) -> Tuple[Optional[ViolationCategory], List[str]]:
    """Category with the most lexicon hits, plus the hit terms."""
    tokens = list(dict.fromkeys(input_tokens))
    best_category = None
    best_hits: List[str] = []

    for category, lexicon in CATEGORY_LEXICON.items():
        hits = [t for t in tokens if t in lexicon]
        if len(hits) > len(best_hits):
            best_category, best_hits = category, hits

    return best_category, best_hits


def _category_rule(
    input_tokens: List[str],
    catalog: Sequence[CatalogEntry],
    confidence: int,
) -> Optional[MatchResult]:
    category, hits = infer_category(input_tokens)
    if category is None:
        return None

    terms = ", ".join(f"'{t}'" for t in hits)
    candidates = [e for e in catalog if e.category == category]
    if not candidates:
        return _no_match(
            f"none: terms {terms} suggest category '{category.value}' "
            f"but the catalog has no entry in it"
        )

    entry = sorted(candidates, key=lambda e: (-e.weight, normalize_text(e.name), e.id))[0]
    return MatchResult(
        violation_id=entry.id,
        match_type=MatchType.CATEGORY,
        confidence=confidence,
        explanation=(
            f"category: terms {terms} indicate '{category.value}'; "
            f"selected highest-weight entry '{entry.name}' ({entry.weight} pts)"
        ),
        matched_terms=list(hits),
    )


def match(
    raw_description,
    catalog: Sequence[CatalogEntry],
    keyword_threshold: float = KEYWORD_MATCH_THRESHOLD,
    category_confidence: int = CATEGORY_MATCH_CONFIDENCE,
) -> MatchResult:
    """
    Classify a description against a catalog snapshot.

    Pure function: identical input and catalog always give identical output.
    """
    normalized = normalize_text(raw_description)
    if not normalized:
        return _no_match("none: empty description")

    catalog = list(catalog or [])

    result = _exact_rule(normalized, catalog)
    if result:
        return result

    input_tokens = tokenize(normalized)
    if not input_tokens:
        return _no_match("none: description contains no recognizable terms")

    result = _keyword_rule(input_tokens, catalog, keyword_threshold)
    if result:
        return result

    result = _category_rule(input_tokens, catalog, category_confidence)
    if result:
        return result

    return _no_match("none: no catalog keyword or category term found in description")


# =============================================================================
# SERVICE WRAPPER
# =============================================================================

class ViolationMatcher:
    """Loads the catalog and runs the pure matcher."""

    def __init__(
        self,
        db_session: Session,
        keyword_threshold: float = KEYWORD_MATCH_THRESHOLD,
        category_confidence: int = CATEGORY_MATCH_CONFIDENCE,
    ):
        self.catalog = ViolationCatalog(db_session)
        self.keyword_threshold = keyword_threshold
        self.category_confidence = category_confidence

    def match_description(self, raw_description) -> MatchResult:
        """
        Raises InfrastructureError if the catalog cannot be read;
        otherwise always returns a MatchResult.
        """
        entries = self.catalog.entries()
        result = match(
            raw_description,
            entries,
            keyword_threshold=self.keyword_threshold,
            category_confidence=self.category_confidence,
        )
        logger.info(
            f"Matched description ({len(entries)} catalog entries): "
            f"{result.match_type.value} {result.confidence}%"
        )
        return result
