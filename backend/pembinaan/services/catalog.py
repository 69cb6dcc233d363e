"""
Violation Catalog

Weighted reference table of violation definitions (poin pelanggaran).

Rules:
- Names are unique after case-insensitive, whitespace-normalized comparison
- Weight is an integer point value in 1..100
- A definition that any case has matched is locked: imports never rewrite it
- Store failures surface as InfrastructureError, never as "empty catalog"
"""
import logging
from typing import Iterable, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import ConflictError, InfrastructureError, NotFoundError, ValidationError
from ..models.db_models import DisciplinaryCaseDB, ViolationCategory, ViolationDefinitionDB
from ..models.domain import CatalogEntry, CatalogRow, ImportSummary
from .text_utils import normalize_text

logger = logging.getLogger(__name__)

MIN_WEIGHT = 1
MAX_WEIGHT = 100


def validate_definition(name, category, weight):
    """
    Check one catalog row.

    Returns (clean_name, ViolationCategory, weight).
    Raises ValidationError describing the first problem found.
    """
    clean_name = " ".join(str(name or "").split())
    if not clean_name:
        raise ValidationError("Violation name is required")

    try:
        category_enum = ViolationCategory(category)
    except ValueError:
        valid = [c.value for c in ViolationCategory]
        raise ValidationError(f"Unknown category '{category}'. Must be one of: {valid}")

    try:
        weight_int = int(weight)
    except (TypeError, ValueError):
        raise ValidationError(f"Weight must be an integer, got {weight!r}")
    if isinstance(weight, float) and weight != weight_int:
        raise ValidationError(f"Weight must be an integer, got {weight!r}")
    if not MIN_WEIGHT <= weight_int <= MAX_WEIGHT:
        raise ValidationError(f"Weight must be between {MIN_WEIGHT} and {MAX_WEIGHT}, got {weight_int}")

    return clean_name, category_enum, weight_int


class ViolationCatalog:
    """Read/write access to violation definitions."""

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    # =========================================================================
    # READS
    # =========================================================================

    def entries(self, category: Optional[ViolationCategory] = None) -> List[CatalogEntry]:
        """Snapshot of the catalog for the matcher, in stable name order."""
        return [
            CatalogEntry(
                id=d.id,
                name=d.name,
                category=d.category,
                weight=d.weight,
                description=d.description,
            )
            for d in self.list_definitions(category)
        ]

    def list_definitions(self, category: Optional[ViolationCategory] = None) -> List[ViolationDefinitionDB]:
        try:
            query = self.db.query(ViolationDefinitionDB)
            if category is not None:
                query = query.filter(ViolationDefinitionDB.category == category)
            return query.order_by(ViolationDefinitionDB.normalized_name, ViolationDefinitionDB.id).all()
        except SQLAlchemyError as e:
            logger.error(f"Violation catalog unavailable: {e}")
            raise InfrastructureError("Violation catalog unavailable") from e

    def get(self, violation_id: str) -> ViolationDefinitionDB:
        try:
            definition = self.db.query(ViolationDefinitionDB).filter(
                ViolationDefinitionDB.id == violation_id
            ).first()
        except SQLAlchemyError as e:
            raise InfrastructureError("Violation catalog unavailable") from e

        if not definition:
            raise NotFoundError(f"Violation definition {violation_id} not found")
        return definition

    def is_locked(self, violation_id: str) -> bool:
        """True once any case references the definition."""
        return self.db.query(DisciplinaryCaseDB.id).filter(
            DisciplinaryCaseDB.matched_violation_id == violation_id
        ).first() is not None

    # =========================================================================
    # WRITES
    # =========================================================================

    def add_definition(
        self,
        name: str,
        category,
        weight: int,
        description: Optional[str] = None,
    ) -> ViolationDefinitionDB:
        """Add a single definition. Duplicate names are a ConflictError."""
        clean_name, category_enum, weight_int = validate_definition(name, category, weight)
        normalized = normalize_text(clean_name)

        existing = self.db.query(ViolationDefinitionDB).filter(
            ViolationDefinitionDB.normalized_name == normalized
        ).first()
        if existing:
            raise ConflictError(f"Violation '{clean_name}' already exists in the catalog")

        definition = ViolationDefinitionDB(
            id=str(uuid4()),
            name=clean_name,
            normalized_name=normalized,
            category=category_enum,
            weight=weight_int,
            description=description,
        )
        self.db.add(definition)
        self._commit()

        logger.info(f"Catalog entry added: {clean_name} ({category_enum.value}, {weight_int} pts)")
        return definition

    def bulk_import(self, rows: Iterable[CatalogRow]) -> ImportSummary:
        """
        Upsert rows produced by a document-extraction collaborator.

        Invalid rows are skipped and reported. Existing names are updated
        unless locked by a matched case. Runs as a single transaction.
        """
        summary = ImportSummary()
        existing = {
            d.normalized_name: d for d in self.db.query(ViolationDefinitionDB).all()
        }
        seen_in_batch = set()

        for index, row in enumerate(rows):
            try:
                clean_name, category_enum, weight_int = validate_definition(
                    row.name, row.category, row.weight
                )
            except ValidationError as e:
                summary.skipped.append({"row": index, "name": row.name, "reason": e.message})
                continue

            normalized = normalize_text(clean_name)
            if normalized in seen_in_batch:
                summary.skipped.append({"row": index, "name": clean_name, "reason": "duplicate in import"})
                continue
            seen_in_batch.add(normalized)

            definition = existing.get(normalized)
            if definition is None:
                definition = ViolationDefinitionDB(
                    id=str(uuid4()),
                    name=clean_name,
                    normalized_name=normalized,
                    category=category_enum,
                    weight=weight_int,
                    description=row.description,
                )
                self.db.add(definition)
                existing[normalized] = definition
                summary.created.append(definition.id)
                continue

            unchanged = (
                definition.category == category_enum
                and definition.weight == weight_int
                and (definition.description or None) == (row.description or None)
            )
            if unchanged:
                continue

            if self.is_locked(definition.id):
                summary.locked.append(definition.name)
                continue

            definition.name = clean_name
            definition.category = category_enum
            definition.weight = weight_int
            definition.description = row.description
            summary.updated.append(definition.id)

        self._commit()

        logger.info(
            f"Catalog import complete: {len(summary.created)} created, "
            f"{len(summary.updated)} updated, {len(summary.locked)} locked, "
            f"{len(summary.skipped)} skipped"
        )
        return summary

    def _commit(self):
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError("Violation name already exists in the catalog") from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise InfrastructureError("Violation catalog unavailable") from e
