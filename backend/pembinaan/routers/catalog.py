"""
Violation Catalog API Routes
"""
from typing import List, Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import ViolationCategory
from ..models.domain import CatalogRow
from ..services.catalog import ViolationCatalog
from ..services.matcher import ViolationMatcher
from .serializers import definition_to_dict


router = APIRouter(prefix="/catalog", tags=["catalog"])


class DefinitionRequest(BaseModel):
    name: str
    category: ViolationCategory
    weight: int = Field(..., description="Point value 1-100")
    description: Optional[str] = None


class ImportRowRequest(BaseModel):
    """Rows are validated by the catalog, not here, so bad rows are reported instead of failing the batch."""
    name: str = ""
    category: str = ""
    weight: Union[int, str, None] = None
    description: Optional[str] = None


class ImportRequest(BaseModel):
    rows: List[ImportRowRequest]


class MatchPreviewRequest(BaseModel):
    raw_description: str


@router.get("", response_model=list)
def list_definitions(category: Optional[ViolationCategory] = Query(None), db: Session = Depends(get_db)):
    return [definition_to_dict(d) for d in ViolationCatalog(db).list_definitions(category)]


@router.get("/{violation_id}", response_model=dict)
def get_definition(violation_id: str, db: Session = Depends(get_db)):
    return definition_to_dict(ViolationCatalog(db).get(violation_id))


@router.post("", response_model=dict, status_code=201)
def add_definition(request: DefinitionRequest, db: Session = Depends(get_db)):
    definition = ViolationCatalog(db).add_definition(
        request.name, request.category, request.weight, request.description
    )
    return definition_to_dict(definition)


@router.post("/import", response_model=dict)
def bulk_import(request: ImportRequest, db: Session = Depends(get_db)):
    rows = [
        CatalogRow(name=r.name, category=r.category, weight=r.weight, description=r.description)
        for r in request.rows
    ]
    return ViolationCatalog(db).bulk_import(rows).to_dict()


@router.post("/match", response_model=dict)
def preview_match(request: MatchPreviewRequest, db: Session = Depends(get_db)):
    """Classify a description without opening a case."""
    return ViolationMatcher(db).match_description(request.raw_description).to_dict()
