"""
Outbound Collaborators

The engine talks to three external services through narrow interfaces:
- QRTokenIssuer: turns an approved in-person reservation id into a check-in token
- Notifier: informed of status transitions, fire-and-forget
- CatalogSource: yields CatalogRow objects extracted from an external document

Defaults here are production-usable fallbacks: an HMAC token issuer, a
logging notifier and JSON/CSV file sources.
"""
import csv
import hashlib
import hmac
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, Protocol

from ..config import QR_TOKEN_SECRET
from ..exceptions import ValidationError
from ..models.domain import CatalogRow

logger = logging.getLogger(__name__)


# =============================================================================
# QR CHECK-IN TOKENS
# =============================================================================

class QRTokenIssuer(Protocol):
    def issue(self, reservation_id: str) -> str: ...


class HMACTokenIssuer:
    """Deterministic token: first 32 hex chars of HMAC-SHA256(secret, id)."""

    def __init__(self, secret: str = QR_TOKEN_SECRET):
        self._secret = secret.encode("utf-8")

    def issue(self, reservation_id: str) -> str:
        digest = hmac.new(self._secret, reservation_id.encode("utf-8"), hashlib.sha256)
        return digest.hexdigest()[:32]


def tokens_match(expected: str, presented: str) -> bool:
    """Constant-time comparison of a stored and a scanned token."""
    return hmac.compare_digest(str(expected), str(presented))


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class Notifier(Protocol):
    def notify(self, event_type: str, payload: Dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Writes notification events to the log instead of delivering them."""

    def notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Notification {event_type}: {payload}")


def dispatch(notifier: Notifier, event_type: str, payload: Dict[str, Any]) -> None:
    """
    Fire-and-forget delivery.

    Runs after the owning transaction has committed; a failing notifier
    is logged and never rolls back or fails the operation.
    """
    if notifier is None:
        return
    try:
        notifier.notify(event_type, payload)
    except Exception:
        logger.exception(f"Notifier failed for {event_type}")


# =============================================================================
# CATALOG SOURCES
# =============================================================================

class CatalogSource(Protocol):
    def rows(self) -> Iterator[CatalogRow]: ...


def _row_from_mapping(record: Dict[str, Any]) -> CatalogRow:
    # Accept both English keys and the school's document headers
    return CatalogRow(
        name=record.get("name") or record.get("nama_pelanggaran") or "",
        category=record.get("category") or record.get("kategori") or "",
        weight=record.get("weight") if record.get("weight") is not None else record.get("poin"),
        description=record.get("description") or record.get("keterangan") or None,
    )


class JSONCatalogSource:
    """A JSON file holding a list of catalog objects."""

    def __init__(self, path):
        self.path = Path(path)

    def rows(self) -> Iterator[CatalogRow]:
        try:
            records = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValidationError(f"Catalog file {self.path} is not valid JSON: {e}") from e
        if not isinstance(records, list):
            raise ValidationError(f"Catalog file {self.path} must contain a JSON list")
        for record in records:
            yield _row_from_mapping(record)


class CSVCatalogSource:
    """A CSV file with a header row (name, category, weight, description)."""

    def __init__(self, path):
        self.path = Path(path)

    def rows(self) -> Iterator[CatalogRow]:
        with self.path.open(newline="", encoding="utf-8") as handle:
            for record in csv.DictReader(handle):
                yield _row_from_mapping(record)


def catalog_source_for(path) -> CatalogSource:
    """Pick a file source by extension."""
    suffix = Path(path).suffix.lower()
    if suffix == ".json":
        return JSONCatalogSource(path)
    if suffix == ".csv":
        return CSVCatalogSource(path)
    raise ValidationError(f"Unsupported catalog file type '{suffix}' (expected .json or .csv)")
