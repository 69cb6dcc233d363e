"""
Case Escalation State Machine

Deterministic state machine for disciplinary cases (pembinaan).
A case state is the pair (status, escalation_tier); the tier is set on entry
to IN_PROGRESS and kept through the terminal states.

    PENDING ──send_to_counseling──────▶ IN_PROGRESS[light]
    PENDING ──send_to_administration──▶ IN_PROGRESS[severe]
    IN_PROGRESS[light] ──send_to_administration──▶ IN_PROGRESS[severe]
    IN_PROGRESS[*] ──complete──▶ COMPLETED
    PENDING | IN_PROGRESS[*] ──archive──▶ ARCHIVED

All updates are compare-and-swap on the case version. All transitions are
logged immutably.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session

from ...exceptions import ConflictError
from ...models.db_models import (
    CaseLogDB, CaseStatus, DisciplinaryCaseDB, EscalationTier,
)

CaseState = Tuple[CaseStatus, Optional[EscalationTier]]


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATE_CONFIG = {
    CaseStatus.PENDING: {
        "description": "Case reported and classified, awaiting a counseling-tier decision",
        "terminal": False,
        "entry_authority": "REPORTER",
    },
    CaseStatus.IN_PROGRESS: {
        "description": "Intervention scheduled: BK counseling (light) or Waka review (severe)",
        "terminal": False,
        "entry_authority": "STUDENT_AFFAIRS",
    },
    CaseStatus.COMPLETED: {
        "description": "Intervention finished and resolution recorded",
        "terminal": True,
        "entry_authority": "STUDENT_AFFAIRS",
    },
    CaseStatus.ARCHIVED: {
        "description": "Closed administratively without resolution",
        "terminal": True,
        "entry_authority": "STUDENT_AFFAIRS",
    },
}

LIGHT = (CaseStatus.IN_PROGRESS, EscalationTier.LIGHT)
SEVERE = (CaseStatus.IN_PROGRESS, EscalationTier.SEVERE)
PENDING = (CaseStatus.PENDING, None)

# (current_state, action) -> next_state
TRANSITIONS: Dict[Tuple[CaseState, str], CaseState] = {
    (PENDING, "send_to_counseling"): LIGHT,
    (PENDING, "send_to_administration"): SEVERE,
    (LIGHT, "send_to_administration"): SEVERE,

    (LIGHT, "complete"): (CaseStatus.COMPLETED, EscalationTier.LIGHT),
    (SEVERE, "complete"): (CaseStatus.COMPLETED, EscalationTier.SEVERE),

    (PENDING, "archive"): (CaseStatus.ARCHIVED, None),
    (LIGHT, "archive"): (CaseStatus.ARCHIVED, EscalationTier.LIGHT),
    (SEVERE, "archive"): (CaseStatus.ARCHIVED, EscalationTier.SEVERE),
}


def state_of(case: DisciplinaryCaseDB) -> CaseState:
    return case.status, case.escalation_tier


def describe(state: CaseState) -> str:
    status, tier = state
    return f"{status.value}[{tier.value}]" if tier else status.value


class CaseStateMachine:
    """
    Transition-table validator plus the compare-and-swap writer for cases.
    """

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def get_state_config(self, status: CaseStatus) -> Dict[str, Any]:
        return STATE_CONFIG.get(status, {})

    def is_terminal_state(self, status: CaseStatus) -> bool:
        return self.get_state_config(status).get("terminal", False)

    def can_transition(self, state: CaseState, action: str) -> Tuple[bool, str]:
        """
        Check if an action is allowed from a state.

        Returns (allowed, reason)
        """
        if (state, action) in TRANSITIONS:
            return True, "Transition allowed"
        return False, f"Cannot {action.replace('_', ' ')} a case in state {describe(state)}"

    def available_actions(self, case: DisciplinaryCaseDB) -> List[str]:
        current = state_of(case)
        return sorted(action for (state, action) in TRANSITIONS if state == current)

    # =========================================================================
    # WRITES
    # =========================================================================

    def compare_and_swap(
        self,
        case: DisciplinaryCaseDB,
        values: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> DisciplinaryCaseDB:
        """
        Apply `values` only if the stored version still equals the expected one.

        Bumps the version. Raises ConflictError when another writer got there
        first; the caller must re-read and retry or surface the conflict.
        """
        version = case.version if expected_version is None else expected_version
        if version != case.version:
            raise ConflictError(
                f"Case {case.id} is at version {case.version}, expected {version}"
            )

        updates = dict(values)
        updates["version"] = version + 1
        updates["updated_at"] = datetime.utcnow()

        rows = self.db.query(DisciplinaryCaseDB).filter(
            DisciplinaryCaseDB.id == case.id,
            DisciplinaryCaseDB.version == version,
        ).update(updates, synchronize_session="evaluate")

        if rows != 1:
            raise ConflictError(f"Case {case.id} was modified concurrently; reload and retry")
        return case

    def transition(
        self,
        case: DisciplinaryCaseDB,
        action: str,
        actor: str,
        reason: Optional[str] = None,
        extra_values: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
    ) -> DisciplinaryCaseDB:
        """
        Execute a state transition. Does not commit.

        Raises ConflictError for illegal transitions or lost races.
        """
        from_state = state_of(case)
        allowed, message = self.can_transition(from_state, action)
        if not allowed:
            raise ConflictError(message)

        to_status, to_tier = TRANSITIONS[(from_state, action)]
        values = {"status": to_status, "escalation_tier": to_tier}
        values.update(extra_values or {})

        self.compare_and_swap(case, values, expected_version)
        self.log(
            case,
            trigger=action,
            actor=actor,
            from_state=from_state,
            to_state=(to_status, to_tier),
            reason=reason,
            metadata=metadata,
        )
        return case

    def log(
        self,
        case: DisciplinaryCaseDB,
        trigger: str,
        actor: str,
        from_state: Optional[CaseState] = None,
        to_state: Optional[CaseState] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CaseLogDB:
        """Append an immutable log entry. from_state None means creation."""
        to_status, to_tier = to_state or state_of(case)
        from_status, from_tier = from_state if from_state else (None, None)

        entry = CaseLogDB(
            id=str(uuid4()),
            case_id=case.id,
            from_status=from_status,
            to_status=to_status,
            from_tier=from_tier,
            to_tier=to_tier,
            trigger=trigger,
            actor=actor,
            reason=reason,
            event_metadata=metadata or {},
            created_at=datetime.utcnow(),
        )
        self.db.add(entry)
        return entry
