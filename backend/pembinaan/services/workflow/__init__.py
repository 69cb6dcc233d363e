"""
Disciplinary case escalation: transition table plus the orchestrating service.
"""
from .state_machine import CaseStateMachine, STATE_CONFIG, TRANSITIONS
from .escalation import EscalationWorkflow

__all__ = ["CaseStateMachine", "EscalationWorkflow", "STATE_CONFIG", "TRANSITIONS"]
