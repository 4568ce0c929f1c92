"""
Tender status lifecycle
"""
from typing import Dict, List

from .errors import InvalidStateTransitionError

TENDER_STATUS_TRANSITIONS: Dict[str, List[str]] = {
    "draft": ["extracted", "needs_review"],
    "extracted": ["needs_review", "reviewed"],
    "needs_review": ["reviewed"],
    "reviewed": ["needs_review", "export_pending"],
    "export_pending": ["exported", "export_failed"],
    "exported": [],
    "export_failed": ["export_pending", "reviewed"],
}

TENDER_STATUS_DESCRIPTIONS = {
    "draft": "Tender uploaded, awaiting extraction",
    "extracted": "Extraction complete, awaiting review",
    "needs_review": "Requires human review",
    "reviewed": "Approved, ready for export",
    "export_pending": "Export in progress",
    "exported": "Exported to TMS",
    "export_failed": "Export failed",
}

# after extraction every tender waits for a person
POST_EXTRACTION_STATUS = "needs_review"


def is_valid_transition(current: str, target: str) -> bool:
    return target in TENDER_STATUS_TRANSITIONS.get(current, [])


def is_terminal_state(state: str) -> bool:
    return not TENDER_STATUS_TRANSITIONS.get(state)


class TenderStateMachine:
    def __init__(self, state: str):
        if state not in TENDER_STATUS_TRANSITIONS:
            raise ValueError(f"Unknown tender status: {state}")
        self.state = state

    def can_transition_to(self, target: str) -> bool:
        return is_valid_transition(self.state, target)

    def transition_to(self, target: str) -> str:
        if not self.can_transition_to(target):
            raise InvalidStateTransitionError(self.state, target)
        self.state = target
        return self.state

    def allowed_transitions(self) -> List[str]:
        return list(TENDER_STATUS_TRANSITIONS[self.state])

    def is_terminal(self) -> bool:
        return is_terminal_state(self.state)
