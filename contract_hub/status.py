"""
Contract status and risk vocabulary.

Status moves along a fixed table:

    Draft -> Submitted -> Reviewed -> Approved -> Active -> Expired
    Submitted/Reviewed -> Revision Requested -> Submitted
    Submitted/Reviewed -> Rejected (terminal)
    Approved -> Expired (expiry reconciliation only)

Which role may request which target status is kept here as well, so the
store can enforce both checks in one place.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional


class ContractStatus(str, Enum):
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    REVIEWED = "Reviewed"
    APPROVED = "Approved"
    REVISION_REQUESTED = "Revision Requested"
    REJECTED = "Rejected"
    ACTIVE = "Active"
    EXPIRED = "Expired"


class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class Role(str, Enum):
    PROCUREMENT = "procurement"
    LEGAL = "legal"
    MANAGEMENT = "management"


# Risk level written to the audit trail when an analysis branch fails
UNKNOWN_RISK = "Unknown"

TERMINAL_STATUSES: FrozenSet[ContractStatus] = frozenset({
    ContractStatus.EXPIRED,
    ContractStatus.REJECTED,
})

# Statuses the expiry reconciler moves to Expired once end_date has passed
EXPIRABLE_STATUSES: FrozenSet[ContractStatus] = frozenset({
    ContractStatus.ACTIVE,
    ContractStatus.APPROVED,
})

ALLOWED_TRANSITIONS: Dict[ContractStatus, FrozenSet[ContractStatus]] = {
    ContractStatus.DRAFT: frozenset({ContractStatus.SUBMITTED}),
    ContractStatus.SUBMITTED: frozenset({
        ContractStatus.REVIEWED,
        ContractStatus.REVISION_REQUESTED,
        ContractStatus.REJECTED,
    }),
    ContractStatus.REVIEWED: frozenset({
        ContractStatus.APPROVED,
        ContractStatus.REVISION_REQUESTED,
        ContractStatus.REJECTED,
    }),
    ContractStatus.REVISION_REQUESTED: frozenset({ContractStatus.SUBMITTED}),
    ContractStatus.APPROVED: frozenset({ContractStatus.ACTIVE, ContractStatus.EXPIRED}),
    ContractStatus.ACTIVE: frozenset({ContractStatus.EXPIRED}),
    ContractStatus.EXPIRED: frozenset(),
    ContractStatus.REJECTED: frozenset(),
}

_LEGAL_TARGETS = frozenset({
    ContractStatus.REVIEWED,
    ContractStatus.APPROVED,
    ContractStatus.REVISION_REQUESTED,
    ContractStatus.REJECTED,
})

# Expired is never requested by a person; the reconciler sets it
ROLE_TARGETS: Dict[Role, FrozenSet[ContractStatus]] = {
    Role.PROCUREMENT: frozenset({ContractStatus.SUBMITTED, ContractStatus.ACTIVE}),
    Role.LEGAL: _LEGAL_TARGETS,
    Role.MANAGEMENT: _LEGAL_TARGETS | {ContractStatus.SUBMITTED, ContractStatus.ACTIVE},
}


def can_transition(current: ContractStatus, requested: ContractStatus) -> bool:
    """Return True if the transition table allows current -> requested."""
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


def role_may_request(role: Optional[Role], requested: ContractStatus) -> bool:
    """Return True if a member with this role may move a contract to requested."""
    if role is None:
        return False
    return requested in ROLE_TARGETS.get(role, frozenset())


def normalize_risk_level(value: Optional[str]) -> Optional[RiskLevel]:
    """
    Map a risk label from the analysis service onto RiskLevel.

    The service is not consistent about case ("High", "high", "HIGH"), and the
    Indonesian labels appear in some responses.

    Returns:
        RiskLevel or None if the label is not recognised
    """
    if not value:
        return None
    label = str(value).strip().lower()
    aliases = {
        "low": RiskLevel.LOW,
        "rendah": RiskLevel.LOW,
        "medium": RiskLevel.MEDIUM,
        "sedang": RiskLevel.MEDIUM,
        "moderate": RiskLevel.MEDIUM,
        "high": RiskLevel.HIGH,
        "tinggi": RiskLevel.HIGH,
    }
    return aliases.get(label)
