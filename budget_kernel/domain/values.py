"""
Value enumerations for the budget domain.

Responsibility:
    Canonical string enums for budget phases, version states, approval
    types and statuses, resource types and the sequential id prefixes.
    Stored as their string ``value`` in the database.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Imported by models, engines and
    services.
"""

from enum import Enum


class Phase(str, Enum):
    """Major lifecycle stage of a budget lineage."""

    DRAFT = "DRAFT"
    BIDDING = "BIDDING"
    CONTRACTUAL = "CONTRACTUAL"
    AS_BUILT = "AS_BUILT"


class BudgetState(str, Enum):
    """State of a single budget version (or of the parent shell)."""

    DRAFT = "draft"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    CURRENT = "current"


# AS_BUILT versions are numbered in two independent pools.
ASBUILT_WORKING_STATES = frozenset(
    {BudgetState.DRAFT, BudgetState.IN_REVIEW, BudgetState.REJECTED}
)
ASBUILT_APPROVED_STATES = frozenset({BudgetState.APPROVED, BudgetState.CURRENT})


class ApprovalType(str, Enum):
    """Transition gated by an approval request."""

    BIDDING_TO_CONTRACTUAL = "BIDDING_TO_CONTRACTUAL"
    CONTRACTUAL_TO_ASBUILT = "CONTRACTUAL_TO_ASBUILT"
    NEW_ASBUILT_VERSION = "NEW_ASBUILT_VERSION"
    OFFICIALIZE_ASBUILT = "OFFICIALIZE_ASBUILT"

    @property
    def targets_version(self) -> bool:
        """True when the request gates one specific version, not the group."""
        return self in (
            ApprovalType.NEW_ASBUILT_VERSION,
            ApprovalType.OFFICIALIZE_ASBUILT,
        )


class ApprovalStatus(str, Enum):
    """Approval request status.  PENDING is the only non-terminal value."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


class ResourceType(str, Enum):
    """Kind of input consumed by a unit-price analysis."""

    MATERIAL = "MATERIAL"
    LABOR = "LABOR"
    EQUIPMENT = "EQUIPMENT"
    SUBCONTRACT = "SUBCONTRACT"


class TitleKind(str, Enum):
    TITLE = "TITLE"
    SUBTITLE = "SUBTITLE"


class LineItemStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class IdKind(str, Enum):
    """Entity kinds served by the sequential id allocator.  Value is the prefix."""

    BUDGET = "PTO"
    VERSION_GROUP = "GRP"
    TITLE = "TIT"
    LINE_ITEM = "PAR"
    ANALYSIS = "APU"
    SHARED_PRICE = "PRP"
    APPROVAL_REQUEST = "APB"

    @property
    def prefix(self) -> str:
        return self.value


# Equipment units with special pricing rules.
UNIT_PERCENT_LABOR = "%mo"
UNIT_MACHINE_HOUR = "hm"

# Temporary ids used inside a batch edit start with this prefix.
TEMP_ID_PREFIX = "temp_"
