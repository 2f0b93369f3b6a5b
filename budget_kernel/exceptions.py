"""
Typed Exception Hierarchy for the Budget Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the budget services must react to failures precisely: a duplicate
item number is a user-correctable input problem, a pending approval of the
same type is a workflow conflict, and a dangling reference discovered before
cloning is a data-quality incident.  Parsing message strings to tell these
apart is fragile, so every failure has:

  1. A TYPED exception class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA attributes (entity, key, field, state ...)

Example:
    try:
        titles.create_title(...)
    except DuplicateItemNumberError as e:
        return {"error": e.code, "field": e.field, "value": e.value}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from BudgetKernelError:

    BudgetKernelError (base)
    |
    +-- ValidationError
    |   +-- DuplicateItemNumberError
    |   +-- CircularReferenceError
    |
    +-- NotFoundError
    |
    +-- InvalidStateError
    |   +-- DuplicateApprovalRequestError
    |   +-- ApprovalAlreadyResolvedError
    |
    +-- IntegrityError
    |   +-- CycleDetectedError
    |
    +-- TransactionUnsupportedError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | VALIDATION_ERROR            | Bad shape or missing required value
                | DUPLICATE_ITEM_NUMBER       | Item number already used in project
                | CIRCULAR_REFERENCE          | Batch temp ids can never resolve
----------------|-----------------------------|-----------------------------------------
Lookup          | NOT_FOUND                   | Entity missing by business key
----------------|-----------------------------|-----------------------------------------
State           | INVALID_STATE               | Wrong phase/state for the transition
                | DUPLICATE_APPROVAL_REQUEST  | Pending request of same type exists
                | APPROVAL_ALREADY_RESOLVED   | Request is no longer PENDING
----------------|-----------------------------|-----------------------------------------
Integrity       | INTEGRITY_ERROR             | Dangling reference found before clone
                | CYCLE_DETECTED              | Title parent chain loops
----------------|-----------------------------|-----------------------------------------
Storage         | TRANSACTION_UNSUPPORTED     | Store has no savepoints (fallback only)

===============================================================================
HANDLING PATTERNS
===============================================================================

1. State, validation and not-found errors abort the call.  The transaction
   runner guarantees no partial writes remain.

2. TransactionUnsupportedError never reaches callers: the transaction runner
   catches it and switches to the compensating undo log.

3. Totals propagation after a primary write is best effort.  Services log
   ``totals_recompute_failed`` and return the primary result.
"""


class BudgetKernelError(Exception):
    """
    Base exception for all budget kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BUDGET_KERNEL_ERROR"


# Validation


class ValidationError(BudgetKernelError):
    """Input failed a shape or uniqueness rule."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None, value: object = None):
        self.field = field
        self.value = value
        super().__init__(message)


class DuplicateItemNumberError(ValidationError):
    """Item number already used by another entity of the same project."""

    code: str = "DUPLICATE_ITEM_NUMBER"

    def __init__(self, entity: str, item_number: str, project_id: str):
        self.entity = entity
        self.project_id = project_id
        super().__init__(
            f"{entity} item number '{item_number}' already exists "
            f"in project {project_id}",
            field="item_number",
            value=item_number,
        )


class CircularReferenceError(ValidationError):
    """Temporary ids in a batch reference each other and never resolve."""

    code: str = "CIRCULAR_REFERENCE"

    def __init__(self, entity: str, unresolved: list[str]):
        self.entity = entity
        self.unresolved = unresolved
        super().__init__(
            f"Circular or unresolvable parent references among {entity} "
            f"entries: {', '.join(unresolved)}",
            field="parent",
        )


# Lookup


class NotFoundError(BudgetKernelError):
    """Entity with the given business key does not exist."""

    code: str = "NOT_FOUND"

    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


# State


class InvalidStateError(BudgetKernelError):
    """Entity is in the wrong phase or state for the requested transition."""

    code: str = "INVALID_STATE"

    def __init__(
        self,
        message: str,
        entity_id: str | None = None,
        current_state: str | None = None,
    ):
        self.entity_id = entity_id
        self.current_state = current_state
        super().__init__(message)


class DuplicateApprovalRequestError(InvalidStateError):
    """A PENDING request of the same type already exists."""

    code: str = "DUPLICATE_APPROVAL_REQUEST"

    def __init__(self, budget_id: str, approval_type: str, existing_request_id: str):
        self.approval_type = approval_type
        self.existing_request_id = existing_request_id
        super().__init__(
            f"A pending {approval_type} request already exists for budget "
            f"{budget_id}: {existing_request_id}",
            entity_id=budget_id,
            current_state="PENDING",
        )


class ApprovalAlreadyResolvedError(InvalidStateError):
    """Request is terminal and cannot be approved, rejected or cancelled."""

    code: str = "APPROVAL_ALREADY_RESOLVED"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(
            f"Approval request {request_id} is already {status}",
            entity_id=request_id,
            current_state=status,
        )


# Integrity


class IntegrityError(BudgetKernelError):
    """Stored data contains references that cannot be followed."""

    code: str = "INTEGRITY_ERROR"

    def __init__(self, message: str, problems: list[str] | None = None):
        self.problems = problems or []
        super().__init__(message)


class CycleDetectedError(IntegrityError):
    """A title parent chain revisits a title already walked."""

    code: str = "CYCLE_DETECTED"

    def __init__(self, title_id: str, path: list[str]):
        self.title_id = title_id
        self.path = path
        super().__init__(
            f"Cycle detected in title hierarchy at {title_id}: "
            f"{' -> '.join(path + [title_id])}",
            problems=[title_id],
        )


# Storage


class TransactionUnsupportedError(BudgetKernelError):
    """The store cannot open a savepoint; callers fall back to compensation."""

    code: str = "TRANSACTION_UNSUPPORTED"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Native transactions unavailable: {reason}")
