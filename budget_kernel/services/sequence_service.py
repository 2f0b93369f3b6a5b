"""
Module: budget_kernel.services.sequence_service
Responsibility: Sequential business-id allocation.  Every budget entity is
    keyed by a fixed prefix plus a zero-padded counter (``PAR0000000042``),
    one counter per entity kind.
Architecture position: Kernel > Services.  Used by every service that creates
    entities, including the cloner, which allocates one id per copied row.

Invariants enforced:
    - Monotonic: ids of one kind strictly increase and are never reused,
      even after the entity is deleted.
    - Counter row locked with ``SELECT ... FOR UPDATE``; the SQL
      aggregate-max-plus-one pattern is never used.

Failure modes:
    - First use of a kind races with another session: the insert of the
      counter row fails inside a savepoint and the locked row is re-read.

Audit relevance:
    Allocation is logged at DEBUG level with the kind and value.
"""

from sqlalchemy import BigInteger, Integer, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from budget_kernel.db.base import Base
from budget_kernel.domain.values import IdKind
from budget_kernel.logging_config import get_logger

logger = get_logger("services.sequence")

DEFAULT_ID_PADDING = 10


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    Row-level locking ensures monotonicity under concurrency.
    """

    __tablename__ = "sequence_counters"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    # Sequence name (the id prefix, e.g. "TIT")
    name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


class IdAllocator:
    """
    Allocates prefixed sequential business ids.

    Contract:
        ``next_id(IdKind.TITLE)`` returns ``"TIT"`` followed by the next
        counter value left-padded with zeros to ``padding`` digits.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
          A rolled-back transaction also rolls back the counter, so ids of
          a failed unit of work may be handed out again.  Compensating-mode
          rollbacks never touch the counter, so those ids stay burned.
    """

    def __init__(self, session: Session, padding: int = DEFAULT_ID_PADDING):
        self._session = session
        self._padding = padding

    def next_id(self, kind: IdKind) -> str:
        """Allocate the next id of the given kind."""
        value = self.next_value(kind.prefix)
        return f"{kind.prefix}{value:0{self._padding}d}"

    def next_value(self, sequence_name: str) -> int:
        """
        Get the next value for a named sequence.

        Postconditions:
            - Returns an integer > 0 strictly greater than any value
              previously returned for this name.
        """
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if counter is None:
            # First use of this sequence; another session may create it too
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._session.execute(
                    select(SequenceCounter)
                    .where(SequenceCounter.name == sequence_name)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                ).scalar_one()

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, kind: IdKind) -> int | None:
        """Current counter value for a kind without incrementing."""
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == kind.prefix)
        ).scalar_one_or_none()
        return counter.current_value if counter else None
