"""
ServiceContext -- the capabilities every budget service is built with.

Responsibility:
    Bundles the session with the always-present capabilities (transaction
    runner, id allocator, clock, observability, settings) so services are
    composed from one object instead of each building its own.

Architecture position:
    Services -- wiring only.  Holds no state besides the capabilities.

Non-goals:
    - Does NOT commit.  The caller's session_scope() owns the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from budget_kernel.config import BudgetSettings
from budget_kernel.db.base import Base
from budget_kernel.domain.clock import Clock, SystemClock
from budget_kernel.observability import LoggingObservability, Observability
from budget_kernel.services.repository import Repository
from budget_kernel.services.sequence_service import IdAllocator
from budget_kernel.services.transactions import TransactionMode, TransactionRunner


@dataclass
class ServiceContext:
    session: Session
    runner: TransactionRunner
    ids: IdAllocator
    clock: Clock
    observability: Observability
    settings: BudgetSettings

    @classmethod
    def build(
        cls,
        session: Session,
        settings: BudgetSettings | None = None,
        *,
        clock: Clock | None = None,
        observability: Observability | None = None,
        mode: TransactionMode | None = None,
    ) -> ServiceContext:
        settings = settings or BudgetSettings()
        obs = observability or LoggingObservability("services")
        return cls(
            session=session,
            runner=TransactionRunner(
                session,
                mode=mode or settings.transaction_mode,
                observability=obs.child("transactions"),
            ),
            ids=IdAllocator(session, padding=settings.id_padding),
            clock=clock or SystemClock(),
            observability=obs,
            settings=settings,
        )

    def repo(self, model: type[Base], key: str, label: str | None = None) -> Repository:
        return Repository(self.session, model, key, label)
