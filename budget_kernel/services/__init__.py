"""Kernel services shared by every budget service."""

from budget_kernel.services.repository import Repository
from budget_kernel.services.sequence_service import IdAllocator, SequenceCounter
from budget_kernel.services.transactions import (
    TransactionMode,
    TransactionRunner,
    UnitOfChange,
)

__all__ = [
    "IdAllocator",
    "Repository",
    "SequenceCounter",
    "TransactionMode",
    "TransactionRunner",
    "UnitOfChange",
]
