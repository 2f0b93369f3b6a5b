"""
Budget Kernel

Persistence, domain values and shared infrastructure for construction
cost budgets:
- Sequential business ids
- Decimal money with explicit rounding
- Structured JSON logging and injected observability
- Savepoint or compensating units of change
"""

__version__ = "0.1.0"
