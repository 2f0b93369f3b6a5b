"""
Runtime settings (``budget_kernel.config``).

Responsibility
--------------
Single place that reads configuration for the budget services: database
URL, default percentages for new budgets, transaction mode, id padding,
the bulk-recompute price threshold and the log level.

Sources, later ones winning:
    1. Dataclass defaults.
    2. A YAML file: ``path`` argument, else ``$BUDGET_CONFIG_FILE``.
    3. ``$BUDGET_DATABASE_URL`` and ``$BUDGET_TRANSACTION_MODE``.

Failure modes
-------------
* Missing YAML file named explicitly  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key or invalid value  -> ``ValueError``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from budget_kernel.services.transactions import TransactionMode

CONFIG_FILE_ENV = "BUDGET_CONFIG_FILE"
DATABASE_URL_ENV = "BUDGET_DATABASE_URL"
TRANSACTION_MODE_ENV = "BUDGET_TRANSACTION_MODE"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class BudgetSettings:
    database_url: str = "sqlite:///:memory:"
    default_tax_percentage: Decimal = Decimal("18")
    default_profit_percentage: Decimal = Decimal("0")
    transaction_mode: TransactionMode = TransactionMode.NATIVE
    id_padding: int = 10
    price_change_threshold: Decimal = Decimal("0.01")
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        # Coerce YAML scalars; frozen, so go through object.__setattr__.
        object.__setattr__(self, "default_tax_percentage", Decimal(str(self.default_tax_percentage)))
        object.__setattr__(self, "default_profit_percentage", Decimal(str(self.default_profit_percentage)))
        object.__setattr__(self, "price_change_threshold", Decimal(str(self.price_change_threshold)))
        object.__setattr__(self, "transaction_mode", TransactionMode(self.transaction_mode))
        object.__setattr__(self, "log_level", str(self.log_level).upper())

        if not self.database_url:
            raise ValueError("database_url must not be empty")
        if self.default_tax_percentage < 0 or self.default_profit_percentage < 0:
            raise ValueError("default percentages must be >= 0")
        if self.price_change_threshold < 0:
            raise ValueError("price_change_threshold must be >= 0")
        if not 1 <= int(self.id_padding) <= 18:
            raise ValueError(f"id_padding must be between 1 and 18, got {self.id_padding}")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {_LOG_LEVELS}, got {self.log_level!r}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BudgetSettings:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown settings: {sorted(unknown)}")
        return cls(**data)


def load_yaml_settings(path: Path) -> dict[str, Any]:
    """Read a settings YAML file.  A top-level ``budget:`` key is unwrapped."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level")
    return data.get("budget", data)


def load_settings(path: str | Path | None = None) -> BudgetSettings:
    """Build settings from defaults, an optional YAML file and the environment."""
    source = path or os.environ.get(CONFIG_FILE_ENV)
    settings = BudgetSettings.from_dict(load_yaml_settings(Path(source))) if source else BudgetSettings()

    overrides: dict[str, Any] = {}
    if os.environ.get(DATABASE_URL_ENV):
        overrides["database_url"] = os.environ[DATABASE_URL_ENV]
    if os.environ.get(TRANSACTION_MODE_ENV):
        overrides["transaction_mode"] = os.environ[TRANSACTION_MODE_ENV].lower()
    return replace(settings, **overrides) if overrides else settings
