"""
Configuration store for the rewards program.

Holds the single current ProgramConfig and FormulaParameters with a full
change history. Changes are admin-only and apply from the next accounting
day.
"""

from .models import (
    ProgramConfig,
    FormulaParameters,
    ConfigVersion,
    ConfigSnapshot,
    quantize_amount,
)
from .store import ConfigStore

__all__ = [
    "ProgramConfig",
    "FormulaParameters",
    "ConfigVersion",
    "ConfigSnapshot",
    "ConfigStore",
    "quantize_amount",
]
