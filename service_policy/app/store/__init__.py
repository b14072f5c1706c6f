"""
Rule store backends.
"""

from .base import RuleStore
from .memory import MemoryRuleStore
from .postgres import PostgresRuleStore

__all__ = ["RuleStore", "MemoryRuleStore", "PostgresRuleStore"]
