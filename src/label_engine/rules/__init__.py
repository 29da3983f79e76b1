"""Classification rules.

Submodules:
- conditions: typed condition trees, parsing and evaluation
- engine: applies a tenant's rules to one entity (import it directly;
  it depends on the services package)
"""

from label_engine.rules.conditions import Condition, evaluate, parse_condition

__all__ = [
    "Condition",
    "evaluate",
    "parse_condition",
]
