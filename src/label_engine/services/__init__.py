"""Business logic services for Label Engine."""

from label_engine.services.history import HistoryLog, snapshot_assignment
from label_engine.services.labels import LabelService
from label_engine.services.ledger import AssignmentLedger, LedgerChange
from label_engine.services.rules import RuleService, validate_rule_definition
from label_engine.services.scores import ScoreCalculator, Scores, UsageCounters, compute_scores
from label_engine.services.value_store import SetValueResult, ValueStore

__all__ = [
    "AssignmentLedger",
    "compute_scores",
    "HistoryLog",
    "LabelService",
    "LedgerChange",
    "RuleService",
    "ScoreCalculator",
    "Scores",
    "SetValueResult",
    "snapshot_assignment",
    "UsageCounters",
    "validate_rule_definition",
    "ValueStore",
]
