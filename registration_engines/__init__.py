"""
Pure calculation engines for the registration system.

Engines have zero I/O: they take kernel domain values and return tagged
results.  Services load state, call an engine, and persist what it decided.
"""

from registration_engines.approval import (
    ActorAuthorization,
    ApprovalFailure,
    FieldEditEvaluation,
    LevelAdvance,
    LevelEvaluation,
    SendBackPlan,
    advance_after_level,
    authorize_decision,
    evaluate_field_edits,
    evaluate_level,
    levels_without_effective_approvers,
    plan_level_approvers,
    plan_send_back,
)
from registration_engines.reconciliation import (
    KeyExtraction,
    classify_matches,
    extract_key,
    filter_exact_matches,
    normalize_key_value,
)

__all__ = [
    "ActorAuthorization",
    "ApprovalFailure",
    "FieldEditEvaluation",
    "KeyExtraction",
    "LevelAdvance",
    "LevelEvaluation",
    "SendBackPlan",
    "advance_after_level",
    "authorize_decision",
    "classify_matches",
    "evaluate_field_edits",
    "evaluate_level",
    "extract_key",
    "filter_exact_matches",
    "levels_without_effective_approvers",
    "normalize_key_value",
    "plan_level_approvers",
    "plan_send_back",
]
