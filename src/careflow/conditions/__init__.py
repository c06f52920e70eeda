"""Boolean predicates gating workflow steps."""
from careflow.conditions.evaluator import evaluate, evaluate_one, is_empty

__all__ = ["evaluate", "evaluate_one", "is_empty"]
