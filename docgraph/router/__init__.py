"""
Query planning: intent classification, tool selection and plan execution.
"""

from .intent_classifier import IntentClassifier, QueryAnalysis
from .models import QueryConstraints, QueryContext, QueryPlan, QueryStep, ToolResult, ToolType
from .query_planner import QueryPlanner, calculate_confidence

__all__ = [
    "IntentClassifier",
    "QueryAnalysis",
    "QueryConstraints",
    "QueryContext",
    "QueryPlan",
    "QueryStep",
    "ToolResult",
    "ToolType",
    "QueryPlanner",
    "calculate_confidence",
]
