"""
Diff engine package.

plan_operations is the entry point. It is pure, so callers can run it for
dry runs and for real cycles alike.
"""

from topology_reconciler.planner.diff import entity_changes, operations_for_region, plan_operations

__all__ = ["entity_changes", "operations_for_region", "plan_operations"]
