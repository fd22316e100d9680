"""
Event Budget Ledger - Source Package

The budget ledger and reconciliation engine behind the event planner
dashboard.

DESIGN PRINCIPLES:
1. Category aggregates always equal the sum of their expenses
2. Fail early, fail visibly
3. Drift is repaired by re-deriving from expense rows, never by trusting deltas
4. Every mutation is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Event Budget Ledger Team"
