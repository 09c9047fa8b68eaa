"""
Workflow Kernel - finite-state-machine business workflows

A reusable engine for declaring business processes as graphs of named
states with:
- Role/attribute permission gating per state
- Guarded transitions (predicates or declarative conditions)
- Entry/exit hooks that mutate workflow context
- Append-only, replayable transition history
- Advisory single-writer locking
"""

__version__ = "0.1.0"
