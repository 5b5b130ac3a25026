"""
Knowledge stores.

Stores:
- ScopeTree: team root, project and private scopes with coupling links
- FactStore: current facts, supersession heads and history
"""

from ravenloom.stores.fact_store import FactFilters, FactStore, current_fact_filter
from ravenloom.stores.scope_store import ScopeNode, ScopeTree

__all__ = [
    "FactFilters",
    "FactStore",
    "ScopeNode",
    "ScopeTree",
    "current_fact_filter",
]
