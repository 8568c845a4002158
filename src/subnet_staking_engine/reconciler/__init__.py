"""Merging of per-network subnet records into canonical builders."""

from subnet_staking_engine.reconciler.aliases import NameAliasTable, normalize_name, slugify
from subnet_staking_engine.reconciler.descriptions import StructuredDescription, parse_structured_description
from subnet_staking_engine.reconciler.engine import ReconciliationEngine, reconcile, totals
from subnet_staking_engine.reconciler.models import (
    Builder,
    BuilderFilter,
    BuilderListing,
    BuilderSort,
    BuilderTotals,
    SortKey,
)

__all__ = [
    "Builder",
    "BuilderFilter",
    "BuilderListing",
    "BuilderSort",
    "BuilderTotals",
    "NameAliasTable",
    "ReconciliationEngine",
    "SortKey",
    "StructuredDescription",
    "normalize_name",
    "parse_structured_description",
    "reconcile",
    "slugify",
    "totals",
]
