"""
Null-safe group merge: collapse rows sharing a key by taking the first
non-null value of every other column.

Columns that only make sense together, such as everything describing one
claim, can be passed as a block. The block is copied whole from the
group's first row instead of being filled column by column.
"""

from typing import Optional

import polars as pl


def first_non_null(col: str) -> pl.Expr:
    """First non-null value of `col` within the group (null if none)."""
    return pl.col(col).drop_nulls().first().alias(col)


def merge_non_null(
    df: pl.DataFrame,
    keys: list[str],
    columns: list[str],
    block: Optional[list[str]] = None,
) -> tuple[pl.DataFrame, int]:
    """
    Group `df` by `keys`, preserving row order within each group. `block`
    columns come from the group's first row as a unit; `columns` are merged
    with first_non_null. Returns (merged, n_conflicting_groups), where a
    conflicting group holds two different block rows or two different
    non-null values in some merged column.
    """
    block = block or []
    if not columns and not block:
        return df.select(keys).unique(maintain_order=True), 0

    flags = [(pl.col(c).drop_nulls().n_unique() > 1).alias(f"__conflict_{c}") for c in columns]
    if block:
        flags.append((pl.struct(block).n_unique() > 1).alias("__conflict_block"))

    merged = df.group_by(keys, maintain_order=True).agg(
        [pl.col(c).first().alias(c) for c in block]
        + [first_non_null(c) for c in columns]
        + flags
    )
    flag_cols = [f.meta.output_name() for f in flags]
    n_conflicts = merged.filter(pl.any_horizontal(flag_cols)).height
    return merged.drop(flag_cols), n_conflicts
