"""
Wide <-> Long Format Conversion
===============================

The SEM is fitted to the wide table (one row per unit, one column per
item); the mixed model is fitted to the long table (one row per
unit-by-item observation). The pivot must be lossless:

    long_to_wide(wide_to_long(wide)) == wide
"""

from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

UNIT_COL = 'unit'
VARIABLE_COL = 'variable'
TIME_COL = 'time'
VALUE_COL = 'y'

LONG_COLUMNS = [UNIT_COL, VARIABLE_COL, TIME_COL, VALUE_COL]


def wide_to_long(wide: pd.DataFrame,
                 time_scores: Optional[Sequence[float]] = None) -> pd.DataFrame:
    """
    Reshape a wide table to long format.

    Args:
        wide: DataFrame indexed by unit with one column per item
        time_scores: Time value per item (same order as the columns).
                     Defaults to the 0-based column position.

    Returns:
        DataFrame with columns unit, variable, time, y, sorted by unit then
        item order. Row count = len(wide) * number of items.
    """
    items = list(wide.columns)
    if time_scores is None:
        time_scores = np.arange(len(items), dtype=float)
    time_scores = np.asarray(time_scores, dtype=float)
    if time_scores.shape[0] != len(items):
        raise ValueError(
            f"Dimension mismatch: {len(items)} items but {time_scores.shape[0]} time scores"
        )

    frame = wide.rename_axis(UNIT_COL).reset_index()
    long = frame.melt(id_vars=UNIT_COL, value_vars=items,
                      var_name=VARIABLE_COL, value_name=VALUE_COL)

    position = {item: k for k, item in enumerate(items)}
    order = long[VARIABLE_COL].map(position)
    long[TIME_COL] = time_scores[order.to_numpy()]
    long['_order'] = order
    long = (long.sort_values([UNIT_COL, '_order'], kind='mergesort')
                .drop(columns='_order')
                .reset_index(drop=True))

    long = long[LONG_COLUMNS]
    long.attrs['unit_name'] = wide.index.name
    long.attrs['items'] = items
    return long


def long_to_wide(long: pd.DataFrame) -> pd.DataFrame:
    """
    Reshape a long table back to wide format.

    Items are ordered by their time value (ties keep first appearance),
    which reproduces the original column order of wide_to_long output.

    Raises:
        ValueError: If a (unit, variable) pair occurs more than once
        KeyError: If a required column is missing
    """
    missing = [c for c in (UNIT_COL, VARIABLE_COL, VALUE_COL) if c not in long.columns]
    if missing:
        raise KeyError(f"Long table is missing columns: {missing}")

    if long.duplicated([UNIT_COL, VARIABLE_COL]).any():
        raise ValueError("Duplicate (unit, variable) rows; pivot would not be lossless")

    items = _item_order(long)
    wide = long.pivot(index=UNIT_COL, columns=VARIABLE_COL, values=VALUE_COL)
    wide = wide.reindex(columns=items)
    wide.columns = pd.Index(items)
    wide.index.name = long.attrs.get('unit_name', UNIT_COL)
    return wide


def _item_order(long: pd.DataFrame) -> List[str]:
    """Items in the order recorded at reshape time, else by time then appearance."""
    items = long.attrs.get('items')
    present = list(pd.unique(long[VARIABLE_COL]))
    if items and set(items) == set(present):
        return list(items)
    if TIME_COL in long.columns:
        first_time = long.groupby(VARIABLE_COL, sort=False)[TIME_COL].first()
        return list(first_time.sort_values(kind='mergesort').index)
    return present
