"""
Tests for Wide/Long Conversion
==============================
"""

import numpy as np
import pandas as pd
import pytest

from lmmsem.simulation.reshape import LONG_COLUMNS, long_to_wide, wide_to_long


@pytest.fixture
def small_wide():
    return pd.DataFrame(
        {'y1': [1.0, 2.0, 3.0], 'y2': [4.0, 5.0, 6.0], 'y3': [7.0, 8.0, 9.0]},
        index=pd.Index([10, 11, 12], name='unit'),
    )


@pytest.mark.simulation
class TestWideToLong:

    def test_columns_and_row_count(self, small_wide):
        long = wide_to_long(small_wide)
        assert list(long.columns) == LONG_COLUMNS
        assert len(long) == 3 * 3

    def test_sorted_by_unit_then_item(self, small_wide):
        long = wide_to_long(small_wide)
        assert long['unit'].tolist() == [10, 10, 10, 11, 11, 11, 12, 12, 12]
        assert long['variable'].tolist()[:3] == ['y1', 'y2', 'y3']
        assert long['y'].tolist()[:3] == [1.0, 4.0, 7.0]

    def test_default_time_is_position(self, small_wide):
        long = wide_to_long(small_wide)
        assert long['time'].tolist()[:3] == [0.0, 1.0, 2.0]

    def test_custom_time_scores(self, small_wide):
        long = wide_to_long(small_wide, time_scores=[0, 0.5, 2])
        assert long.loc[long['variable'] == 'y2', 'time'].unique().tolist() == [0.5]

    def test_time_score_mismatch(self, small_wide):
        with pytest.raises(ValueError, match="Dimension mismatch"):
            wide_to_long(small_wide, time_scores=[0, 1])

    def test_row_count_simulated(self, slope_data):
        long = wide_to_long(slope_data.wide, time_scores=slope_data.spec.time_scores)
        assert len(long) == slope_data.n_units * slope_data.spec.n_items

    def test_input_not_modified(self, small_wide):
        before = small_wide.copy()
        wide_to_long(small_wide)
        pd.testing.assert_frame_equal(small_wide, before)


@pytest.mark.simulation
class TestRoundTrip:

    def test_small_round_trip(self, small_wide):
        pd.testing.assert_frame_equal(long_to_wide(wide_to_long(small_wide)), small_wide)

    def test_simulated_round_trip(self, intercept_data):
        wide = intercept_data.wide
        back = long_to_wide(wide_to_long(wide))
        pd.testing.assert_frame_equal(back, wide)

    def test_round_trip_unordered_item_names(self):
        wide = pd.DataFrame(np.arange(8.0).reshape(2, 4),
                            columns=['t3', 'a', 'z', 'b'],
                            index=pd.Index([1, 2], name='unit'))
        back = long_to_wide(wide_to_long(wide))
        pd.testing.assert_frame_equal(back, wide)

    def test_round_trip_without_attrs_uses_time_order(self, small_wide):
        long = wide_to_long(small_wide, time_scores=[0, 1, 2])
        long.attrs.clear()
        back = long_to_wide(long.sample(frac=1.0, random_state=0))
        assert list(back.columns) == ['y1', 'y2', 'y3']
        np.testing.assert_array_equal(back.values, small_wide.values)


@pytest.mark.simulation
class TestLongToWideErrors:

    def test_duplicate_rows(self, small_wide):
        long = wide_to_long(small_wide)
        duplicated = pd.concat([long, long.iloc[[0]]], ignore_index=True)
        with pytest.raises(ValueError, match="Duplicate"):
            long_to_wide(duplicated)

    def test_missing_column(self, small_wide):
        long = wide_to_long(small_wide).drop(columns='y')
        with pytest.raises(KeyError):
            long_to_wide(long)
