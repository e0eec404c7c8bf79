import pytest

from bubblegrade.router import band_counts, merge_answers, plan_bands


class TestBandCounts:
    def test_fifteen_items_single_band(self):
        assert band_counts(15) == [15]

    def test_twenty_items_single_band(self):
        assert band_counts(20) == [20]

    def test_fifty_items_two_even_bands(self):
        assert band_counts(50) == [25, 25]

    def test_odd_count_rounds_first_band_up(self):
        assert band_counts(31) == [16, 15]

    def test_seventy_five_items_three_bands(self):
        assert band_counts(75) == [20, 20, 35]

    def test_just_over_fifty(self):
        assert band_counts(51) == [20, 20, 11]


class TestPlanBands:
    def test_single_band_spans_sheet(self):
        (plan,) = plan_bands(15, 1000)
        assert (plan.x0, plan.x1, plan.first_item, plan.count) == (0, 1000, 1, 15)

    def test_two_bands_overlap_fifty_px(self):
        first, second = plan_bands(50, 1000)
        assert (first.x0, first.x1) == (0, 550)
        assert (second.x0, second.x1) == (450, 1000)
        assert (first.first_item, second.first_item) == (1, 26)

    def test_three_bands_overlap_forty_px_per_seam(self):
        plans = plan_bands(75, 999)
        assert [(p.x0, p.x1) for p in plans] == [(0, 373), (293, 706), (626, 999)]
        assert [p.count for p in plans] == [20, 20, 35]
        assert [p.first_item for p in plans] == [1, 21, 41]

    def test_rejects_non_positive_counts(self):
        with pytest.raises(ValueError):
            plan_bands(0, 1000)


class TestMergeAnswers:
    def test_concatenates_in_band_order(self):
        assert merge_answers([["A", "B"], ["C"]], 3) == ["A", "B", "C"]

    def test_pads_short_results(self):
        assert merge_answers([["A"], []], 4) == ["A", "", "", ""]

    def test_truncates_long_results(self):
        assert merge_answers([["A", "B", "C"], ["D", "A"]], 4) == ["A", "B", "C", "D"]
