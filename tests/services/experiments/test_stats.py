import pytest

from pushlab.services.experiments.stats import (
    VariantCounts,
    calculate_pooled_proportion,
    determine_winner,
    leader_significance,
    rank_variants,
    run_proportion_z_test,
)


class TestVariantCounts:
    def test_rate(self):
        assert VariantCounts("A", 100, 25).rate == pytest.approx(0.25)

    def test_rate_without_impressions(self):
        assert VariantCounts("A", 0, 0).rate is None


class TestDetermineWinner:
    def test_higher_rate_wins_over_higher_count(self):
        variants = [VariantCounts("A", 100, 10), VariantCounts("B", 50, 10)]
        assert determine_winner(variants) == "B"

    def test_tie_keeps_first_variant(self):
        variants = [VariantCounts("A", 100, 10), VariantCounts("B", 200, 20)]
        assert determine_winner(variants) == "A"

    def test_no_impressions_means_no_winner(self):
        variants = [VariantCounts("A", 0, 0), VariantCounts("B", 0, 0)]
        assert determine_winner(variants) is None

    def test_variant_without_impressions_is_skipped(self):
        variants = [VariantCounts("A", 0, 0), VariantCounts("B", 10, 0)]
        assert determine_winner(variants) == "B"

    def test_zero_rate_can_win(self):
        variants = [VariantCounts("A", 10, 0)]
        assert determine_winner(variants) == "A"


class TestRanking:
    def test_best_rate_first(self):
        ranked = rank_variants(
            [VariantCounts("A", 100, 5), VariantCounts("B", 0, 0), VariantCounts("C", 100, 20)]
        )
        assert [v.name for v in ranked] == ["C", "A"]

    def test_ties_keep_input_order(self):
        ranked = rank_variants([VariantCounts("A", 10, 1), VariantCounts("B", 10, 1)])
        assert [v.name for v in ranked] == ["A", "B"]


class TestProportionZTest:
    def test_pooled_proportion(self):
        a = VariantCounts("A", 100, 20)
        b = VariantCounts("B", 100, 30)
        assert calculate_pooled_proportion(a, b) == pytest.approx(0.25)

    def test_pooled_proportion_without_impressions(self):
        assert calculate_pooled_proportion(VariantCounts("A", 0, 0), VariantCounts("B", 0, 0)) == 0.0

    def test_significant_difference(self):
        a = VariantCounts("A", 1000, 300)
        b = VariantCounts("B", 1000, 200)
        z_score, p_value = run_proportion_z_test(a, b)
        assert z_score > 0
        assert p_value < 0.01

    def test_identical_rates(self):
        a = VariantCounts("A", 500, 50)
        b = VariantCounts("B", 500, 50)
        z_score, p_value = run_proportion_z_test(a, b)
        assert z_score == pytest.approx(0.0)
        assert p_value == pytest.approx(1.0)

    def test_empty_arm(self):
        assert run_proportion_z_test(VariantCounts("A", 0, 0), VariantCounts("B", 10, 1)) == (0.0, 1.0)

    def test_zero_standard_error(self):
        a = VariantCounts("A", 10, 0)
        b = VariantCounts("B", 10, 0)
        assert run_proportion_z_test(a, b) == (0.0, 1.0)


class TestLeaderSignificance:
    def test_leader_against_runner_up(self):
        result = leader_significance(
            [VariantCounts("A", 1000, 200), VariantCounts("B", 1000, 300)], confidence_threshold=95
        )
        assert result.leader == "B"
        assert result.runner_up == "A"
        assert result.alpha == pytest.approx(0.05)
        assert result.is_significant is True

    def test_small_samples_not_significant(self):
        result = leader_significance(
            [VariantCounts("A", 10, 2), VariantCounts("B", 10, 3)], confidence_threshold=95
        )
        assert result.is_significant is False

    def test_needs_two_variants_with_impressions(self):
        result = leader_significance(
            [VariantCounts("A", 10, 2), VariantCounts("B", 0, 0)], confidence_threshold=90
        )
        assert result is None
