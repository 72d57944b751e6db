"""Tests for the recurring-match scoring primitives."""

from ledgerline.matching.scoring import (
    amount_delta,
    amount_score,
    due_date_distance,
    due_date_score,
    recency_score,
    same_direction,
)


class TestDueDateScore:
    def test_exact_due_date(self):
        assert due_date_score("2024-03-15", "2024-03-15", 3, 3) == 1.0

    def test_one_day_early(self):
        assert due_date_score("2024-03-14", "2024-03-15", 3, 3) == 0.9375

    def test_window_boundary_still_scores(self):
        # Last day inside the window: 1 - (3/4)^2
        assert due_date_score("2024-03-18", "2024-03-15", 3, 3) == 0.4375
        assert due_date_score("2024-03-12", "2024-03-15", 3, 3) == 0.4375

    def test_boundary_follows_own_side_of_window(self):
        assert due_date_score("2024-03-14", "2024-03-15", 1, 5) == 0.75
        assert due_date_score("2024-03-20", "2024-03-15", 1, 5) == 0.3056
        assert due_date_score("2024-03-13", "2024-03-15", 1, 5) == 0.0

    def test_first_day_outside_window(self):
        assert due_date_score("2024-03-19", "2024-03-15", 3, 3) == 0.0
        assert due_date_score("2024-03-11", "2024-03-15", 3, 3) == 0.0

    def test_uses_side_of_window(self):
        # Wide before-window, zero after-window
        assert due_date_score("2024-03-10", "2024-03-15", 10, 0) > 0.0
        assert due_date_score("2024-03-16", "2024-03-15", 10, 0) == 0.0

    def test_zero_width_window_exact_only(self):
        assert due_date_score("2024-03-15", "2024-03-15", 0, 0) == 1.0
        assert due_date_score("2024-03-14", "2024-03-15", 0, 0) == 0.0

    def test_decreases_with_distance(self):
        scores = [
            due_date_score(f"2024-03-{15 + d:02d}", "2024-03-15", 5, 5)
            for d in range(7)
        ]
        assert scores == sorted(scores, reverse=True)
        assert len(set(scores[:6])) == 6

    def test_distance_sign(self):
        assert due_date_distance("2024-03-14", "2024-03-15") == -1
        assert due_date_distance("2024-03-17", "2024-03-15") == 2


class TestAmountScore:
    def test_exact_amount(self):
        assert amount_score(50.00, 50.00, 5, 0) == 1.0

    def test_within_percent_tolerance(self):
        assert amount_score(52.10, 50.00, 5, 0) == 0.2944

    def test_outside_tolerance(self):
        assert amount_score(53.00, 50.00, 5, 0) == 0.0

    def test_opposite_direction_scores_zero(self):
        assert amount_score(-50.00, 50.00, 5, 0) == 0.0
        assert amount_score(50.00, -50.00, 5, 100.0) == 0.0

    def test_inflow_against_inflow(self):
        assert amount_score(-50.00, -50.00, 5, 0) == 1.0
        assert amount_score(-52.10, -50.00, 5, 0) == 0.2944

    def test_absolute_tolerance_wins_when_larger(self):
        assert amount_score(55.00, 50.00, 5, 10.0) == 0.75

    def test_zero_tolerance_exact_only(self):
        assert amount_score(50.00, 50.00, 0, 0) == 1.0
        assert amount_score(50.01, 50.00, 0, 0) == 0.0

    def test_delta_rounded_to_cents(self):
        assert amount_delta(52.10, 50.00) == 2.1
        assert amount_delta(-49.5, -50.0) == 0.5

    def test_same_direction(self):
        assert same_direction(15.49, 15.49)
        assert same_direction(-2500.0, -2400.0)
        assert not same_direction(-15.49, 15.49)


class TestRecencyScore:
    def test_never_observed(self):
        assert recency_score(None, "2024-03-14") == 0.0

    def test_one_month_ago(self):
        assert recency_score("2024-02-14", "2024-03-14") == 0.974

    def test_observed_now_or_later(self):
        assert recency_score("2024-03-14", "2024-03-14") == 1.0
        assert recency_score("2024-04-01", "2024-03-14") == 1.0

    def test_beyond_horizon(self):
        assert recency_score("2023-01-01", "2024-03-14") == 0.0

    def test_more_recent_scores_higher(self):
        older = recency_score("2024-01-01", "2024-03-14")
        newer = recency_score("2024-03-01", "2024-03-14")
        assert 0.0 < older < newer < 1.0

    def test_custom_horizon(self):
        assert recency_score("2024-03-04", "2024-03-14", horizon_days=10) == 0.0
