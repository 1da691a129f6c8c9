from datetime import datetime, timedelta

from tasklynk.calculations import (
    CLIENT_FAVORITE,
    TOP_RATED,
    VERIFIED_EXPERT,
    FreelancerStats,
    calculate_client_rating,
    calculate_client_tier,
    calculate_freelancer_badge,
    calculate_freelancer_rating,
    calculate_writer_earnings,
    evaluate_badges,
    is_technical_work_type,
    min_client_amount,
    was_delivered_on_time,
)


def test_writer_earnings_use_work_type_rate_and_slide_rate():
    assert calculate_writer_earnings(2, 0, "Essay") == 400
    assert calculate_writer_earnings(2, 0, "Data Analysis (SPSS)") == 540
    assert calculate_writer_earnings(1, 3, "Essay") == 500
    assert calculate_writer_earnings(None, None, "Essay") == 0


def test_technical_detection_matches_r_only_as_a_word():
    assert is_technical_work_type("R Programming")
    assert is_technical_work_type("Statistics in r")
    assert is_technical_work_type("Excel Dashboard")
    assert not is_technical_work_type("Literature Review")
    assert not is_technical_work_type("Research Paper")
    assert not is_technical_work_type(None)


def test_client_minimum_amount():
    assert min_client_amount(2, 0, "Essay") == 480
    assert min_client_amount(2, 0, "Python assignment") == 540
    assert min_client_amount(1, 2, "Essay") == 540


def test_freelancer_rating_formula():
    assert calculate_freelancer_rating(0, 0, [], 0) == 3.0
    # 2 * 1.0 on time + 2 * (5/5) + 1 quality
    assert calculate_freelancer_rating(4, 4, [5, 5], 0) == 5.0
    # 2 * 0.5 + 2 * (3/5) + 0.5
    assert calculate_freelancer_rating(2, 1, [], 1) == 2.7


def test_client_rating_formula():
    assert calculate_client_rating(0, 0, 0) == 3.0
    assert calculate_client_rating(10, 10, 20000) == 5.0
    assert calculate_client_rating(2, 1, 5000) == 2.2


def test_tiers_follow_completed_counts():
    assert calculate_client_tier(9) == "basic"
    assert calculate_client_tier(10) == "silver"
    assert calculate_client_tier(25) == "gold"
    assert calculate_client_tier(50) == "platinum"
    assert calculate_freelancer_badge(0) == "bronze"
    assert calculate_freelancer_badge(25) == "gold"
    assert calculate_freelancer_badge(100) == "elite"


def test_on_time_delivery():
    deadline = datetime(2026, 10, 20, 12, 0)
    assert was_delivered_on_time(deadline, deadline - timedelta(hours=1))
    assert not was_delivered_on_time(deadline, deadline + timedelta(minutes=1))
    assert not was_delivered_on_time(None, deadline)


def test_top_rated_needs_ten_ratings_averaging_four_and_a_half():
    assert TOP_RATED in evaluate_badges(FreelancerStats([5] * 6 + [4] * 4, 10, {}, {}))
    assert TOP_RATED not in evaluate_badges(FreelancerStats([5] * 9, 9, {}, {}))
    assert TOP_RATED not in evaluate_badges(FreelancerStats([4] * 8 + [5] * 2, 10, {}, {}))


def test_verified_expert_needs_twenty_jobs():
    assert VERIFIED_EXPERT in evaluate_badges(FreelancerStats([5], 20, {}, {}))
    assert VERIFIED_EXPERT not in evaluate_badges(FreelancerStats([5], 19, {}, {}))
    assert VERIFIED_EXPERT not in evaluate_badges(FreelancerStats([], 25, {}, {}))


def test_client_favorite_uses_that_clients_own_ratings():
    assert CLIENT_FAVORITE in evaluate_badges(FreelancerStats([], 5, {7: 5}, {}))
    assert CLIENT_FAVORITE in evaluate_badges(FreelancerStats([5, 4], 5, {7: 5}, {7: [5, 4]}))
    assert CLIENT_FAVORITE not in evaluate_badges(FreelancerStats([4, 4], 5, {7: 5}, {7: [4, 4]}))
    assert CLIENT_FAVORITE not in evaluate_badges(FreelancerStats([], 6, {7: 3, 8: 3}, {}))
