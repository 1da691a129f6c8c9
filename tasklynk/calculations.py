"""Payout, rating, tier and badge rules.

Everything here is a plain function of its arguments so the settlement and
badge passes can be re-run any number of times with the same outcome.
"""
import re
from collections import namedtuple

# The R language only counts as a whole word, so "Literature Review" stays non-technical.
R_LANGUAGE = re.compile(r"(?<![a-z0-9])r(?![a-z0-9])")
TECHNICAL_KEYWORDS = (
    "excel",
    "spss",
    "stata",
    "python",
    "data analysis",
    "programming",
    "powerpoint",
    "presentation",
    "technical",
    "coding",
    "jasp",
    "jamovi",
)

WRITER_CPP = 200
WRITER_CPP_TECHNICAL = 270
WRITER_PER_SLIDE = 100
CLIENT_MIN_CPP = 240
CLIENT_MIN_CPP_TECHNICAL = 270
CLIENT_MIN_PER_SLIDE = 150

TOP_RATED = "top_rated"
VERIFIED_EXPERT = "verified_expert"
CLIENT_FAVORITE = "client_favorite"
AUTO_BADGES = (TOP_RATED, VERIFIED_EXPERT, CLIENT_FAVORITE)
MANUAL_BADGES = ("editors_choice", "fast_responder")

BADGE_MIN_AVERAGE = 4.5
TOP_RATED_MIN_RATINGS = 10
VERIFIED_EXPERT_MIN_JOBS = 20
CLIENT_FAVORITE_MIN_ORDERS = 5

BADGE_CRITERIA = {
    TOP_RATED: "Average rating 4.5+ with 10+ ratings",
    VERIFIED_EXPERT: "20+ completed orders with 4.5+ average rating",
    CLIENT_FAVORITE: "5+ completed orders from the same client with 4.5+ rating from that client",
    "editors_choice": "Manual admin assignment",
    "fast_responder": "Manual admin assignment",
}

# scores: every rating score received; client_orders maps client id to the
# number of completed jobs for that client; client_scores maps client id to
# the scores that client gave on those jobs.
FreelancerStats = namedtuple("FreelancerStats", "scores completed_jobs client_orders client_scores")


def is_technical_work_type(work_type):
    if not work_type:
        return False
    lowered = work_type.lower()
    if R_LANGUAGE.search(lowered):
        return True
    return any(keyword in lowered for keyword in TECHNICAL_KEYWORDS)


def writer_cpp(work_type):
    return WRITER_CPP_TECHNICAL if is_technical_work_type(work_type) else WRITER_CPP


def calculate_writer_earnings(pages, slides, work_type):
    """Freelancer payout for a job: pages at the work-type CPP plus slides at a flat rate."""
    p = max(0, int(pages or 0))
    s = max(0, int(slides or 0))
    return round(p * writer_cpp(work_type) + s * WRITER_PER_SLIDE, 2)


def min_client_amount(pages, slides, work_type):
    p = max(0, int(pages or 0))
    s = max(0, int(slides or 0))
    cpp = CLIENT_MIN_CPP_TECHNICAL if is_technical_work_type(work_type) else CLIENT_MIN_CPP
    return p * cpp + s * CLIENT_MIN_PER_SLIDE


def calculate_freelancer_rating(completed_jobs, on_time_deliveries, client_scores, revisions_requested):
    if completed_jobs <= 0:
        return 3.0
    delivery_score = (on_time_deliveries / completed_jobs) * 2
    average = sum(client_scores) / len(client_scores) if client_scores else 3
    client_score = (average / 5) * 2
    quality_score = max(0.0, 1 - revisions_requested / completed_jobs)
    rating = max(1.0, min(5.0, delivery_score + client_score + quality_score))
    return round(rating, 1)


def calculate_client_rating(completed_jobs, paid_on_time, total_spent):
    if completed_jobs <= 0:
        return 3.0
    payment_score = (paid_on_time / completed_jobs) * 3
    spending_score = min(total_spent / 10000, 1)
    completion_score = min(completed_jobs / 10, 1)
    rating = max(1.0, min(5.0, payment_score + spending_score + completion_score))
    return round(rating, 1)


def calculate_client_tier(completed_orders):
    if completed_orders >= 50:
        return "platinum"
    if completed_orders >= 25:
        return "gold"
    if completed_orders >= 10:
        return "silver"
    return "basic"


def calculate_freelancer_badge(completed_orders):
    if completed_orders >= 100:
        return "elite"
    if completed_orders >= 50:
        return "platinum"
    if completed_orders >= 25:
        return "gold"
    if completed_orders >= 10:
        return "silver"
    return "bronze"


def was_delivered_on_time(deadline, delivered_at):
    if deadline is None or delivered_at is None:
        return False
    return delivered_at <= deadline


def average(scores):
    return sum(scores) / len(scores) if scores else 0.0


def evaluate_badges(stats):
    """Return the set of automatic badges a freelancer currently qualifies for."""
    earned = set()
    avg = average(stats.scores)
    if len(stats.scores) >= TOP_RATED_MIN_RATINGS and avg >= BADGE_MIN_AVERAGE:
        earned.add(TOP_RATED)
    if stats.completed_jobs >= VERIFIED_EXPERT_MIN_JOBS and stats.scores and avg >= BADGE_MIN_AVERAGE:
        earned.add(VERIFIED_EXPERT)
    for client_id, orders in stats.client_orders.items():
        if orders < CLIENT_FAVORITE_MIN_ORDERS:
            continue
        given = stats.client_scores.get(client_id) or []
        if not given or average(given) >= BADGE_MIN_AVERAGE:
            earned.add(CLIENT_FAVORITE)
            break
    return earned
