from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from utils.trends import _months_before, consultation_trend, health_score_trend, metrics_trend

BASE = datetime(2024, 3, 1, 9, 0)


def analysis(score, days):
    return SimpleNamespace(health_score=score, analysis_date=BASE + timedelta(days=days))


def metric(metric_type, value, days, unit="mmHg"):
    return SimpleNamespace(metric_type=metric_type, value=value, unit=unit, measurement_date=BASE + timedelta(days=days))


def consultation(date):
    return SimpleNamespace(consultation_date=date)


# ==================== 健康評分 ====================

def test_score_change_of_exactly_five_is_stable():
    trend = health_score_trend([analysis(70, 0), analysis(75, 1)])
    assert trend.trend == "stable"
    assert trend.change == 5

    trend = health_score_trend([analysis(75, 0), analysis(70, 1)])
    assert trend.trend == "stable"
    assert trend.change == -5


def test_score_improving_and_declining():
    assert health_score_trend([analysis(70, 0), analysis(76, 1)]).trend == "improving"
    assert health_score_trend([analysis(70, 0), analysis(64, 1)]).trend == "declining"


def test_score_uses_two_latest_by_date_regardless_of_input_order():
    trend = health_score_trend([analysis(90, 5), analysis(50, 0), analysis(80, 3)])
    assert trend.latest == 90
    assert trend.previous == 80
    assert trend.change == 10
    assert trend.trend == "improving"


def test_unscored_analyses_are_ignored():
    trend = health_score_trend([analysis(None, 0), analysis(80, 1), analysis(None, 2)])
    assert trend.trend == "stable"
    assert trend.change == 0
    assert trend.model_dump() == {"trend": "stable", "change": 0}


def test_score_trend_with_no_analyses():
    assert health_score_trend([]).model_dump() == {"trend": "stable", "change": 0}


# ==================== 健康指標 ====================

def test_metric_groups_with_one_entry_are_omitted():
    trends = metrics_trend([
        metric("blood_pressure", 120, 0),
        metric("blood_pressure", 130, 1),
        metric("weight", 60, 0, unit="kg"),
    ])
    assert list(trends) == ["blood_pressure"]
    bp = trends["blood_pressure"]
    assert (bp.latest, bp.previous, bp.change, bp.trend, bp.unit) == (130, 120, 10, "up", "mmHg")


def test_metric_zero_change_is_stable_and_negative_is_down():
    trends = metrics_trend([
        metric("weight", 61, 2, unit="kg"),
        metric("weight", 61, 1, unit="kg"),
        metric("heart_rate", 80, 0, unit="bpm"),
        metric("heart_rate", 72, 1, unit="bpm"),
    ])
    assert trends["weight"].trend == "stable"
    assert trends["weight"].change == 0
    assert trends["heart_rate"].trend == "down"
    assert trends["heart_rate"].change == -8


def test_metric_trend_compares_only_last_two_measurements():
    trends = metrics_trend([metric("glucose", v, d, unit="mmol/L") for v, d in [(9.0, 0), (5.0, 1), (5.5, 2)]])
    assert trends["glucose"].previous == 5.0
    assert trends["glucose"].latest == 5.5
    assert trends["glucose"].trend == "up"


# ==================== 諮詢次數 ====================

def test_month_boundary_is_clamped_to_month_end():
    assert _months_before(datetime(2024, 3, 31, 15, 30), 1) == datetime(2024, 2, 29)
    assert _months_before(datetime(2024, 3, 31, 15, 30), 2) == datetime(2024, 1, 31)
    assert _months_before(datetime(2024, 1, 15, 8, 0), 1) == datetime(2023, 12, 15)


def test_boundary_instant_counts_only_in_this_month():
    now = datetime(2024, 3, 31, 12, 0)
    boundary = datetime(2024, 2, 29)
    trend = consultation_trend(
        [
            consultation(boundary),
            consultation(boundary - timedelta(seconds=1)),
            consultation(datetime(2024, 1, 31)),
            consultation(datetime(2024, 1, 30, 23, 59)),
        ],
        now,
    )
    assert trend.this_month == 1
    assert trend.last_month == 2
    assert trend.change == -1
    assert trend.trend == "decreasing"


def test_consultations_after_now_are_not_counted():
    now = datetime(2024, 3, 15, 12, 0)
    trend = consultation_trend(
        [consultation(now), consultation(now + timedelta(days=1)), consultation(datetime(2024, 2, 20))],
        now,
    )
    assert trend.this_month == 2
    assert trend.last_month == 0
    assert trend.trend == "increasing"


def test_aware_dates_are_compared_in_utc():
    now = datetime(2024, 3, 15, 12, 0)
    # 2024-02-15 07:00+08:00 == 2024-02-14 23:00 UTC，落在上月區間
    aware = datetime(2024, 2, 15, 7, 0, tzinfo=timezone(timedelta(hours=8)))
    trend = consultation_trend([consultation(aware)], now)
    assert (trend.this_month, trend.last_month, trend.trend) == (0, 1, "decreasing")


def test_no_consultations_is_stable():
    trend = consultation_trend([], datetime(2024, 3, 15))
    assert (trend.this_month, trend.last_month, trend.change, trend.trend) == (0, 0, 0, "stable")
