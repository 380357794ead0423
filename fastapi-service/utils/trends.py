# utils/trends.py
"""
健康趨勢計算

三個純函數：不修改輸入記錄，每次摘要請求時重新計算。
輸入可以是 ORM 物件或任何具有相同屬性的物件。
"""
import calendar
from datetime import datetime
from typing import Any, Dict, Iterable, List

from config.scoring import TrendThresholds
from schemas import ConsultationTrend, HealthScoreTrend, MetricTrend
from utils.clock import to_naive_utc


def _months_before(now: datetime, months: int) -> datetime:
    """
    往前推整數個日曆月，取當天零點
    目標月份沒有同一天時（例如 3/31 往前一個月）取該月最後一天
    """
    month_index = now.year * 12 + (now.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return datetime(year, month, day)


def health_score_trend(analyses: Iterable[Any]) -> HealthScoreTrend:
    """比較最近兩次有評分的分析；變化超過 ±5 才算改善或下降"""
    scored = [a for a in analyses if a.health_score is not None]
    # sorted() 是穩定排序，同一時間的記錄保持原本順序
    scored = sorted(scored, key=lambda a: to_naive_utc(a.analysis_date))

    if len(scored) < 2:
        return HealthScoreTrend(trend="stable", change=0)

    latest = scored[-1].health_score
    previous = scored[-2].health_score
    change = latest - previous

    if change > TrendThresholds.HEALTH_SCORE_DEAD_BAND:
        trend = "improving"
    elif change < -TrendThresholds.HEALTH_SCORE_DEAD_BAND:
        trend = "declining"
    else:
        trend = "stable"

    return HealthScoreTrend(trend=trend, change=change, latest=latest, previous=previous)


def metrics_trend(metrics: Iterable[Any]) -> Dict[str, MetricTrend]:
    """依指標類型分組，比較每組最近兩次測量；少於兩筆的類型不出現在結果中"""
    groups: Dict[str, List[Any]] = {}
    for metric in metrics:
        groups.setdefault(metric.metric_type, []).append(metric)

    trends: Dict[str, MetricTrend] = {}
    for metric_type in sorted(groups):
        entries = groups[metric_type]
        if len(entries) < 2:
            continue

        entries = sorted(entries, key=lambda m: to_naive_utc(m.measurement_date))
        latest, previous = entries[-1], entries[-2]
        change = latest.value - previous.value

        if change > 0:
            direction = "up"
        elif change < 0:
            direction = "down"
        else:
            direction = "stable"

        trends[metric_type] = MetricTrend(
            latest=latest.value,
            previous=previous.value,
            change=change,
            unit=latest.unit or "",
            trend=direction,
        )
    return trends


def consultation_trend(consultations: Iterable[Any], now: datetime) -> ConsultationTrend:
    """
    比較最近一個月與前一個月的諮詢次數

    本月: [一個月前, now]
    上月: [兩個月前, 一個月前)
    邊界時間點只會被計入本月
    """
    now = to_naive_utc(now)
    last_month = _months_before(now, 1)
    two_months_ago = _months_before(now, 2)

    this_month_count = 0
    last_month_count = 0
    for consultation in consultations:
        date = to_naive_utc(consultation.consultation_date)
        if last_month <= date <= now:
            this_month_count += 1
        elif two_months_ago <= date < last_month:
            last_month_count += 1

    if this_month_count > last_month_count:
        trend = "increasing"
    elif this_month_count < last_month_count:
        trend = "decreasing"
    else:
        trend = "stable"

    return ConsultationTrend(
        this_month=this_month_count,
        last_month=last_month_count,
        change=this_month_count - last_month_count,
        trend=trend,
    )
