from typing import Dict, Optional


class ReportTextRules:
    """
    報告文字品質檢查的規則表
    """

    MIN_TOTAL_LENGTH = 50
    MAX_TOTAL_LENGTH = 10000
    # 不重複行數至少要佔總行數的比例
    MIN_UNIQUE_RATIO = 0.5
    MIN_MARKER_COUNT = 3

    # 體檢報告標記詞 -> 語言
    # 比對時不分大小寫，使用子字串包含
    MEDICAL_REPORT_MARKERS: Dict[str, str] = {
        "检查": "zh",
        "报告": "zh",
        "结果": "zh",
        "正常": "zh",
        "异常": "zh",
        "数值": "zh",
        "范围": "zh",
        "血": "zh",
        "尿": "zh",
        "肝": "zh",
        "肾": "zh",
        "心": "zh",
        "肺": "zh",
        "胆固醇": "zh",
        "血糖": "zh",
        "wbc": "en",
        "rbc": "en",
        "hgb": "en",
        "plt": "en",
        "alt": "en",
        "ast": "en",
    }


class TrendThresholds:
    # 健康評分變化超過此值才視為 improving / declining（等於時為 stable）
    HEALTH_SCORE_DEAD_BAND = 5


class HealthScoreScale:
    """
    將 0-100 的健康評分轉換為整體狀態描述
    """

    BANDS = [
        (85, "健康状况优秀"),
        (70, "健康状况良好"),
        (55, "需要关注"),
    ]
    LOWEST = "建议就医"

    @classmethod
    def overall_status(cls, score: Optional[float]) -> Optional[str]:
        if score is None:
            return None
        for floor, label in cls.BANDS:
            if score >= floor:
                return label
        return cls.LOWEST

    @classmethod
    def risk_probability(cls, score: Optional[float], long_term: bool = False) -> str:
        """短期風險以 60/80 分界，長期風險以 50/70 分界"""
        if score is None:
            return "中"
        high, medium = (50, 70) if long_term else (60, 80)
        if score < high:
            return "高"
        if score < medium:
            return "中"
        return "低"
