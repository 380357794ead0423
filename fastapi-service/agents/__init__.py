from .report_analyzer import ReportAnalyzer, get_report_analyzer

__all__ = ["ReportAnalyzer", "get_report_analyzer"]
