# utils/__init__.py
from .clock import Clock, FixedClock, SystemClock
from .health_repository import HealthRepository, get_health_repository
from .quality_gate import QualityReport, validate_text_lines

__all__ = [
    "Clock", "FixedClock", "SystemClock",
    "HealthRepository", "get_health_repository",
    "QualityReport", "validate_text_lines",
]
