from enum import Enum

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class ReportCategory(str, Enum):
    MODERN = "modern"
    TCM = "tcm"
    IMAGING = "imaging"
    PATHOLOGY = "pathology"
    MIXED = "mixed"


class ReportStatus(str, Enum):
    PENDING = "pending"
    ANALYZED = "analyzed"
    FAILED = "failed"


class ReminderPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class MetricSource(str, Enum):
    REPORT = "report"
    MANUAL = "manual"
    DEVICE = "device"


COMPREHENSIVE_ANALYSIS = "comprehensive"


class UserProfile(Base):
    """
    用戶健康檔案（每個用戶一筆）
    沒有專屬欄位的自訂輸入存放在 preferences 中
    """
    __tablename__ = "user_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), unique=True, index=True, nullable=False)

    reports_analyzed = Column(Integer, nullable=False, default=0)
    consultation_count = Column(Integer, nullable=False, default=0)
    health_score = Column(Float, nullable=True)
    next_checkup = Column(DateTime, nullable=True)
    preferences = Column(JSON, nullable=True)

    # 基礎信息
    age = Column(Integer, nullable=True)
    gender = Column(String(32), nullable=True)
    height = Column(String(32), nullable=True)
    weight = Column(String(32), nullable=True)
    # 健康背景
    medical_history = Column(JSON, nullable=True)
    family_history = Column(JSON, nullable=True)
    medications = Column(Text, nullable=True)
    allergies = Column(Text, nullable=True)
    # 生活習慣
    exercise_frequency = Column(String(64), nullable=True)
    smoking_status = Column(String(64), nullable=True)
    drinking_status = Column(String(64), nullable=True)
    sleep_hours = Column(String(32), nullable=True)
    stress_level = Column(String(32), nullable=True)
    # 健康目標
    health_goals = Column(JSON, nullable=True)
    target_weight = Column(String(32), nullable=True)
    other_goals = Column(Text, nullable=True)

    profile_completed = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<UserProfile(user={self.user_id}, completed={self.profile_completed})>"


class HealthReport(Base):
    """上傳的醫療報告；狀態只能由 pending 前進到 analyzed 或 failed"""
    __tablename__ = "health_reports"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), index=True, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    file_url = Column(String(512), nullable=True)
    file_type = Column(String(128), nullable=True)
    report_type = Column(String(32), nullable=False, default=ReportCategory.MODERN.value)
    status = Column(String(32), nullable=False, default=ReportStatus.PENDING.value, index=True)
    upload_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<HealthReport(id={self.id}, user={self.user_id}, status={self.status})>"


class MedicalData(Base):
    """
    從單一報告萃取出的結構化醫療數據
    每份報告只有一筆（report_id 唯一）
    """
    __tablename__ = "medical_data"

    id = Column(Integer, primary_key=True, index=True)
    report_id = Column(Integer, ForeignKey("health_reports.id"), unique=True, nullable=False)
    user_id = Column(String(255), index=True, nullable=False)

    # 例如: [{"name": "WBC", "value": "6.5", "unit": "10^9/L", "normal_range": "4-10", "status": "normal"}]
    numerical_indicators = Column(JSON, nullable=True)
    imaging_findings = Column(JSON, nullable=True)
    pathology_results = Column(JSON, nullable=True)
    tcm_diagnosis = Column(JSON, nullable=True)
    clinical_diagnosis = Column(JSON, nullable=True)

    raw_text = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)


class ReportAnalysis(Base):
    __tablename__ = "report_analyses"
    __table_args__ = (UniqueConstraint("report_id", "analysis_type", name="uq_report_analysis_type"),)

    id = Column(Integer, primary_key=True, index=True)
    report_id = Column(Integer, ForeignKey("health_reports.id"), nullable=False)
    user_id = Column(String(255), index=True, nullable=False)

    # 分析器的完整輸出（JSON 字串）
    ai_analysis = Column(Text, nullable=False)
    structured_data = Column(JSON, nullable=True)
    key_findings = Column(JSON, nullable=True)
    # {"lifestyle": [...], "diet": [...], "exercise": [...], "follow_up": [...]}
    recommendations = Column(JSON, nullable=True)
    health_score = Column(Float, nullable=True)
    report_type = Column(String(32), nullable=True)
    analysis_type = Column(String(32), nullable=False, default=COMPREHENSIVE_ANALYSIS)
    analysis_date = Column(DateTime, nullable=False)


class HealthMetric(Base):
    __tablename__ = "health_metrics"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), index=True, nullable=False)
    report_id = Column(Integer, ForeignKey("health_reports.id"), nullable=True)
    metric_type = Column(String(128), nullable=False)
    value = Column(Float, nullable=False)
    unit = Column(String(64), nullable=False, default="")
    measurement_date = Column(DateTime, nullable=False)
    source = Column(String(16), nullable=False, default=MetricSource.MANUAL.value)
    metadata_ = Column("metadata", JSON, nullable=True)


class HealthReminder(Base):
    __tablename__ = "health_reminders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), index=True, nullable=False)
    report_id = Column(Integer, ForeignKey("health_reports.id"), nullable=True)
    reminder_type = Column(String(64), nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    due_date = Column(DateTime, nullable=True)
    is_completed = Column(Boolean, nullable=False, default=False)
    priority = Column(String(16), nullable=False, default=ReminderPriority.MEDIUM.value)
    created_at = Column(DateTime, server_default=func.now())


class AIConsultation(Base):
    """AI 健康諮詢記錄（本服務只讀）"""
    __tablename__ = "ai_consultations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), index=True, nullable=False)
    question = Column(Text, nullable=False)
    ai_response = Column(Text, nullable=False)
    conversation_type = Column(String(32), nullable=False, default="general")
    context_data = Column(JSON, nullable=True)
    consultation_date = Column(DateTime, nullable=False)
