# schemas.py
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_serializer
from pydantic.alias_generators import to_camel

from config.models import MetricSource, ReminderPriority


class CamelModel(BaseModel):
    """同時接受 snake_case 與前端送來的 camelCase 欄位"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==================== 記錄輸出 ====================

class Report(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    title: str
    description: Optional[str] = None
    file_url: Optional[str] = None
    file_type: Optional[str] = None
    report_type: str
    status: str
    upload_date: datetime


class MedicalData(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    report_id: int
    user_id: str
    numerical_indicators: Optional[List[Dict[str, Any]]] = None
    imaging_findings: Optional[Dict[str, Any]] = None
    pathology_results: Optional[Dict[str, Any]] = None
    tcm_diagnosis: Optional[Dict[str, Any]] = None
    clinical_diagnosis: Optional[Dict[str, Any]] = None
    raw_text: Optional[str] = None
    created_at: datetime


class Analysis(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    report_id: int
    user_id: str
    ai_analysis: str
    structured_data: Optional[Dict[str, Any]] = None
    key_findings: Optional[List[str]] = None
    recommendations: Optional[Dict[str, List[str]]] = None
    health_score: Optional[float] = None
    report_type: Optional[str] = None
    analysis_type: str
    analysis_date: datetime


class Metric(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    report_id: Optional[int] = None
    metric_type: str
    value: float
    unit: str
    measurement_date: datetime
    source: str
    # ORM 屬性為 metadata_（metadata 被 SQLAlchemy 佔用）
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("metadata_", "metadata")
    )


class Reminder(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    report_id: Optional[int] = None
    reminder_type: str
    title: str
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    is_completed: bool
    priority: str


class Consultation(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    question: str
    ai_response: str
    conversation_type: str
    consultation_date: datetime


class Profile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    reports_analyzed: int = 0
    consultation_count: int = 0
    health_score: Optional[float] = None
    next_checkup: Optional[datetime] = None
    preferences: Optional[Dict[str, Any]] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    height: Optional[str] = None
    weight: Optional[str] = None
    medical_history: Optional[List[str]] = None
    family_history: Optional[List[str]] = None
    medications: Optional[str] = None
    allergies: Optional[str] = None
    exercise_frequency: Optional[str] = None
    smoking_status: Optional[str] = None
    drinking_status: Optional[str] = None
    sleep_hours: Optional[str] = None
    stress_level: Optional[str] = None
    health_goals: Optional[List[str]] = None
    target_weight: Optional[str] = None
    other_goals: Optional[str] = None
    profile_completed: bool = False


# ==================== 趨勢 ====================

class HealthScoreTrend(BaseModel):
    trend: str
    change: float
    latest: Optional[float] = None
    previous: Optional[float] = None

    @model_serializer(mode="wrap")
    def omit_missing_scores(self, handler):
        # 少於兩次評分時只輸出 trend 與 change
        data = handler(self)
        if self.latest is None and self.previous is None:
            data.pop("latest", None)
            data.pop("previous", None)
        return data


class MetricTrend(BaseModel):
    latest: float
    previous: float
    change: float
    unit: str
    trend: str


class ConsultationTrend(BaseModel):
    this_month: int
    last_month: int
    change: int
    trend: str


# ==================== 健康摘要 ====================

class SummaryUser(BaseModel):
    id: str
    profile: Profile


class SummaryStatistics(BaseModel):
    total_reports: int
    completed_reports: int
    total_consultations: int
    health_score: Optional[float] = None
    next_checkup: Optional[datetime] = None


class RecentActivity(BaseModel):
    latest_report: Optional[Report] = None
    latest_analysis: Optional[Analysis] = None
    recent_metrics: List[Metric]
    recent_consultations: List[Consultation]


class ReminderBuckets(BaseModel):
    total: int
    pending: List[Reminder]
    overdue: List[Reminder]
    urgent: List[Reminder]


class MedicalDataSummary(BaseModel):
    total_records: int
    has_numerical_indicators: bool
    has_imaging_findings: bool
    has_tcm_diagnosis: bool
    recent_record: Optional[MedicalData] = None


class Trends(BaseModel):
    health_score_trend: HealthScoreTrend
    metrics_trend: Dict[str, MetricTrend]
    consultation_trend: ConsultationTrend


class HealthSummary(BaseModel):
    user: SummaryUser
    statistics: SummaryStatistics
    recent_activity: RecentActivity
    health_reminders: ReminderBuckets
    medical_data_summary: MedicalDataSummary
    trends: Trends


# ==================== AI 分析結果 ====================

class StructuredFindings(BaseModel):
    numerical_indicators: List[Dict[str, Any]] = Field(default_factory=list)
    imaging_findings: Optional[Dict[str, Any]] = None
    pathology_results: Optional[Dict[str, Any]] = None
    tcm_diagnosis: Optional[Dict[str, Any]] = None
    clinical_diagnosis: Optional[Dict[str, Any]] = None


class Recommendations(BaseModel):
    lifestyle: List[str] = Field(default_factory=list)
    diet: List[str] = Field(default_factory=list)
    exercise: List[str] = Field(default_factory=list)
    follow_up: List[str] = Field(default_factory=list)


class RiskFactor(BaseModel):
    type: str
    probability: str
    description: str


class ParsedAnalysis(BaseModel):
    summary: str
    health_score: Optional[float] = None
    key_findings: List[str] = Field(default_factory=list)
    immediate_actions: List[str] = Field(default_factory=list)
    recommendations: Recommendations = Field(default_factory=Recommendations)
    risk_factors: List[RiskFactor] = Field(default_factory=list)
    overall_status: Optional[str] = None


class AnalyzerResult(BaseModel):
    report_type: str
    structured_findings: StructuredFindings
    summary: str
    key_findings: List[str] = Field(default_factory=list)
    immediate_actions: List[str] = Field(default_factory=list)
    recommendations: Recommendations = Field(default_factory=Recommendations)
    risk_factors: List[RiskFactor] = Field(default_factory=list)
    overall_health_score: Optional[float] = None
    overall_status: Optional[str] = None


# ==================== 請求 ====================

class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class AnalyzeRequest(CamelModel):
    report_id: int
    report_content: Optional[str] = None
    text_lines: Optional[List[str]] = None
    strict_quality: bool = False


class ValidateTextRequest(CamelModel):
    text_lines: List[str]


class OnboardingRequest(CamelModel):
    age: int = Field(gt=0)
    gender: Gender
    selected_path: Optional[str] = None


class ProfileUpdateRequest(CamelModel):
    age: Optional[int] = Field(default=None, gt=0)
    gender: Optional[Gender] = None
    height: Optional[str] = None
    weight: Optional[str] = None
    medical_history: Optional[List[str]] = None
    family_history: Optional[List[str]] = None
    medications: Optional[str] = None
    allergies: Optional[str] = None
    exercise_frequency: Optional[str] = None
    smoking_status: Optional[str] = None
    drinking_status: Optional[str] = None
    sleep_hours: Optional[str] = None
    stress_level: Optional[str] = None
    health_goals: Optional[List[str]] = None
    target_weight: Optional[str] = None
    other_goals: Optional[str] = None
    next_checkup: Optional[datetime] = None
    # 自訂輸入，存放在 preferences
    custom_medical_history: Optional[str] = None
    custom_family_history: Optional[str] = None
    custom_exercise_frequency: Optional[str] = None
    custom_health_goals: Optional[str] = None


class ProfilePreferences(CamelModel):
    """preferences 的已知欄位；未知欄位原樣保留"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    selected_path: Optional[str] = None
    onboarding_completed: Optional[bool] = None
    onboarding_date: Optional[str] = None
    custom_medical_history: Optional[str] = None
    custom_family_history: Optional[str] = None
    custom_exercise_frequency: Optional[str] = None
    custom_health_goals: Optional[str] = None
    profile_updated_at: Optional[str] = None
    completed_at: Optional[str] = None


class HealthBackground(CamelModel):
    medical_history: Optional[List[str]] = None
    family_history: Optional[List[str]] = None
    medications: Optional[str] = None
    allergies: Optional[str] = None


class Lifestyle(CamelModel):
    exercise_frequency: Optional[str] = None
    smoking_status: Optional[str] = None
    drinking_status: Optional[str] = None
    sleep_hours: Optional[str] = None
    stress_level: Optional[str] = None


class Goals(CamelModel):
    primary_goals: Optional[List[str]] = None
    target_weight: Optional[str] = None
    other_goals: Optional[str] = None


class CompleteProfileRequest(CamelModel):
    health_background: HealthBackground = Field(default_factory=HealthBackground)
    lifestyle: Lifestyle = Field(default_factory=Lifestyle)
    goals: Goals = Field(default_factory=Goals)


class MetricCreate(CamelModel):
    metric_type: str = Field(min_length=1)
    value: float
    unit: str = ""
    measurement_date: datetime
    source: MetricSource = MetricSource.MANUAL
    metadata: Optional[Dict[str, Any]] = None


class ReminderCreate(CamelModel):
    title: str = Field(min_length=1)
    reminder_type: str = "general"
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: ReminderPriority = ReminderPriority.MEDIUM
    report_id: Optional[int] = None
