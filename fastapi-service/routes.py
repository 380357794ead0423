# routes.py
from dataclasses import asdict
from typing import Optional
import logging

from fastapi import APIRouter, Depends, File, Form, Header, UploadFile

import schemas
import tools
from agents import ReportAnalyzer, get_report_analyzer
from config.settings import settings
from utils.clock import Clock, SystemClock
from utils.error_handler import Unauthorized
from utils.file_handler import ReportFileStore
from utils.health_repository import HealthRepository, get_health_repository
from utils.quality_gate import validate_text_lines

logger = logging.getLogger(__name__)

# 創建路由器
health_router = APIRouter()
user_router = APIRouter()


# ==================== 依賴 ====================
# 測試時透過 app.dependency_overrides 替換

def get_caller_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """由驗證閘道傳入的用戶 ID"""
    if x_user_id is None or not x_user_id.strip():
        raise Unauthorized()
    return x_user_id.strip()


def get_clock() -> Clock:
    return SystemClock()


def get_file_store() -> ReportFileStore:
    return ReportFileStore(settings.upload_dir)


# ==================== 報告路由 ====================

@health_router.post("/upload")
def upload_report(
    file: Optional[UploadFile] = File(default=None),
    report_type: Optional[str] = Form(default=None),
    user_id: str = Depends(get_caller_id),
    repository: HealthRepository = Depends(get_health_repository),
    file_store: ReportFileStore = Depends(get_file_store),
    clock: Clock = Depends(get_clock),
):
    """上傳醫療報告檔案，建立待分析的報告"""
    report = tools.upload_report(user_id, file, report_type, repository, file_store, clock)
    return {
        "success": True,
        "report": schemas.Report.model_validate(report),
        "message": "报告上传成功",
    }


@health_router.post("/analyze")
async def analyze_report(
    request: schemas.AnalyzeRequest,
    user_id: str = Depends(get_caller_id),
    repository: HealthRepository = Depends(get_health_repository),
    analyzer: ReportAnalyzer = Depends(get_report_analyzer),
    clock: Clock = Depends(get_clock),
):
    """AI 分析已上傳的報告"""
    medical_data, analysis, quality = await tools.analyze_report(user_id, request, repository, analyzer, clock)
    return {
        "success": True,
        "analysis": schemas.Analysis.model_validate(analysis),
        "medical_data": schemas.MedicalData.model_validate(medical_data),
        "quality": asdict(quality),
        "message": "报告分析完成",
    }


@health_router.post("/validate-text")
async def validate_text(request: schemas.ValidateTextRequest, user_id: str = Depends(get_caller_id)):
    """只做文字品質檢查，不呼叫 AI"""
    quality = validate_text_lines(request.text_lines)
    return {"success": True, "quality": asdict(quality)}


# ==================== 用戶路由 ====================

@user_router.get("/health-summary")
async def health_summary(
    user_id: str = Depends(get_caller_id),
    repository: HealthRepository = Depends(get_health_repository),
    clock: Clock = Depends(get_clock),
):
    """獲取用戶健康摘要"""
    summary = await tools.build_health_summary(user_id, repository, clock)
    return {"success": True, "data": summary}


@user_router.post("/save-onboarding")
def save_onboarding(
    request: schemas.OnboardingRequest,
    user_id: str = Depends(get_caller_id),
    repository: HealthRepository = Depends(get_health_repository),
    clock: Clock = Depends(get_clock),
):
    tools.save_onboarding(user_id, request, repository, clock)
    return {"success": True}


@user_router.post("/update-profile")
def update_profile(
    request: schemas.ProfileUpdateRequest,
    user_id: str = Depends(get_caller_id),
    repository: HealthRepository = Depends(get_health_repository),
    clock: Clock = Depends(get_clock),
):
    tools.update_profile(user_id, request, repository, clock)
    return {"success": True, "message": "个人信息更新成功"}


@user_router.post("/complete-profile")
def complete_profile(
    request: schemas.CompleteProfileRequest,
    user_id: str = Depends(get_caller_id),
    repository: HealthRepository = Depends(get_health_repository),
    clock: Clock = Depends(get_clock),
):
    tools.complete_profile(user_id, request, repository, clock)
    return {"success": True, "message": "健康档案完善成功"}


@user_router.post("/metrics")
def record_metric(
    request: schemas.MetricCreate,
    user_id: str = Depends(get_caller_id),
    repository: HealthRepository = Depends(get_health_repository),
):
    metric = tools.record_metric(user_id, request, repository)
    return {"success": True, "metric": schemas.Metric.model_validate(metric)}


@user_router.post("/reminders")
def add_reminder(
    request: schemas.ReminderCreate,
    user_id: str = Depends(get_caller_id),
    repository: HealthRepository = Depends(get_health_repository),
):
    reminder = tools.add_reminder(user_id, request, repository)
    return {"success": True, "reminder": schemas.Reminder.model_validate(reminder)}


@user_router.post("/reminders/{reminder_id}/complete")
def complete_reminder(
    reminder_id: int,
    user_id: str = Depends(get_caller_id),
    repository: HealthRepository = Depends(get_health_repository),
):
    reminder = tools.complete_reminder(user_id, reminder_id, repository)
    return {"success": True, "reminder": schemas.Reminder.model_validate(reminder)}
