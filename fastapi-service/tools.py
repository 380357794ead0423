import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config.models import MetricSource, ReportCategory, ReportStatus
from config.settings import settings
import schemas
from utils.clock import Clock, to_naive_utc
from utils.error_handler import APIError, BadInput, Forbidden, NotFound, StorageFailure, UpstreamFailure
from utils.file_handler import ReportFileStore
from utils.health_repository import HealthRepository
from utils.quality_gate import QualityReport, find_markers, validate_text_lines
from utils.trends import consultation_trend, health_score_trend, metrics_trend

logger = logging.getLogger(__name__)


# ==================== 健康摘要 ====================

async def build_health_summary(user_id: str, repository: HealthRepository, clock: Clock) -> schemas.HealthSummary:
    """
    匯整用戶的所有健康記錄為一份摘要

    各項讀取互不相依，在工作執行緒中並行執行；任何一項失敗都會讓整個請求失敗。
    """
    try:
        profile, reports, analyses, metrics, reminders, consultations, medical_data = await asyncio.gather(
            asyncio.to_thread(repository.get_profile, user_id),
            asyncio.to_thread(repository.list_reports, user_id),
            asyncio.to_thread(repository.list_analyses, user_id),
            asyncio.to_thread(repository.list_metrics, user_id),
            asyncio.to_thread(repository.list_reminders, user_id),
            asyncio.to_thread(repository.list_consultations, user_id, settings.summary_consultation_limit),
            asyncio.to_thread(repository.list_medical_data, user_id),
        )
    except APIError:
        raise
    except Exception as e:
        logger.error(f"Health summary read failed for user={user_id}", exc_info=True)
        raise StorageFailure("获取健康摘要失败") from e

    if profile is None:
        raise NotFound("用户档案不存在", details={"user_id": user_id})

    now = clock.now()

    statistics = schemas.SummaryStatistics(
        total_reports=len(reports),
        completed_reports=sum(1 for r in reports if r.status == ReportStatus.ANALYZED.value),
        total_consultations=len(consultations),
        health_score=profile.health_score,
        next_checkup=profile.next_checkup,
    )

    recent_activity = schemas.RecentActivity(
        latest_report=schemas.Report.model_validate(reports[0]) if reports else None,
        latest_analysis=schemas.Analysis.model_validate(analyses[0]) if analyses else None,
        recent_metrics=[schemas.Metric.model_validate(m) for m in metrics[:settings.summary_recent_metrics]],
        recent_consultations=[
            schemas.Consultation.model_validate(c)
            for c in consultations[:settings.summary_recent_consultations]
        ],
    )

    open_reminders = [r for r in reminders if not r.is_completed]
    health_reminders = schemas.ReminderBuckets(
        total=len(reminders),
        pending=[schemas.Reminder.model_validate(r) for r in open_reminders],
        overdue=[
            schemas.Reminder.model_validate(r)
            for r in open_reminders
            if r.due_date is not None and to_naive_utc(r.due_date) < now
        ],
        urgent=[schemas.Reminder.model_validate(r) for r in open_reminders if r.priority == "urgent"],
    )

    medical_data_summary = schemas.MedicalDataSummary(
        total_records=len(medical_data),
        has_numerical_indicators=any(bool(d.numerical_indicators) for d in medical_data),
        has_imaging_findings=any(bool(d.imaging_findings) for d in medical_data),
        has_tcm_diagnosis=any(bool(d.tcm_diagnosis) for d in medical_data),
        recent_record=schemas.MedicalData.model_validate(medical_data[0]) if medical_data else None,
    )

    trends = schemas.Trends(
        health_score_trend=health_score_trend(analyses),
        metrics_trend=metrics_trend(metrics),
        consultation_trend=consultation_trend(consultations, now),
    )

    return schemas.HealthSummary(
        user=schemas.SummaryUser(id=user_id, profile=schemas.Profile.model_validate(profile)),
        statistics=statistics,
        recent_activity=recent_activity,
        health_reminders=health_reminders,
        medical_data_summary=medical_data_summary,
        trends=trends,
    )


# ==================== 報告上傳 ====================

def upload_report(
    user_id: str,
    upload_file,
    report_type: Optional[str],
    repository: HealthRepository,
    file_store: ReportFileStore,
    clock: Clock,
):
    """保存上傳檔案並建立 pending 狀態的報告"""
    if upload_file is None or not getattr(upload_file, "filename", None) or not report_type:
        raise BadInput("缺少必要参数")
    try:
        category = ReportCategory(report_type.strip().lower())
    except ValueError:
        raise BadInput(
            "不支持的报告类型",
            details={"report_type": report_type, "allowed": [c.value for c in ReportCategory]},
        )

    try:
        file_url = file_store.save(upload_file, user_id)
    except OSError as e:
        logger.error(f"File upload failed for user={user_id}: {e}", exc_info=True)
        raise StorageFailure("文件上传失败") from e

    try:
        report = repository.create_report(
            user_id=user_id,
            title=upload_file.filename,
            description=f"{category.value} medical report",
            file_url=file_url,
            file_type=getattr(upload_file, "content_type", None),
            report_type=category.value,
            status=ReportStatus.PENDING.value,
            upload_date=clock.now(),
        )
    except StorageFailure:
        # 沒有報告指向的檔案不保留
        file_store.delete(file_url)
        logger.error(f"Report row creation failed for user={user_id}, removed {file_url}")
        raise
    logger.info(f"Report {report.id} uploaded by user={user_id} ({category.value})")
    return report


# ==================== 報告分析 ====================

def _parse_metric_value(value: Any) -> Optional[float]:
    """去除非數字字元後解析數值；無法解析時回傳 None"""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r"[^\d.\-]", "", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return None


def _metrics_from_indicators(
    indicators: Sequence[Dict[str, Any]], report_id: int, measured_at: datetime
) -> List[Dict[str, Any]]:
    metrics = []
    for indicator in indicators:
        name = str(indicator.get("name") or "").strip()
        value = _parse_metric_value(indicator.get("value"))
        if not name or value is None:
            logger.warning(f"Skipping indicator {name!r} of report {report_id}: value {indicator.get('value')!r} is not numeric")
            continue
        metrics.append({
            "metric_type": name,
            "value": value,
            "unit": str(indicator.get("unit") or ""),
            "measurement_date": measured_at,
            "source": MetricSource.REPORT.value,
            "metadata_": {
                "report_id": report_id,
                "normal_range": indicator.get("normal_range"),
                "status": indicator.get("status"),
            },
        })
    return metrics


def _user_context(profile) -> Optional[Dict[str, Any]]:
    """分析提示詞用的用戶背景"""
    if profile is None:
        return None
    fields = ("age", "gender", "medical_history", "family_history", "exercise_frequency",
              "smoking_status", "drinking_status", "sleep_hours", "stress_level")
    context = {name: getattr(profile, name) for name in fields if getattr(profile, name) is not None}
    return context or None


def _resolve_text(report_content: Optional[str], text_lines: Optional[List[str]]) -> Tuple[str, List[str]]:
    if text_lines:
        return "\n".join(text_lines), list(text_lines)
    if report_content and report_content.strip():
        return report_content, report_content.split("\n")
    raise BadInput("缺少必要参数", details={"missing": "report_content"})


async def analyze_report(
    user_id: str,
    request: schemas.AnalyzeRequest,
    repository: HealthRepository,
    analyzer,
    clock: Clock,
) -> Tuple[Any, Any, QualityReport]:
    """
    分析一份已上傳的報告

    步驟：檢查權限 -> 品質檢查 -> AI 分析 -> 在同一交易中保存醫療數據、分析結果並更新報告狀態

    Returns:
        (醫療數據, 分析結果, 品質檢查結果)
    """
    text, lines = _resolve_text(request.report_content, request.text_lines)

    report = await asyncio.to_thread(repository.get_report, request.report_id)
    if report is None:
        raise NotFound("报告不存在", details={"report_id": request.report_id})
    if report.user_id != user_id:
        logger.warning(f"User {user_id} attempted to analyze report {report.id} owned by another user")
        raise Forbidden("无权限访问该报告", details={"report_id": report.id})
    if report.status == ReportStatus.FAILED.value:
        raise BadInput("报告分析已失败，请重新上传", details={"report_id": report.id})

    quality = validate_text_lines(lines)
    if not quality.valid:
        logger.warning(f"Report {report.id} text quality issues (user={user_id}): {quality.issues}")
        if request.strict_quality:
            raise BadInput("报告文本未通过质量检查", details={"issues": quality.issues})
    logger.info(f"Report {report.id} markers detected: {find_markers(text)}")

    profile = await asyncio.to_thread(repository.get_profile, user_id)
    try:
        result: schemas.AnalyzerResult = await analyzer.analyze(text, _user_context(profile))
    except UpstreamFailure as e:
        if not e.retryable:
            if await asyncio.to_thread(repository.mark_report_failed, report.id):
                logger.error(f"Report {report.id} marked failed (user={user_id}): {e.message}")
        raise

    analyzed_at = clock.now()
    findings = result.structured_findings
    medical_data = {
        "raw_text": text,
        "numerical_indicators": findings.numerical_indicators,
        "imaging_findings": findings.imaging_findings,
        "pathology_results": findings.pathology_results,
        "tcm_diagnosis": findings.tcm_diagnosis,
        "clinical_diagnosis": findings.clinical_diagnosis,
        "created_at": analyzed_at,
    }
    analysis = {
        "ai_analysis": json.dumps(result.model_dump(), ensure_ascii=False),
        "structured_data": findings.model_dump(),
        "key_findings": result.key_findings,
        "recommendations": result.recommendations.model_dump(),
        "health_score": result.overall_health_score,
        "report_type": result.report_type,
        "analysis_date": analyzed_at,
    }
    metrics = _metrics_from_indicators(findings.numerical_indicators, report.id, analyzed_at)

    data_row, analysis_row, transitioned = await asyncio.to_thread(
        repository.commit_analysis, report.id, medical_data, analysis, metrics, result.overall_health_score
    )
    logger.info(
        f"Report {report.id} analyzed for user={user_id}: score={result.overall_health_score}, "
        f"metrics={len(metrics)}, first_analysis={transitioned}"
    )
    return data_row, analysis_row, quality


# ==================== 用戶檔案 ====================

def save_onboarding(user_id: str, request: schemas.OnboardingRequest, repository: HealthRepository, clock: Clock) -> bool:
    """保存引導資訊；檔案不存在時建立"""
    preferences = schemas.ProfilePreferences(
        selected_path=request.selected_path,
        onboarding_completed=True,
        onboarding_date=clock.now().isoformat(),
    )
    repository.upsert_profile(
        user_id,
        fields={"age": request.age, "gender": request.gender.value},
        preferences_update=preferences.model_dump(exclude_none=True),
        create_missing=True,
    )
    logger.info(f"Onboarding saved for user={user_id}")
    return True


PREFERENCE_ONLY_FIELDS = (
    "custom_medical_history",
    "custom_family_history",
    "custom_exercise_frequency",
    "custom_health_goals",
)


def update_profile(user_id: str, request: schemas.ProfileUpdateRequest, repository: HealthRepository, clock: Clock) -> bool:
    """
    更新用戶檔案

    有專屬欄位的值直接寫入欄位，自訂輸入合併進 preferences（不覆蓋其他鍵）。
    """
    provided = request.model_dump(exclude_unset=True)
    fields = {k: v for k, v in provided.items() if k not in PREFERENCE_ONLY_FIELDS}
    if "gender" in fields and fields["gender"] is not None:
        fields["gender"] = schemas.Gender(fields["gender"]).value
    if "next_checkup" in fields:
        fields["next_checkup"] = to_naive_utc(fields["next_checkup"])

    preferences = schemas.ProfilePreferences(
        **{k: v for k, v in provided.items() if k in PREFERENCE_ONLY_FIELDS},
        profile_updated_at=clock.now().isoformat(),
    )
    profile = repository.upsert_profile(
        user_id,
        fields=fields,
        preferences_update=preferences.model_dump(exclude_none=True),
    )
    if profile is None:
        raise NotFound("用户档案不存在", details={"user_id": user_id})
    logger.info(f"Profile updated for user={user_id}: {sorted(provided)}")
    return True


def complete_profile(user_id: str, request: schemas.CompleteProfileRequest, repository: HealthRepository, clock: Clock) -> bool:
    background = request.health_background.model_dump(exclude_none=True)
    lifestyle = request.lifestyle.model_dump(exclude_none=True)
    goals = request.goals
    fields = {**background, **lifestyle}
    if goals.primary_goals is not None:
        fields["health_goals"] = goals.primary_goals
    if goals.target_weight is not None:
        fields["target_weight"] = goals.target_weight
    if goals.other_goals is not None:
        fields["other_goals"] = goals.other_goals
    fields["profile_completed"] = True

    profile = repository.upsert_profile(
        user_id,
        fields=fields,
        preferences_update={"completed_at": clock.now().isoformat()},
    )
    if profile is None:
        raise NotFound("用户档案不存在", details={"user_id": user_id})
    logger.info(f"Profile completed for user={user_id}")
    return True


# ==================== 健康指標與提醒 ====================

def record_metric(user_id: str, request: schemas.MetricCreate, repository: HealthRepository):
    return repository.add_metric(
        user_id,
        metric_type=request.metric_type.strip(),
        value=request.value,
        unit=request.unit,
        measurement_date=to_naive_utc(request.measurement_date),
        source=request.source.value,
        metadata_=request.metadata,
    )


def add_reminder(user_id: str, request: schemas.ReminderCreate, repository: HealthRepository):
    if request.report_id is not None:
        report = repository.get_report(request.report_id)
        if report is None:
            raise NotFound("报告不存在", details={"report_id": request.report_id})
        if report.user_id != user_id:
            raise Forbidden("无权限访问该报告", details={"report_id": report.id})

    return repository.add_reminder(
        user_id,
        report_id=request.report_id,
        reminder_type=request.reminder_type,
        title=request.title,
        description=request.description,
        due_date=to_naive_utc(request.due_date),
        priority=request.priority.value,
        is_completed=False,
    )


def complete_reminder(user_id: str, reminder_id: int, repository: HealthRepository):
    """提醒唯一的變更方式：標記為已完成"""
    reminder = repository.get_reminder(reminder_id)
    if reminder is None:
        raise NotFound("提醒不存在", details={"reminder_id": reminder_id})
    if reminder.user_id != user_id:
        raise Forbidden("无权限访问该提醒", details={"reminder_id": reminder_id})
    return repository.set_reminder_completed(reminder_id, True)
