# utils/health_repository.py
"""
健康記錄存取層
- 用戶檔案、報告、醫療數據、分析結果、健康指標、提醒、AI 諮詢
- 每個方法使用獨立的 session，可以安全地在不同執行緒中並行呼叫
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config.models import (
    AIConsultation, COMPREHENSIVE_ANALYSIS, HealthMetric, HealthReminder,
    HealthReport, MedicalData, ReportAnalysis, ReportStatus, UserProfile,
)
from utils.error_handler import APIError, BadInput, NotFound, StorageFailure

logger = logging.getLogger(__name__)

# 提供年齡與性別後檔案即視為完成
REQUIRED_PROFILE_FIELDS = ("age", "gender")


class _ReportNoLongerPending(Exception):
    """另一個請求已先完成同一份報告的分析"""


class HealthRepository:
    """健康記錄存取（SQLAlchemy）"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        """獲取 session 的上下文管理器；離開時提交，失敗時回滾"""
        session: Session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Storage error: {e}", exc_info=True)
            raise StorageFailure("数据存储失败", details={"type": type(e).__name__}) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ==================== 用戶檔案 ====================

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        with self._session() as session:
            return session.scalar(select(UserProfile).where(UserProfile.user_id == user_id))

    def upsert_profile(
        self,
        user_id: str,
        fields: Optional[Dict[str, Any]] = None,
        preferences_update: Optional[Dict[str, Any]] = None,
        create_missing: bool = False,
    ) -> Optional[UserProfile]:
        """
        逐欄位更新用戶檔案（後寫入者為準）

        Args:
            fields: 有專屬欄位的值
            preferences_update: 合併進 preferences 的值，未提及的鍵保持不變
            create_missing: 檔案不存在時是否建立

        Returns:
            更新後的檔案；檔案不存在且 create_missing=False 時回傳 None
        """
        with self._session() as session:
            profile = session.scalar(select(UserProfile).where(UserProfile.user_id == user_id))
            if profile is None:
                if not create_missing:
                    return None
                profile = UserProfile(user_id=user_id, reports_analyzed=0, consultation_count=0)
                session.add(profile)

            for key, value in (fields or {}).items():
                setattr(profile, key, value)

            if preferences_update:
                # JSON 欄位需要重新賦值才會被偵測到變更
                profile.preferences = {**(profile.preferences or {}), **preferences_update}

            if all(getattr(profile, name) is not None for name in REQUIRED_PROFILE_FIELDS):
                profile.profile_completed = True

            session.flush()
            return profile

    # ==================== 報告 ====================

    def create_report(self, **fields) -> HealthReport:
        with self._session() as session:
            report = HealthReport(**fields)
            session.add(report)
            session.flush()
            return report

    def get_report(self, report_id: int) -> Optional[HealthReport]:
        with self._session() as session:
            return session.get(HealthReport, report_id)

    def list_reports(self, user_id: str) -> List[HealthReport]:
        with self._session() as session:
            return list(session.scalars(
                select(HealthReport)
                .where(HealthReport.user_id == user_id)
                .order_by(HealthReport.upload_date.desc(), HealthReport.id.desc())
            ))

    def mark_report_failed(self, report_id: int) -> bool:
        """pending -> failed；報告已不是 pending 時不做任何事"""
        with self._session() as session:
            result = session.execute(
                update(HealthReport)
                .where(HealthReport.id == report_id, HealthReport.status == ReportStatus.PENDING.value)
                .values(status=ReportStatus.FAILED.value)
            )
            return result.rowcount == 1

    # ==================== 分析結果 ====================

    def list_analyses(self, user_id: str) -> List[ReportAnalysis]:
        with self._session() as session:
            return list(session.scalars(
                select(ReportAnalysis)
                .where(ReportAnalysis.user_id == user_id)
                .order_by(ReportAnalysis.analysis_date.desc(), ReportAnalysis.id.desc())
            ))

    def get_analysis_for_report(self, report_id: int) -> Optional[ReportAnalysis]:
        with self._session() as session:
            return session.scalar(
                select(ReportAnalysis).where(
                    ReportAnalysis.report_id == report_id,
                    ReportAnalysis.analysis_type == COMPREHENSIVE_ANALYSIS,
                )
            )

    def commit_analysis(
        self,
        report_id: int,
        medical_data: Dict[str, Any],
        analysis: Dict[str, Any],
        metrics: List[Dict[str, Any]],
        health_score: Optional[float],
    ) -> Tuple[MedicalData, ReportAnalysis, bool]:
        """
        在同一個交易中保存一次成功的分析

        寫入順序：醫療數據 -> 分析結果 -> 報告來源的健康指標 -> 用戶檔案 -> 報告狀態。
        醫療數據與分析結果以報告 ID 為鍵覆寫，重試不會產生重複記錄。
        另一個請求已先完成同一份報告時，回傳已保存的結果。

        Returns:
            (醫療數據, 分析結果, 報告是否在此次由 pending 轉為 analyzed)
        """
        try:
            with self._session() as session:
                # PostgreSQL 上鎖住報告列，同一份報告的分析依序提交
                report = session.get(HealthReport, report_id, with_for_update=True)
                if report is None:
                    raise NotFound("报告不存在", details={"report_id": report_id})
                if report.status == ReportStatus.FAILED.value:
                    raise BadInput("报告分析已失败，请重新上传", details={"report_id": report_id})
                was_pending = report.status == ReportStatus.PENDING.value

                data_row = session.scalar(select(MedicalData).where(MedicalData.report_id == report_id))
                if data_row is None:
                    data_row = MedicalData(report_id=report_id, user_id=report.user_id)
                    session.add(data_row)
                for key, value in medical_data.items():
                    setattr(data_row, key, value)
                self._flush_upsert(session)

                analysis_row = session.scalar(
                    select(ReportAnalysis).where(
                        ReportAnalysis.report_id == report_id,
                        ReportAnalysis.analysis_type == COMPREHENSIVE_ANALYSIS,
                    )
                )
                if analysis_row is None:
                    analysis_row = ReportAnalysis(
                        report_id=report_id,
                        user_id=report.user_id,
                        analysis_type=COMPREHENSIVE_ANALYSIS,
                    )
                    session.add(analysis_row)
                for key, value in analysis.items():
                    setattr(analysis_row, key, value)
                self._flush_upsert(session)

                session.execute(delete(HealthMetric).where(HealthMetric.report_id == report_id))
                for metric in metrics:
                    session.add(HealthMetric(user_id=report.user_id, report_id=report_id, **metric))

                profile = session.scalar(select(UserProfile).where(UserProfile.user_id == report.user_id))
                if profile is not None:
                    if was_pending:
                        profile.reports_analyzed = (profile.reports_analyzed or 0) + 1
                    if health_score is not None:
                        profile.health_score = health_score

                if was_pending:
                    result = session.execute(
                        update(HealthReport)
                        .where(HealthReport.id == report_id, HealthReport.status == ReportStatus.PENDING.value)
                        .values(status=ReportStatus.ANALYZED.value)
                    )
                    if result.rowcount != 1:
                        raise _ReportNoLongerPending()

                session.flush()
                return data_row, analysis_row, was_pending
        except _ReportNoLongerPending:
            logger.warning(f"Report {report_id} was analyzed concurrently, returning stored result")
            data_row = self.get_medical_data_for_report(report_id)
            analysis_row = self.get_analysis_for_report(report_id)
            if data_row is None or analysis_row is None:
                raise APIError("报告状态冲突", status_code=409, details={"report_id": report_id})
            return data_row, analysis_row, False

    @staticmethod
    def _flush_upsert(session: Session):
        """寫入以報告 ID 為鍵的記錄；唯一鍵衝突表示另一個請求已先寫入同一份報告"""
        try:
            session.flush()
        except IntegrityError as e:
            raise _ReportNoLongerPending() from e

    # ==================== 醫療數據 ====================

    def get_medical_data_for_report(self, report_id: int) -> Optional[MedicalData]:
        with self._session() as session:
            return session.scalar(select(MedicalData).where(MedicalData.report_id == report_id))

    def list_medical_data(self, user_id: str) -> List[MedicalData]:
        with self._session() as session:
            return list(session.scalars(
                select(MedicalData)
                .where(MedicalData.user_id == user_id)
                .order_by(MedicalData.created_at.desc(), MedicalData.id.desc())
            ))

    # ==================== 健康指標 ====================

    def add_metric(self, user_id: str, **fields) -> HealthMetric:
        with self._session() as session:
            metric = HealthMetric(user_id=user_id, **fields)
            session.add(metric)
            session.flush()
            return metric

    def list_metrics(self, user_id: str) -> List[HealthMetric]:
        with self._session() as session:
            return list(session.scalars(
                select(HealthMetric)
                .where(HealthMetric.user_id == user_id)
                .order_by(HealthMetric.measurement_date.desc(), HealthMetric.id.desc())
            ))

    # ==================== 健康提醒 ====================

    def add_reminder(self, user_id: str, **fields) -> HealthReminder:
        with self._session() as session:
            reminder = HealthReminder(user_id=user_id, **fields)
            session.add(reminder)
            session.flush()
            return reminder

    def get_reminder(self, reminder_id: int) -> Optional[HealthReminder]:
        with self._session() as session:
            return session.get(HealthReminder, reminder_id)

    def set_reminder_completed(self, reminder_id: int, is_completed: bool = True) -> Optional[HealthReminder]:
        with self._session() as session:
            reminder = session.get(HealthReminder, reminder_id)
            if reminder is None:
                return None
            reminder.is_completed = is_completed
            session.flush()
            return reminder

    def list_reminders(self, user_id: str) -> List[HealthReminder]:
        """依到期日排序，沒有到期日的排在最後"""
        with self._session() as session:
            return list(session.scalars(
                select(HealthReminder)
                .where(HealthReminder.user_id == user_id)
                .order_by(
                    HealthReminder.due_date.is_(None),
                    HealthReminder.due_date.asc(),
                    HealthReminder.id.asc(),
                )
            ))

    # ==================== AI 諮詢 ====================

    def add_consultation(self, user_id: str, **fields) -> AIConsultation:
        with self._session() as session:
            consultation = AIConsultation(user_id=user_id, **fields)
            session.add(consultation)
            session.flush()
            return consultation

    def list_consultations(self, user_id: str, limit: int = 50) -> List[AIConsultation]:
        with self._session() as session:
            return list(session.scalars(
                select(AIConsultation)
                .where(AIConsultation.user_id == user_id)
                .order_by(AIConsultation.consultation_date.desc(), AIConsultation.id.desc())
                .limit(limit)
            ))


# 全局存取層實例
_health_repository = None


def get_health_repository() -> HealthRepository:
    """獲取全局存取層實例（單例模式）"""
    global _health_repository
    if _health_repository is None:
        from database import create_session_factory
        _health_repository = HealthRepository(create_session_factory())
    return _health_repository
