import asyncio
import json
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from agents import ReportAnalyzer, get_report_analyzer
from database import create_session_factory
from main import app
from routes import get_clock, get_file_store
from utils.clock import FixedClock
from utils.file_handler import ReportFileStore
from utils.health_repository import HealthRepository, get_health_repository

NOW = datetime(2024, 3, 15, 12, 0, 0)

REPORT_LINES = [
    "体检报告",
    "检查项目: 血常规 肝功能",
    "WBC: 6.5 10^9/L 参考范围 4-10",
    "血糖: 5.6 mmol/L 结果正常",
    "ALT: 25 U/L",
    "肝功能未见异常",
]

CLASSIFY_RESPONSE = '{"type": "modern", "confidence": 0.92}'

EXTRACT_RESPONSE = json.dumps({
    "numerical_indicators": [
        {"name": "血糖", "value": "5.6", "unit": "mmol/L", "normal_range": "3.9-6.1", "status": "normal"},
        {"name": "WBC", "value": "6.5", "unit": "10^9/L", "normal_range": "4-10", "status": "normal"},
        {"name": "尿蛋白", "value": "阴性", "unit": "", "normal_range": "阴性", "status": "normal"},
    ],
    "clinical_diagnosis": {"diagnosis": "未见明显异常"},
    "imaging_findings": {"description": "不属于此类报告"},
}, ensure_ascii=False)

ANALYSIS_RESPONSE = "以下是分析结果：\n```json\n" + json.dumps({
    "健康状况": "整体健康状况良好，各项指标在正常范围内",
    "健康评分": 82,
    "关键发现": ["血糖正常", "白细胞计数正常"],
    "立即行动": ["保持当前作息"],
    "生活习惯": ["规律作息"],
    "睡眠优化": ["每晚保证7小时睡眠"],
    "饮食建议": ["减少精制糖摄入"],
    "运动建议": ["每周150分钟中等强度运动"],
    "复查计划": ["一年后复查血常规"],
    "短期风险": ["暂无明显短期风险"],
}, ensure_ascii=False) + "\n```"


class SlowChatModel:
    """永遠不會在逾時前回覆的模型"""

    async def ainvoke(self, messages):
        await asyncio.sleep(5)


class FailingChatModel:
    def __init__(self):
        self.calls = 0

    async def ainvoke(self, messages):
        self.calls += 1
        raise RuntimeError("model unavailable")


@pytest.fixture
def session_factory(tmp_path):
    return create_session_factory(f"sqlite:///{tmp_path / 'health.db'}")


@pytest.fixture
def repository(session_factory):
    return HealthRepository(session_factory)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def fake_llm():
    return FakeListChatModel(responses=[CLASSIFY_RESPONSE, EXTRACT_RESPONSE, ANALYSIS_RESPONSE])


@pytest.fixture
def analyzer(fake_llm):
    return ReportAnalyzer(llm=fake_llm, timeout_seconds=5, max_retries=0, backoff_seconds=0)


@pytest.fixture
def slow_analyzer():
    return ReportAnalyzer(llm=SlowChatModel(), timeout_seconds=0.05, max_retries=1, backoff_seconds=0)


@pytest.fixture
def failing_llm():
    return FailingChatModel()


@pytest.fixture
def failing_analyzer(failing_llm):
    return ReportAnalyzer(llm=failing_llm, timeout_seconds=1, max_retries=1, backoff_seconds=0)


@pytest.fixture
def file_store(tmp_path):
    return ReportFileStore(tmp_path / "uploads")


@pytest.fixture
def client(repository, clock, analyzer, file_store):
    app.dependency_overrides[get_health_repository] = lambda: repository
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_report_analyzer] = lambda: analyzer
    app.dependency_overrides[get_file_store] = lambda: file_store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def pending_report(repository, clock):
    """已建立檔案的用戶與一份待分析的報告"""
    repository.upsert_profile("user-1", fields={"age": 35, "gender": "female"}, create_missing=True)
    return repository.create_report(
        user_id="user-1",
        title="report.pdf",
        description="modern medical report",
        file_url="user-1/1.pdf",
        file_type="application/pdf",
        report_type="modern",
        status="pending",
        upload_date=clock.now(),
    )
