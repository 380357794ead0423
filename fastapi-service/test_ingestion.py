import asyncio
import io
import json

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from conftest import ANALYSIS_RESPONSE, CLASSIFY_RESPONSE, EXTRACT_RESPONSE, REPORT_LINES
from agents import ReportAnalyzer
import schemas
import tools
from utils.error_handler import BadInput, Forbidden, NotFound, StorageFailure, UpstreamFailure


def analyze(repository, analyzer, clock, report_id, user_id="user-1", **kwargs):
    request = schemas.AnalyzeRequest(report_id=report_id, **({"text_lines": REPORT_LINES} | kwargs))
    return asyncio.run(tools.analyze_report(user_id, request, repository, analyzer, clock))


def canned_analyzer(analysis_response=ANALYSIS_RESPONSE):
    llm = FakeListChatModel(responses=[CLASSIFY_RESPONSE, EXTRACT_RESPONSE, analysis_response])
    return ReportAnalyzer(llm=llm, timeout_seconds=5, max_retries=0, backoff_seconds=0)


def test_successful_analysis(repository, analyzer, clock, pending_report):
    medical_data, analysis, quality = analyze(repository, analyzer, clock, pending_report.id)

    assert quality.valid is True
    assert repository.get_report(pending_report.id).status == "analyzed"
    assert medical_data.raw_text == "\n".join(REPORT_LINES)
    assert analysis.health_score == 82
    assert analysis.analysis_type == "comprehensive"
    assert json.loads(analysis.ai_analysis)["overall_status"] == "健康状况良好"
    assert analysis.recommendations["follow_up"] == ["一年后复查血常规"]

    profile = repository.get_profile("user-1")
    assert profile.reports_analyzed == 1
    assert profile.health_score == 82


def test_numeric_indicators_become_report_metrics(repository, analyzer, clock, pending_report):
    analyze(repository, analyzer, clock, pending_report.id)

    metrics = {m.metric_type: m for m in repository.list_metrics("user-1")}
    # 「阴性」無法轉為數值，不產生指標
    assert sorted(metrics) == ["WBC", "血糖"]
    glucose = metrics["血糖"]
    assert glucose.value == 5.6
    assert glucose.unit == "mmol/L"
    assert glucose.source == "report"
    assert glucose.report_id == pending_report.id
    assert glucose.measurement_date == clock.now()
    assert glucose.metadata_["normal_range"] == "3.9-6.1"


def test_reanalysis_overwrites_in_place(repository, analyzer, clock, pending_report):
    analyze(repository, analyzer, clock, pending_report.id)
    analyze(repository, analyzer, clock, pending_report.id)

    assert len(repository.list_analyses("user-1")) == 1
    assert len(repository.list_medical_data("user-1")) == 1
    assert len(repository.list_metrics("user-1")) == 2
    assert repository.get_report(pending_report.id).status == "analyzed"
    assert repository.get_profile("user-1").reports_analyzed == 1


def test_reanalysis_updates_profile_score(repository, analyzer, clock, pending_report):
    analyze(repository, analyzer, clock, pending_report.id)
    rescored = canned_analyzer(ANALYSIS_RESPONSE.replace('"健康评分": 82', '"健康评分": 64'))
    analyze(repository, rescored, clock, pending_report.id)

    profile = repository.get_profile("user-1")
    assert profile.health_score == 64
    assert profile.reports_analyzed == 1
    assert repository.get_analysis_for_report(pending_report.id).health_score == 64


def test_concurrent_first_analyses_commit_once(repository, clock, pending_report):
    request = schemas.AnalyzeRequest(report_id=pending_report.id, text_lines=REPORT_LINES)

    async def analyze_twice():
        return await asyncio.gather(
            tools.analyze_report("user-1", request, repository, canned_analyzer(), clock),
            tools.analyze_report("user-1", request, repository, canned_analyzer(), clock),
            return_exceptions=True,
        )

    first, second = asyncio.run(analyze_twice())

    assert isinstance(first, tuple), first
    assert isinstance(second, tuple), second
    assert first[1].id == second[1].id
    assert first[0].id == second[0].id
    assert repository.get_report(pending_report.id).status == "analyzed"
    assert len(repository.list_analyses("user-1")) == 1
    assert len(repository.list_medical_data("user-1")) == 1
    assert repository.get_profile("user-1").reports_analyzed == 1


def test_failed_write_rolls_back_whole_analysis(repository, clock, pending_report):
    bad_metric = {
        "metric_type": "WBC", "value": None, "unit": "10^9/L",
        "measurement_date": clock.now(), "source": "report",
    }
    with pytest.raises(StorageFailure):
        repository.commit_analysis(
            pending_report.id,
            medical_data={"raw_text": "\n".join(REPORT_LINES), "created_at": clock.now()},
            analysis={"ai_analysis": "{}", "health_score": 80, "analysis_date": clock.now()},
            metrics=[bad_metric],
            health_score=80,
        )

    assert repository.get_report(pending_report.id).status == "pending"
    assert repository.get_analysis_for_report(pending_report.id) is None
    assert repository.get_medical_data_for_report(pending_report.id) is None
    assert repository.list_metrics("user-1") == []
    profile = repository.get_profile("user-1")
    assert profile.reports_analyzed == 0
    assert profile.health_score is None


def test_report_content_is_accepted(repository, analyzer, clock, pending_report):
    medical_data, _, _ = analyze(
        repository, analyzer, clock, pending_report.id,
        text_lines=None, report_content="\n".join(REPORT_LINES),
    )
    assert medical_data.raw_text == "\n".join(REPORT_LINES)


def test_timeout_leaves_report_pending(repository, slow_analyzer, clock, pending_report):
    with pytest.raises(UpstreamFailure) as exc_info:
        analyze(repository, slow_analyzer, clock, pending_report.id)

    assert exc_info.value.retryable is True
    assert repository.get_report(pending_report.id).status == "pending"
    assert repository.get_analysis_for_report(pending_report.id) is None
    assert repository.get_medical_data_for_report(pending_report.id) is None
    assert repository.get_profile("user-1").reports_analyzed == 0


def test_upstream_failure_marks_report_failed(repository, failing_analyzer, analyzer, clock, pending_report):
    with pytest.raises(UpstreamFailure) as exc_info:
        analyze(repository, failing_analyzer, clock, pending_report.id)

    assert exc_info.value.retryable is False
    assert repository.get_report(pending_report.id).status == "failed"
    assert repository.get_analysis_for_report(pending_report.id) is None

    # failed 是終止狀態
    with pytest.raises(BadInput):
        analyze(repository, analyzer, clock, pending_report.id)
    assert repository.get_report(pending_report.id).status == "failed"


def test_strict_quality_rejects_bad_text(repository, analyzer, clock, pending_report):
    with pytest.raises(BadInput) as exc_info:
        analyze(repository, analyzer, clock, pending_report.id, text_lines=["hello"], strict_quality=True)

    assert "text length too short" in exc_info.value.details["issues"][0]
    assert repository.get_report(pending_report.id).status == "pending"


def test_quality_issues_are_advisory_by_default(repository, analyzer, clock, pending_report):
    _, _, quality = analyze(repository, analyzer, clock, pending_report.id, text_lines=["血糖 5.6", "血糖 5.6", "血糖 5.6"])

    assert quality.valid is False
    assert repository.get_report(pending_report.id).status == "analyzed"


def test_missing_text(repository, analyzer, clock, pending_report):
    with pytest.raises(BadInput):
        analyze(repository, analyzer, clock, pending_report.id, text_lines=None)


def test_unknown_report(repository, analyzer, clock, pending_report):
    with pytest.raises(NotFound):
        analyze(repository, analyzer, clock, 9999)


def test_other_users_report(repository, analyzer, clock, pending_report):
    with pytest.raises(Forbidden):
        analyze(repository, analyzer, clock, pending_report.id, user_id="user-2")
    assert repository.get_report(pending_report.id).status == "pending"


# ==================== 上傳 ====================

class FakeUpload:
    def __init__(self, filename, data, content_type="application/pdf"):
        self.filename = filename
        self.file = io.BytesIO(data)
        self.content_type = content_type


def test_upload_creates_pending_report(repository, file_store, clock):
    report = tools.upload_report("user-1", FakeUpload("blood.pdf", b"%PDF"), "TCM", repository, file_store, clock)

    assert report.status == "pending"
    assert report.report_type == "tcm"
    assert report.description == "tcm medical report"
    assert report.file_url.startswith("user-1/")
    assert report.file_url.endswith(".pdf")
    assert (file_store.base_dir / report.file_url).read_bytes() == b"%PDF"


def test_upload_rejects_unknown_category(repository, file_store, clock):
    with pytest.raises(BadInput):
        tools.upload_report("user-1", FakeUpload("x.pdf", b""), "xray", repository, file_store, clock)
    assert repository.list_reports("user-1") == []


def test_upload_requires_file(repository, file_store, clock):
    with pytest.raises(BadInput):
        tools.upload_report("user-1", None, "modern", repository, file_store, clock)


class BrokenRepository:
    def create_report(self, **fields):
        raise StorageFailure()


def test_upload_removes_file_when_report_is_not_saved(file_store, clock):
    with pytest.raises(StorageFailure):
        tools.upload_report("user-1", FakeUpload("blood.pdf", b"%PDF"), "modern", BrokenRepository(), file_store, clock)

    assert list((file_store.base_dir / "user-1").iterdir()) == []
