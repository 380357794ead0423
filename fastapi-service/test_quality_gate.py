from conftest import REPORT_LINES
from utils.quality_gate import find_markers, validate_text_lines


def test_empty_array_short_circuits():
    result = validate_text_lines([])
    assert result.valid is False
    assert result.issues == ["text array is empty"]


def test_blank_lines_report_every_failing_rule():
    result = validate_text_lines(["", "  "])
    assert result.valid is False
    assert result.issues == [
        "all text entries are empty",
        "total text length too short: 3 characters",
        "content does not appear to be a medical report; only 0 relevant keyword(s) found",
    ]


def test_lab_report_is_valid():
    result = validate_text_lines(REPORT_LINES)
    assert result.valid is True
    assert result.issues == []


def test_duplicate_lines():
    line = "血常规检查报告结果正常，数值在参考范围内"
    result = validate_text_lines([line] * 4)
    assert result.issues == ["contains excessive duplicate text"]


def test_too_long():
    text = "检查报告结果" + "x" * 10001
    result = validate_text_lines([text])
    assert result.issues == [
        f"total text length too long: {len(text)} characters, may exceed analysis capacity"
    ]


def test_not_a_medical_report():
    lines = ["Meeting notes for the quarterly planning session", "Budget review and hiring plan"]
    result = validate_text_lines(lines)
    assert result.valid is False
    assert result.issues[-1].startswith("content does not appear to be a medical report; only ")


def test_markers_are_case_insensitive_and_in_table_order():
    assert find_markers("HGB 140, rbc 4.5, WBC 6.0") == ["wbc", "rbc", "hgb"]
