# utils/quality_gate.py
"""
報告文字品質檢查

在把 OCR 萃取出的文字送進 AI 分析之前，先排除明顯無法使用的輸入。
檢查結果只是建議：不會拋出例外，由呼叫端決定中止或帶著警告繼續。
"""
from dataclasses import dataclass, field
from typing import List, Sequence

from config.scoring import ReportTextRules


@dataclass
class QualityReport:
    valid: bool
    issues: List[str] = field(default_factory=list)


def find_markers(text: str) -> List[str]:
    """回傳文字中出現的體檢報告標記詞（依規則表順序）"""
    lowered = text.lower()
    return [marker for marker in ReportTextRules.MEDICAL_REPORT_MARKERS if marker.lower() in lowered]


def validate_text_lines(lines: Sequence[str]) -> QualityReport:
    """
    檢查 OCR 文字陣列是否適合送去分析

    除了空陣列之外，每條規則都會執行，失敗的規則各自附加一個問題描述。
    """
    issues: List[str] = []

    if not lines:
        issues.append("text array is empty")
        return QualityReport(valid=False, issues=issues)

    if all(not (line or "").strip() for line in lines):
        issues.append("all text entries are empty")

    joined = "\n".join(line or "" for line in lines)
    total_length = len(joined)
    if total_length < ReportTextRules.MIN_TOTAL_LENGTH:
        issues.append(f"total text length too short: {total_length} characters")
    if total_length > ReportTextRules.MAX_TOTAL_LENGTH:
        issues.append(
            f"total text length too long: {total_length} characters, may exceed analysis capacity"
        )

    unique_lines = {(line or "").strip() for line in lines}
    if len(unique_lines) < len(lines) * ReportTextRules.MIN_UNIQUE_RATIO:
        issues.append("contains excessive duplicate text")

    found = find_markers(joined)
    if len(found) < ReportTextRules.MIN_MARKER_COUNT:
        issues.append(
            "content does not appear to be a medical report; "
            f"only {len(found)} relevant keyword(s) found"
        )

    return QualityReport(valid=not issues, issues=issues)
