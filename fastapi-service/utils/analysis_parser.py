# utils/analysis_parser.py
"""
AI 回應解析

模型的回覆不一定是乾淨的 JSON：可能夾帶 markdown 代碼塊、前後說明文字，
欄位名稱也會在中英文之間變化。這裡負責把回覆轉成固定結構。
"""
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from config.models import ReportCategory
from config.scoring import HealthScoreScale
from schemas import ParsedAnalysis, Recommendations, RiskFactor, StructuredFindings

logger = logging.getLogger(__name__)

# 通用欄位映射表：同一個概念的候選鍵，依優先順序排列
FIELD_MAPPINGS: Dict[str, List[str]] = {
    "summary": ["健康状况", "整体健康状况评估", "综合分析", "总结", "概述", "summary"],
    "health_score": ["健康评分", "评分", "健康分数", "healthScore", "score"],
    "key_findings": ["关键发现", "主要发现", "重要发现", "主要关注点", "keyFindings", "findings"],
    "risk_level": ["风险等级", "风险级别", "风险评估", "riskLevel"],
    "immediate": ["立即行动", "即时建议", "紧急建议", "immediate"],
    # 「生活方式」通常包含飲食與運動，放在最後避免重複收錄
    "lifestyle": ["生活习惯", "生活建议", "lifestyle", "生活方式"],
    "diet": ["饮食调整", "饮食建议", "饮食与营养", "diet"],
    "exercise": ["运动方案", "运动建议", "锻炼建议", "exercise"],
    "follow_up": ["复查计划", "随访建议", "后续计划", "年度体检", "followUp", "follow_up"],
    "short_term_risks": ["短期风险", "近期风险", "shortTermRisks"],
    "long_term_risks": ["长期风险", "远期风险", "longTermRisks"],
    "abnormal_indicators": ["严重异常", "轻度异常", "需要监测", "异常指标分析"],
    "medical_advice": ["专科咨询", "药物提醒"],
    "sleep_advice": ["睡眠优化", "睡眠建议"],
    "stress_management": ["压力管理", "减压方法"],
}

_FENCE = re.compile(r"```(?:json)?")


def extract_json(response: str) -> str:
    """
    從回覆中取出第一個完整的 JSON 物件或陣列

    Raises:
        ValueError: 找不到可解析的 JSON
    """
    if not response:
        raise ValueError("empty response")

    starts = [i for i in (response.find("{"), response.find("[")) if i != -1]
    if not starts:
        raise ValueError("no JSON start marker found")
    start = min(starts)
    open_char = response[start]
    close_char = "}" if open_char == "{" else "]"

    depth = 0
    end = None
    for index in range(start, len(response)):
        char = response[index]
        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                end = index + 1
                break

    candidates = []
    if end is not None:
        candidates.append(response[start:end])
    last_close = response.rfind(close_char)
    if last_close > start:
        candidates.append(response[start:last_close + 1])
    candidates.append(_FENCE.sub("", response[start:]).strip())

    for candidate in candidates:
        try:
            json.loads(candidate)
            return candidate
        except json.JSONDecodeError:
            continue
    raise ValueError("no parsable JSON found")


def _find_key(obj: Any, key: str) -> Any:
    """先比對當前層，再遞迴搜尋子物件"""
    if isinstance(obj, dict):
        if obj.get(key) is not None:
            return obj[key]
        children: Iterable[Any] = obj.values()
    elif isinstance(obj, list):
        children = obj
    else:
        return None

    for child in children:
        if isinstance(child, (dict, list)):
            found = _find_key(child, key)
            if found is not None:
                return found
    return None


def smart_extract(obj: Any, keys: List[str]) -> Any:
    """依候選鍵的優先順序在整棵樹中查找，第一個找到的鍵勝出"""
    for key in keys:
        found = _find_key(obj, key)
        if found is not None:
            return found
    return None


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def smart_extract_list(obj: Any, keys: List[str]) -> List[str]:
    result = smart_extract(obj, keys)
    if isinstance(result, list):
        return [text for text in (_as_text(item) for item in result) if text]
    if isinstance(result, str):
        return [result] if result.strip() else []
    if isinstance(result, dict):
        # 物件：收集所有字串值與字串陣列
        extracted: List[str] = []
        for value in result.values():
            if isinstance(value, list):
                extracted.extend(text for text in (_as_text(item) for item in value) if text)
            else:
                text = _as_text(value)
                if text:
                    extracted.append(text)
        return extracted
    return []


def smart_extract_number(obj: Any, keys: List[str]) -> Optional[float]:
    result = smart_extract(obj, keys)
    if isinstance(result, bool):
        return None
    if isinstance(result, (int, float)):
        return float(result)
    if isinstance(result, str):
        match = re.search(r"-?\d+(?:\.\d+)?", result)
        if match:
            return float(match.group())
    return None


def smart_extract_string(obj: Any, keys: List[str], default: str = "") -> str:
    result = smart_extract(obj, keys)
    if isinstance(result, list):
        return "，".join(text for text in (_as_text(item) for item in result) if text)
    return _as_text(result) or default


def _clamp_score(score: Optional[float]) -> Optional[float]:
    if score is None:
        return None
    return max(0.0, min(100.0, score))


def smart_parse(data: Any) -> ParsedAnalysis:
    """從已解析的 JSON 中抽取分析結果"""
    health_score = _clamp_score(smart_extract_number(data, FIELD_MAPPINGS["health_score"]))
    summary = smart_extract_string(data, FIELD_MAPPINGS["summary"], "健康分析已完成")
    risk_level = smart_extract_string(data, FIELD_MAPPINGS["risk_level"], "中等风险")

    key_findings = smart_extract_list(data, FIELD_MAPPINGS["key_findings"])
    if not key_findings:
        abnormal = smart_extract_list(data, FIELD_MAPPINGS["abnormal_indicators"])
        if abnormal:
            key_findings = abnormal[:3]
        else:
            key_findings = []
            if health_score is not None:
                key_findings.append(f"健康评分：{health_score:g}分")
            key_findings.append(f"风险等级：{risk_level}")
            key_findings.append(summary[:100] + ("..." if len(summary) > 100 else ""))

    lifestyle = smart_extract_list(data, FIELD_MAPPINGS["lifestyle"])
    lifestyle += smart_extract_list(data, FIELD_MAPPINGS["sleep_advice"])
    lifestyle += smart_extract_list(data, FIELD_MAPPINGS["stress_management"])
    follow_up = smart_extract_list(data, FIELD_MAPPINGS["follow_up"])
    follow_up += smart_extract_list(data, FIELD_MAPPINGS["medical_advice"])

    risk_factors = [
        RiskFactor(type="短期风险", probability=HealthScoreScale.risk_probability(health_score), description=risk)
        for risk in smart_extract_list(data, FIELD_MAPPINGS["short_term_risks"])
    ] + [
        RiskFactor(type="长期风险", probability=HealthScoreScale.risk_probability(health_score, long_term=True), description=risk)
        for risk in smart_extract_list(data, FIELD_MAPPINGS["long_term_risks"])
    ]

    return ParsedAnalysis(
        summary=summary,
        health_score=health_score,
        key_findings=key_findings,
        immediate_actions=smart_extract_list(data, FIELD_MAPPINGS["immediate"]),
        recommendations=Recommendations(
            lifestyle=_dedupe(lifestyle),
            diet=smart_extract_list(data, FIELD_MAPPINGS["diet"]),
            exercise=smart_extract_list(data, FIELD_MAPPINGS["exercise"]),
            follow_up=_dedupe(follow_up),
        ),
        risk_factors=risk_factors,
        overall_status=HealthScoreScale.overall_status(health_score),
    )


def _dedupe(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


def parse_from_text(text: str) -> ParsedAnalysis:
    """文本模式解析：回覆中沒有 JSON 時的備用方案"""
    score_match = re.search(r"(?:健康评分|评分)[：:\s]*(\d+(?:\.\d+)?)", text)
    health_score = _clamp_score(float(score_match.group(1))) if score_match else None

    summary_match = re.search(r"(?:健康状况|整体评估)[：:\s]*([^。\n]{10,200})", text)
    if summary_match:
        summary = summary_match.group(1).strip()
    else:
        summary = text[:200] + ("..." if len(text) > 200 else "")

    def extract_advice(keywords: List[str]) -> List[str]:
        advice = []
        for keyword in keywords:
            advice.extend(m.strip() for m in re.findall(rf"{keyword}[：:\s]*([^。\n]+)", text))
        return _dedupe([a for a in advice if a])

    key_findings = ["基于文本分析的结果"]
    if health_score is not None:
        key_findings.insert(0, f"健康评分：{health_score:g}分")

    return ParsedAnalysis(
        summary=summary,
        health_score=health_score,
        key_findings=key_findings,
        immediate_actions=extract_advice(["立即", "紧急", "马上"]),
        recommendations=Recommendations(
            lifestyle=extract_advice(["生活", "作息", "习惯"]),
            diet=extract_advice(["饮食", "营养", "食物"]),
            exercise=extract_advice(["运动", "锻炼", "体育"]),
            follow_up=extract_advice(["复查", "随访"]),
        ),
        overall_status=HealthScoreScale.overall_status(health_score),
    )


def parse_analysis_response(response: str) -> ParsedAnalysis:
    """
    解析綜合分析回覆

    Raises:
        ValueError: 回覆為空，無法產生任何結果
    """
    if not response or not response.strip():
        raise ValueError("empty analysis response")

    try:
        data = json.loads(extract_json(response))
        if isinstance(data, dict):
            return smart_parse(data)
        logger.warning("Analysis response JSON is not an object, falling back to text parsing")
    except ValueError as e:
        logger.warning(f"Analysis response is not JSON ({e}), falling back to text parsing")
    return parse_from_text(response)


def parse_report_type(response: str) -> str:
    """解析報告類型識別結果；無法識別時回傳 mixed"""
    valid = {category.value for category in ReportCategory}
    try:
        data = json.loads(extract_json(response))
    except ValueError:
        logger.warning("Report type response is not JSON, defaulting to mixed")
        return ReportCategory.MIXED.value

    report_type = data.get("type") if isinstance(data, dict) else None
    if isinstance(report_type, str) and report_type.strip().lower() in valid:
        return report_type.strip().lower()
    logger.warning(f"Unknown report type {report_type!r}, defaulting to mixed")
    return ReportCategory.MIXED.value


_INDICATOR_LINE = re.compile(
    r"^\s*([^\d\n:：]{1,40}?)[：:\s]+(-?\d+(?:\.\d+)?)\s*([A-Za-z%μ/*^0-9.]*)",
    re.MULTILINE,
)


def extract_indicators_from_text(content: str) -> List[Dict[str, Any]]:
    """應急提取「名稱: 數值 單位」形式的指標，依名稱去重"""
    indicators: Dict[str, Dict[str, Any]] = {}
    for name, value, unit in _INDICATOR_LINE.findall(content):
        name = name.strip()
        if name and name not in indicators:
            indicators[name] = {
                "name": name,
                "value": value,
                "unit": unit,
                "normal_range": None,
                "status": "unknown",
            }
    return list(indicators.values())


def parse_structured_findings(response: str, sections: List[str], content: str) -> StructuredFindings:
    """
    解析結構化數據萃取結果

    只保留該報告類型需要的區塊；回覆無法解析時，數值指標改用文字應急提取。
    """
    try:
        data = json.loads(extract_json(response))
    except ValueError:
        data = None

    if not isinstance(data, dict):
        logger.warning("Structured findings response is not a JSON object, using text extraction")
        indicators = extract_indicators_from_text(content) if "numerical_indicators" in sections else []
        return StructuredFindings(numerical_indicators=indicators)

    findings: Dict[str, Any] = {}
    for section in sections:
        value = data.get(section)
        if section == "numerical_indicators":
            if isinstance(value, dict):
                value = [value]
            findings[section] = [item for item in (value or []) if isinstance(item, dict)]
        elif isinstance(value, dict) and value:
            findings[section] = value
    return StructuredFindings(**findings)
