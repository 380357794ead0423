# agents/report_analyzer.py
import asyncio
import logging
from typing import Any, Dict, Optional, TypedDict

from langchain_ollama import ChatOllama
from langchain_core.messages import HumanMessage, SystemMessage
from langgraph.graph import StateGraph, END

from config.settings import settings
from config.prompts import PromptTemplates
from schemas import AnalyzerResult, StructuredFindings
from utils.analysis_parser import (
    extract_indicators_from_text,
    parse_analysis_response,
    parse_report_type,
    parse_structured_findings,
)
from utils.error_handler import UpstreamFailure

logger = logging.getLogger(__name__)


# 定義分析流程狀態
class AnalyzerState(TypedDict):
    content: str
    user_context: Optional[Dict[str, Any]]
    report_type: Optional[str]
    structured_findings: Optional[Dict[str, Any]]
    parsed: Optional[Dict[str, Any]]


class UnusableAnalyzerOutput(Exception):
    """模型回覆無法轉成分析結果"""


# 初始化 LLM
_llm = None
_report_analyzer = None


def _get_llm():
    """獲取 LLM 實例（單例模式）"""
    global _llm
    if _llm is None:
        _llm = ChatOllama(
            model=settings.model_name,
            base_url=settings.ollama_base_url,
            temperature=settings.llm_temperature,
        )
    return _llm


class ReportAnalyzer:
    """
    醫療報告 AI 分析器

    流程：識別報告類型 -> 萃取結構化數據 -> 綜合分析
    整個流程有逾時限制，逾時或暫時性錯誤會以線性退避重試。
    """

    def __init__(
        self,
        llm=None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ):
        self.llm = llm if llm is not None else _get_llm()
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.analyzer_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.analyzer_max_retries
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.analyzer_retry_backoff_seconds
        self.graph = self._build_graph()

    async def _ask(self, prompt: str) -> str:
        messages = [
            SystemMessage(content=PromptTemplates.REPORT_ANALYSIS_SYSTEM),
            HumanMessage(content=prompt),
        ]
        response = await self.llm.ainvoke(messages)
        return response.content if hasattr(response, 'content') else str(response)

    async def classify_node(self, state: AnalyzerState) -> Dict[str, Any]:
        """識別報告類型的節點；失敗時視為 mixed"""
        try:
            response = await self._ask(PromptTemplates.build_classify_prompt(state["content"]))
            report_type = parse_report_type(response)
        except Exception as e:
            logger.warning(f"Report type identification failed, defaulting to mixed: {e}")
            report_type = "mixed"
        return {"report_type": report_type}

    async def extract_node(self, state: AnalyzerState) -> Dict[str, Any]:
        """萃取結構化醫療數據的節點"""
        report_type = state.get("report_type") or "mixed"
        sections = PromptTemplates.SECTIONS_BY_REPORT_TYPE.get(report_type, PromptTemplates.SECTIONS_BY_REPORT_TYPE["mixed"])
        try:
            response = await self._ask(PromptTemplates.build_extraction_prompt(state["content"], report_type))
            findings = parse_structured_findings(response, sections, state["content"])
        except Exception as e:
            logger.warning(f"Structured extraction failed, using text extraction: {e}")
            indicators = extract_indicators_from_text(state["content"]) if "numerical_indicators" in sections else []
            findings = StructuredFindings(numerical_indicators=indicators)
        return {"structured_findings": findings.model_dump()}

    async def assess_node(self, state: AnalyzerState) -> Dict[str, Any]:
        """綜合分析的節點；模型錯誤會向上拋出"""
        response = await self._ask(
            PromptTemplates.build_analysis_prompt(state["content"], state.get("user_context"))
        )
        try:
            parsed = parse_analysis_response(response)
        except ValueError as e:
            raise UnusableAnalyzerOutput(str(e)) from e
        return {"parsed": parsed.model_dump()}

    def _build_graph(self):
        workflow = StateGraph(AnalyzerState)
        workflow.add_node("classify", self.classify_node)
        workflow.add_node("extract", self.extract_node)
        workflow.add_node("assess", self.assess_node)
        workflow.set_entry_point("classify")
        workflow.add_edge("classify", "extract")
        workflow.add_edge("extract", "assess")
        workflow.add_edge("assess", END)
        return workflow.compile()

    async def _run_once(self, text: str, user_context: Optional[Dict[str, Any]]) -> AnalyzerResult:
        initial_state = {
            "content": text,
            "user_context": user_context,
            "report_type": None,
            "structured_findings": None,
            "parsed": None,
        }
        state = await asyncio.wait_for(self.graph.ainvoke(initial_state), timeout=self.timeout_seconds)

        parsed = state["parsed"]
        return AnalyzerResult(
            report_type=state["report_type"],
            structured_findings=StructuredFindings(**state["structured_findings"]),
            summary=parsed["summary"],
            key_findings=parsed["key_findings"],
            immediate_actions=parsed["immediate_actions"],
            recommendations=parsed["recommendations"],
            risk_factors=parsed["risk_factors"],
            overall_health_score=parsed["health_score"],
            overall_status=parsed["overall_status"],
        )

    async def analyze(self, text: str, user_context: Optional[Dict[str, Any]] = None) -> AnalyzerResult:
        """
        分析一份報告文字

        Raises:
            UpstreamFailure: retryable=True 表示所有嘗試都逾時；否則為模型錯誤或回覆無法使用
        """
        attempts = self.max_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                return await self._run_once(text, user_context)
            except UnusableAnalyzerOutput as e:
                logger.error(f"Analyzer returned unusable output: {e}")
                raise UpstreamFailure("AI 分析结果无法解析", retryable=False) from e
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"Analyzer timed out after {self.timeout_seconds}s (attempt {attempt}/{attempts})")
            except Exception as e:
                last_error = e
                logger.warning(f"Analyzer call failed (attempt {attempt}/{attempts}): {e}")

            if attempt < attempts:
                await asyncio.sleep(self.backoff_seconds * attempt)

        if isinstance(last_error, asyncio.TimeoutError):
            raise UpstreamFailure("AI 分析超时，请稍后重试", retryable=True) from last_error
        logger.error(f"Analyzer failed after {attempts} attempts", exc_info=last_error)
        raise UpstreamFailure("AI 分析失败", retryable=False, details={"type": type(last_error).__name__}) from last_error


def get_report_analyzer() -> ReportAnalyzer:
    """獲取全局分析器實例（單例模式）"""
    global _report_analyzer
    if _report_analyzer is None:
        _report_analyzer = ReportAnalyzer()
    return _report_analyzer
