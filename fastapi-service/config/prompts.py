# config/prompts.py
from typing import Dict, Any, Optional
import json

class PromptTemplates:
    REPORT_ANALYSIS_SYSTEM = "你是一个专业的医疗健康分析助手，具备现代医学和传统中医学知识。请提供准确、专业的医疗分析。"

    CLASSIFY_TEMPLATE = """分析以下医疗报告内容，判断报告类型。请返回JSON格式：

报告内容：
{content}

判断标准：
- modern: 主要包含数值指标（血检、尿检等化验结果）
- tcm: 主要包含中医诊断（四诊、证型、方药等）
- imaging: 主要包含影像学发现（CT、MRI、X光等）
- pathology: 主要包含病理诊断
- mixed: 包含多种类型的内容

请返回：{{"type": "报告类型", "confidence": 置信度0-1, "reasoning": "判断理由"}}"""

    # 各報告類型需要萃取的區塊
    SECTION_INSTRUCTIONS = {
        "numerical_indicators": '"numerical_indicators": [{"name": "指标名称", "value": "数值", "unit": "单位", "normal_range": "正常范围", "status": "normal/high/low/critical"}]',
        "imaging_findings": '"imaging_findings": {"type": "CT/MRI/X光等", "location": "部位", "findings": "影像所见", "impression": "影像印象"}',
        "pathology_results": '"pathology_results": {"specimen": "标本", "diagnosis": "病理诊断", "details": "详细描述"}',
        "tcm_diagnosis": '"tcm_diagnosis": {"syndrome": "证型", "constitution": "体质", "tongue": "舌象", "pulse": "脉象", "treatment_principle": "治则"}',
        "clinical_diagnosis": '"clinical_diagnosis": {"primary": "主要诊断", "secondary": ["次要诊断"], "recommendations": ["建议"]}',
    }

    SECTIONS_BY_REPORT_TYPE = {
        "modern": ["numerical_indicators", "clinical_diagnosis"],
        "tcm": ["tcm_diagnosis", "clinical_diagnosis"],
        "imaging": ["imaging_findings", "clinical_diagnosis"],
        "pathology": ["pathology_results", "clinical_diagnosis"],
        "mixed": [
            "numerical_indicators",
            "imaging_findings",
            "pathology_results",
            "tcm_diagnosis",
            "clinical_diagnosis",
        ],
    }

    @classmethod
    def build_classify_prompt(cls, content: str) -> str:
        return cls.CLASSIFY_TEMPLATE.format(content=content)

    @classmethod
    def build_extraction_prompt(cls, content: str, report_type: str) -> str:
        """建構結構化數據萃取提示詞"""
        sections = cls.SECTIONS_BY_REPORT_TYPE.get(report_type, cls.SECTIONS_BY_REPORT_TYPE["mixed"])
        fields = ",\n  ".join(cls.SECTION_INSTRUCTIONS[name] for name in sections)
        return f"""从以下医疗报告中提取结构化医疗数据，返回JSON格式：

报告内容：
{content}

返回格式（没有相关信息的字段返回null）：
{{
  {fields}
}}"""

    @staticmethod
    def build_analysis_prompt(
        report_content: str,
        user_context: Optional[Dict[str, Any]] = None
    ) -> str:
        """建構綜合分析提示詞"""
        prompt = ""
        if user_context:
            prompt += f"""用户个人档案：
{json.dumps(user_context, ensure_ascii=False, indent=2)}

"""
        prompt += f"""请基于以下医疗报告，为用户提供全面、专业、个性化的健康分析。

医疗报告内容：
{report_content}

请严格按照以下JSON格式返回分析结果：
{{
  "整体评估": {{
    "健康状况": "综合健康评价",
    "健康评分": 数字(0-100),
    "风险等级": "低风险/中等风险/高风险/需要立即就医",
    "关键发现": ["最重要的发现1", "最重要的发现2", "最重要的发现3"]
  }},
  "个性化建议": {{
    "立即行动": ["具体的紧急措施"],
    "生活方式": {{
      "饮食调整": ["饮食建议"],
      "运动方案": ["运动建议"],
      "生活习惯": ["睡眠优化", "压力管理"]
    }},
    "医疗建议": {{
      "复查计划": ["复查项目"],
      "专科咨询": ["推荐科室"]
    }}
  }},
  "风险预警": {{
    "短期风险": ["1-3个月内的健康风险"],
    "长期风险": ["1-5年潜在疾病风险"]
  }}
}}"""
        return prompt
