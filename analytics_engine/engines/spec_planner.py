"""Spec Planner - 自然语言问题 → 草稿 ExecSpec（LLM 只表达意图，不写 SQL）"""

import json
import re
from typing import Any, Dict, List, NamedTuple, Optional, Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import ValidationError

from analytics_engine.core.config import settings
from analytics_engine.core.constants import (
    ALLOWED_AGGREGATIONS,
    ALLOWED_FILTER_OPERATORS,
    ALLOWED_WINDOW_FUNCTIONS,
)
from analytics_engine.core.errors import LLMDraftError
from analytics_engine.engines.metrics_calculator import MetricsCalculator
from analytics_engine.engines.policies_engine import PoliciesEngine
from analytics_engine.engines.semantic_layer import available_names
from analytics_engine.models.datacard import DataCard
from analytics_engine.models.exec_spec import ExecSpec
from analytics_engine.models.response import LLMConfig
from analytics_engine.models.result import AnalysisWarning, PolicyApplication
from analytics_engine.utils.logger import log
from analytics_engine.utils.sql_safety import expression_identifiers, parse_expression, quote_identifier

SYSTEM_PROMPT = """
## 角色定位
你是数据分析规划助手。你只负责把用户问题翻译成结构化的查询规范（ExecSpec），不写 SQL，不编造数据。

## 输出要求（严格执行）
1. 只输出一个 JSON 对象，不要输出解释文字或代码块标记。
2. 字段：operations, dimensions, measures, filters, order_by, limit, top_n, window_functions, metadata。
3. 列名只能使用下方列出的列（原始名或规范名均可），严禁虚构列。
4. 需要业务指标时，把指标名放入 metadata.metrics（数组），不要自行推导公式。
5. 无法回答时输出 {"dimensions": [], "measures": []} 并在 metadata.reason 中说明原因。
"""

JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)


class LLMPort(Protocol):
    """LLM 端口：输入提示词，返回文本"""

    async def complete(self, prompt: str) -> str:
        ...


def create_llm(config: Optional[LLMConfig] = None):
    """创建 LangChain 聊天模型"""
    provider = config.provider if config else settings.default_llm_provider
    api_key = config.api_key if config else None
    model = config.model if config else settings.default_model
    base_url = config.base_url if config else None

    if not api_key:
        if provider == "openai":
            api_key = settings.openai_api_key
        elif provider == "anthropic":
            api_key = settings.anthropic_api_key

    if not api_key:
        raise ValueError(f"未配置 {provider} 的 API Key")

    log.info(f"初始化 LLM: provider={provider}, model={model}, base_url={base_url}")

    llm_kwargs: Dict[str, Any] = {"model": model, "api_key": api_key, "temperature": 0}
    if base_url:
        llm_kwargs["base_url"] = base_url
    if provider == "openai":
        return ChatOpenAI(**llm_kwargs)
    if provider == "anthropic":
        return ChatAnthropic(**llm_kwargs)
    raise ValueError(f"不支持的 LLM 提供商: {provider}")


def _describe_llm_error(error: Exception, provider: str) -> str:
    """提取用户可读的 LLM 错误信息"""
    text = str(error).lower()
    if "rate limit" in text or "rate_limit" in text:
        return "API 请求频率超限，请稍后重试"
    if "api key" in text or "authentication" in text:
        return f"{provider} API Key 无效或未配置"
    if "quota" in text or "billing" in text:
        return f"{provider} API 额度不足，请检查账户余额"
    if "timeout" in text:
        return "API 请求超时，请重试"
    if "connection" in text:
        return "无法连接到 API 服务，请检查网络"
    return f"{provider} API 错误: {str(error)[:200]}"


class LangChainLLMPort:
    """基于 LangChain 聊天模型的 LLM 端口"""

    def __init__(self, config: Optional[LLMConfig] = None):
        self.provider = config.provider if config else settings.default_llm_provider
        self.llm = create_llm(config)

    async def complete(self, prompt: str) -> str:
        messages = [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=prompt)]
        try:
            response = await self.llm.ainvoke(messages)
        except Exception as e:
            log.error(f"LLM 调用失败: {e}")
            raise LLMDraftError(_describe_llm_error(e, self.provider)) from e

        content = response.content
        if isinstance(content, list):
            # Anthropic 可能返回分块内容
            content = "".join(
                block.get("text", "") if isinstance(block, dict) else str(block) for block in content
            )
        return content


class PlannedSpec(NamedTuple):
    spec: ExecSpec
    policies_applied: List[PolicyApplication]
    warnings: List[AnalysisWarning]


class SpecPlanner:
    """问题 → 草稿 → 名称绑定 → 指标展开 → 策略（维度替换作为最后手段）"""

    def __init__(
        self,
        llm: LLMPort,
        policies: PoliciesEngine,
        metrics: Optional[MetricsCalculator] = None
    ):
        self.llm = llm
        self.policies = policies
        self.metrics = metrics

    def build_prompt(self, datacard: DataCard, question: str) -> str:
        lines = [f"数据集: {datacard.dataset_id}（{datacard.total_rows} 行，领域: {datacard.detected_domain}）", "", "## 可用列"]
        for col in datacard.columns:
            canonical = f"，规范名: {col.canonical_name}" if col.canonical_name and col.canonical_name != col.name else ""
            samples = ", ".join(str(v) for v in col.unique_values_sample[:3])
            lines.append(f"- {col.name}（{col.type}{canonical}）样例: {samples}")

        if self.metrics:
            available = self.metrics.suggest_metrics(datacard)
            if available:
                lines += ["", "## 可用指标", ", ".join(available)]

        lines += [
            "",
            "## 允许的取值",
            f"aggregation: {', '.join(sorted(ALLOWED_AGGREGATIONS))}",
            f"filter operator: {', '.join(sorted(ALLOWED_FILTER_OPERATORS))}",
            f"window function: {', '.join(sorted(ALLOWED_WINDOW_FUNCTIONS))}",
            "",
            "## 用户问题",
            question,
        ]
        return "\n".join(lines)

    @staticmethod
    def parse_draft(text: str) -> ExecSpec:
        """
        从 LLM 输出中提取 ExecSpec

        Raises:
            LLMDraftError: 没有 JSON 对象或结构不合法
        """
        match = JSON_OBJECT_PATTERN.search(text or "")
        if not match:
            raise LLMDraftError("LLM 输出中没有 JSON 对象", detail={"raw": (text or "")[:500]})
        try:
            payload = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise LLMDraftError(f"LLM 输出的 JSON 无法解析: {e}", detail={"raw": match.group()[:500]}) from e
        if not isinstance(payload, dict):
            raise LLMDraftError("LLM 输出必须是 JSON 对象")
        try:
            return ExecSpec(**payload)
        except ValidationError as e:
            raise LLMDraftError(
                "LLM 草稿不符合 ExecSpec 结构",
                detail={"errors": [err["msg"] for err in e.errors()]}
            ) from e

    @staticmethod
    def resolve_names(spec: ExecSpec, datacard: DataCard) -> ExecSpec:
        """把规范名（大小写不敏感）替换回原始列名，未知名称原样保留"""
        lookup = {name.lower(): name for name in datacard.column_names}
        lookup.update({k: v for k, v in available_names(datacard).items() if k not in lookup})

        def bind(name: Optional[str]) -> Optional[str]:
            if not name:
                return name
            return lookup.get(name.lower(), name)

        outputs = {m.name for m in spec.measures} | {w.name for w in spec.window_functions}

        def bind_output(name: Optional[str]) -> Optional[str]:
            return name if name in outputs else bind(name)

        measures = []
        for measure in spec.measures:
            update: Dict[str, Any] = {"column": bind(measure.column)}
            if measure.formula:
                try:
                    refs = expression_identifiers(measure.formula, set(_identifier_candidates(measure.formula)))
                    mapping = {r: bind(r) for r in refs}
                    update["formula"] = parse_expression(
                        measure.formula, set(mapping), lambda n: quote_identifier(mapping[n])
                    )
                except ValueError as e:
                    # 公式非法时原样保留，由执行器校验拒绝
                    log.debug(f"公式名称绑定跳过 {measure.name}: {e}")
            measures.append(measure.model_copy(update=update))

        return spec.model_copy(update={
            "dimensions": [bind(d) for d in spec.dimensions],
            "measures": measures,
            "filters": [f.model_copy(update={"column": bind(f.column)}) for f in spec.filters],
            "order_by": [o.model_copy(update={"column": bind_output(o.column)}) for o in spec.order_by],
            "top_n": spec.top_n.model_copy(update={"order_by": bind_output(spec.top_n.order_by)}) if spec.top_n else None,
            "window_functions": [
                w.model_copy(update={
                    "column": bind_output(w.column),
                    "order_by": bind_output(w.order_by),
                    "partition_by": [bind(p) for p in w.partition_by],
                })
                for w in spec.window_functions
            ],
        })

    async def draft(self, datacard: DataCard, question: str) -> ExecSpec:
        prompt = self.build_prompt(datacard, question)
        log.info(f"请求 LLM 生成 ExecSpec: dataset={datacard.dataset_id}")
        text = await self.llm.complete(prompt)
        return self.parse_draft(text)

    async def plan(self, datacard: DataCard, question: str) -> PlannedSpec:
        """
        生成可执行的 ExecSpec

        Returns:
            PlannedSpec；策略阻断时返回未改写的规范，由执行器给出阻断结果
        """
        spec = self.resolve_names(await self.draft(datacard, question), datacard)
        warnings: List[AnalysisWarning] = []

        requested_metrics = spec.metadata.get("metrics") or []
        if self.metrics and isinstance(requested_metrics, list) and requested_metrics:
            spec, _, metric_warnings = self.metrics.enrich_exec_spec(
                spec, [str(m) for m in requested_metrics], datacard
            )
            warnings.extend(metric_warnings)

        enforcement = self.policies.enforce(spec, datacard)
        if not enforcement.should_proceed:
            return PlannedSpec(spec, [], warnings)
        return PlannedSpec(enforcement.adjusted_spec, enforcement.policies_applied, warnings + enforcement.warnings)


def _identifier_candidates(formula: str) -> List[str]:
    """公式中所有可能的列引用（裸标识符与双引号标识符）"""
    names = [m.replace('""', '"') for m in re.findall(r'"((?:[^"]|"")+)"', formula)]
    stripped = re.sub(r'"(?:[^"]|"")+"', " ", formula)
    names += re.findall(r"[A-Za-z_\u00c0-\u024f\u4e00-\u9fa5][\w\u00c0-\u024f\u4e00-\u9fa5]*", stripped)
    return names
