"""DataCard Builder - 数据集画像（纯函数，无副作用）"""

import math
import re
from typing import Any, Dict, List, Optional

import pandas as pd

from analytics_engine.core.constants import (
    COLUMN_TYPES,
    DATACARD_SAMPLE_ROWS,
    DOMAIN_KEYWORDS,
    SIZE_MEDIUM_MAX_ROWS,
    SIZE_SMALL_MAX_ROWS,
)
from analytics_engine.models.datacard import (
    ColumnMetadata,
    ColumnStats,
    DataCard,
    DatasetSample,
    DataStats,
)
from analytics_engine.utils.logger import log
from analytics_engine.utils.text import normalize_column_name

_DATE_PATTERNS = [
    re.compile(r"^\d{4}-\d{2}-\d{2}([ T]\d{2}:\d{2}(:\d{2}(\.\d+)?)?)?(Z|[+-]\d{2}:?\d{2})?$"),
    re.compile(r"^\d{2}/\d{2}/\d{4}$"),
]
_BOOLEAN_TOKENS = {"true", "false", "sim", "nao", "não", "yes", "no"}

OUTLIER_SIGMA = 3.0


def is_present(value: Any) -> bool:
    """非空值：既不是 None 也不是空字符串"""
    if value is None:
        return False
    if isinstance(value, str) and value == "":
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    return True


def to_number(value: Any) -> Optional[float]:
    """转为数值，无法转换返回 None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return None if math.isnan(number) or math.isinf(number) else number
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return None if math.isnan(number) or math.isinf(number) else number
    return None


def _looks_like_date(value: Any) -> bool:
    if hasattr(value, "isoformat") and not isinstance(value, str):
        return True
    text = str(value).strip()
    return any(p.match(text) for p in _DATE_PATTERNS)


def _looks_like_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return True
    return isinstance(value, str) and value.strip().lower() in _BOOLEAN_TOKENS


def infer_column_type(values: List[Any]) -> str:
    """根据非空取值推断列类型"""
    present = [v for v in values if is_present(v)]
    if not present:
        return "empty"
    if all(_looks_like_boolean(v) for v in present):
        return "boolean"
    if all(to_number(v) is not None for v in present):
        return "numeric"
    if all(_looks_like_date(v) for v in present):
        return "date"
    return "text"


def _hashable(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return str(value)
    return value


def _numeric_stats(values: List[Any]) -> Optional[ColumnStats]:
    series = pd.Series([to_number(v) for v in values], dtype="float64").dropna()
    if series.empty:
        return None
    return ColumnStats(
        min=float(series.min()),
        max=float(series.max()),
        mean=float(series.mean()),
        stddev=float(series.std(ddof=0))
    )


def _count_outliers(values: List[Any], stats: Optional[ColumnStats]) -> int:
    if stats is None or stats.stddev == 0:
        return 0
    bound = OUTLIER_SIGMA * stats.stddev
    numbers = [n for n in (to_number(v) for v in values) if n is not None]
    return sum(1 for n in numbers if abs(n - stats.mean) > bound)


def _count_inconsistent(values: List[Any], column_type: str) -> int:
    present = [v for v in values if is_present(v)]
    if column_type == "numeric":
        return sum(1 for v in present if to_number(v) is None)
    if column_type == "date":
        return sum(1 for v in present if not _looks_like_date(v))
    return 0


def _profile_column(name: str, values: List[Any], declared_type: Optional[str], sample_size: int) -> ColumnMetadata:
    present = [v for v in values if is_present(v)]
    nullable_pct = 100.0 if sample_size == 0 else (sample_size - len(present)) / sample_size * 100

    distinct: List[Any] = []
    seen = set()
    for v in present:
        key = _hashable(v)
        if key not in seen:
            seen.add(key)
            distinct.append(v)

    if not present:
        column_type = "empty"
    elif declared_type in COLUMN_TYPES and declared_type != "empty":
        column_type = declared_type
    else:
        column_type = infer_column_type(values)

    stats = _numeric_stats(present) if column_type == "numeric" else None

    return ColumnMetadata(
        name=name,
        normalized_name=normalize_column_name(name),
        type=column_type,
        nullable_pct=round(nullable_pct, 2),
        cardinality=len(distinct),
        unique_values_sample=distinct[:5],
        stats=stats,
        is_candidate_key=sample_size > 0 and len(distinct) == sample_size and nullable_pct < 5
    )


def calculate_quality_score(columns: List[ColumnMetadata], sample_size: int) -> int:
    """
    质量分

    100 − 0.3×平均空值率 − 20×空列占比 − 10×近似常量列占比，
    截断到 [0, 100] 后四舍五入（92.5 → 93）
    """
    if sample_size == 0 or not columns:
        return 0

    total = len(columns)
    avg_nullable = sum(c.nullable_pct for c in columns) / total
    empty_ratio = sum(1 for c in columns if c.type == "empty") / total
    constant_ratio = sum(1 for c in columns if c.cardinality < 2 and c.type != "empty") / total

    score = 100 - 0.3 * avg_nullable - 20 * empty_ratio - 10 * constant_ratio
    score = min(100.0, max(0.0, score))
    return int(math.floor(round(score, 6) + 0.5))


def detect_domain(columns: List[ColumnMetadata]) -> str:
    """按关键词词典识别业务领域（平局按词典顺序，零分为 generic）"""
    joined = " ".join(c.normalized_name for c in columns)
    best_domain = "generic"
    best_score = 0
    for domain, keywords in DOMAIN_KEYWORDS.items():
        score = sum(1 for kw in keywords if kw in joined)
        if score > best_score:
            best_domain = domain
            best_score = score
    return best_domain


def _size_category(total_rows: int) -> str:
    if total_rows < SIZE_SMALL_MAX_ROWS:
        return "small"
    if total_rows < SIZE_MEDIUM_MAX_ROWS:
        return "medium"
    return "large"


def _count_duplicates(sample: DatasetSample) -> int:
    if not sample.rows:
        return 0
    df = pd.DataFrame(sample.rows, columns=sample.columns).astype(str)
    return int(df.duplicated().sum())


def build_datacard(dataset_id: str, sample: DatasetSample) -> DataCard:
    """
    构建 DataCard

    Args:
        dataset_id: 数据集ID
        sample: 代表性样本（含声明的列类型）

    Returns:
        DataCard: 空样本时质量分为 0
    """
    sample_size = len(sample.rows)
    columns: List[ColumnMetadata] = []
    consistency_issues = 0
    outliers = 0

    for idx, name in enumerate(sample.columns):
        values = [row[idx] if idx < len(row) else None for row in sample.rows]
        column = _profile_column(name, values, sample.column_types.get(name), sample_size)
        columns.append(column)
        consistency_issues += _count_inconsistent(values, column.type)
        outliers += _count_outliers(values, column.stats)

    quality_score = calculate_quality_score(columns, sample_size)
    completeness = 0.0
    if columns and sample_size:
        completeness = round(100 - sum(c.nullable_pct for c in columns) / len(columns), 2)

    sample_rows: List[Dict[str, Any]] = [
        dict(zip(sample.columns, row)) for row in sample.rows[:DATACARD_SAMPLE_ROWS]
    ]

    datacard = DataCard(
        dataset_id=dataset_id,
        columns=columns,
        total_rows=sample.total_rows,
        quality_score=quality_score,
        sample_rows=sample_rows,
        stats=DataStats(
            completeness_pct=completeness,
            size_category=_size_category(sample.total_rows),
            consistency_issues=consistency_issues,
            outliers_detected=outliers,
            duplicates_detected=_count_duplicates(sample)
        ),
        detected_domain=detect_domain(columns)
    )

    log.info(
        f"DataCard 构建完成: dataset={dataset_id}, 列数={len(columns)}, "
        f"样本行={sample_size}, 质量分={quality_score}, 领域={datacard.detected_domain}"
    )
    return datacard
