"""SQL Compiler - ExecSpec → 参数化 SQL（单条 WITH ... SELECT）"""

import math
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from analytics_engine.core.config import settings
from analytics_engine.engines.datacard_builder import to_number
from analytics_engine.models.datacard import DataCard
from analytics_engine.models.exec_spec import ExecSpec, Filter, Measure, WindowFunction
from analytics_engine.utils.sql_safety import (
    escape_like,
    escape_literal,
    expression_identifiers,
    json_pointer,
    parse_expression,
    quote_identifier,
)

ROW_TABLE = "dataset_rows"
OTHERS_LABEL = "Others"

_TRUE_TOKENS = {"true", "1", "yes", "sim", "y"}
_FALSE_TOKENS = {"false", "0", "no", "nao", "não", "n"}

_SIMPLE_AGGREGATIONS = {
    "sum": "SUM",
    "avg": "AVG",
    "min": "MIN",
    "max": "MAX",
    "median": "MEDIAN",
    "stddev": "STDDEV_SAMP",
}

# Others 分组的二次聚合（无法正确合并的度量返回 NULL）
_REAGGREGATIONS = {
    "sum": "SUM",
    "count": "SUM",
    "min": "MIN",
    "max": "MAX",
}


class CompiledQuery(NamedTuple):
    """编译结果（params 不含 dataset_id，由执行端口作为第一个参数绑定）"""
    sql: str
    params: List[Any]


def coerce_value(value: Any, column_type: str) -> Any:
    """
    按列类型转换过滤值

    Raises:
        ValueError: 数值列的非数值/NaN，或无法识别的布尔值
    """
    if column_type == "numeric":
        number = to_number(value)
        if number is None or math.isnan(number):
            raise ValueError(f"无法转换为数值: {value!r}")
        return number
    if column_type == "boolean":
        token = str(value).strip().lower()
        if isinstance(value, bool):
            return "true" if value else "false"
        if token in _TRUE_TOKENS:
            return "true"
        if token in _FALSE_TOKENS:
            return "false"
        raise ValueError(f"无法识别的布尔值: {value!r}")
    if isinstance(value, (list, dict)):
        raise ValueError(f"过滤值必须是标量: {value!r}")
    return str(value)


def check_filter_shape(f: Filter) -> Optional[str]:
    """操作符与取值形状是否匹配，不匹配返回说明"""
    op, value = f.operator, f.value
    if op in {"is_null", "is_not_null"}:
        return None
    if op in {"in", "not_in"}:
        if not isinstance(value, list) or not value:
            return f"{op} 操作符需要非空数组（列 {f.column}）"
        return None
    if op == "between":
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            return f"between 操作符需要长度为2的数组（列 {f.column}）"
        return None
    if op == "like":
        if not isinstance(value, str) or value == "":
            return f"like 操作符需要非空字符串（列 {f.column}）"
        return None
    if value is None or isinstance(value, (list, dict)):
        return f"{op} 操作符需要标量值（列 {f.column}）"
    return None


class SQLCompiler:
    """ExecSpec 编译器"""

    def __init__(self, datacard: DataCard, quote_all: bool = True, max_rows: Optional[int] = None):
        self.datacard = datacard
        self.quote_all = quote_all
        self.max_rows = max_rows or settings.max_query_rows
        self.column_types: Dict[str, str] = {c.name: c.type for c in datacard.columns}

    def _q(self, name: str) -> str:
        return quote_identifier(name, force=self.quote_all)

    # ------------------------------------------------------------------
    # 行存储投影
    # ------------------------------------------------------------------

    def _referenced_columns(self, spec: ExecSpec) -> List[str]:
        if not spec.is_aggregated:
            return [c.name for c in self.datacard.columns]
        refs: List[str] = []

        def add(name: Optional[str]):
            if name and name in self.column_types and name not in refs:
                refs.append(name)

        for dim in spec.dimensions:
            add(dim)
        for measure in spec.measures:
            add(measure.column)
            if measure.formula:
                for name in expression_identifiers(measure.formula, set(self.column_types)):
                    add(name)
        for f in spec.filters:
            add(f.column)
        return refs

    def _projection(self, name: str) -> str:
        path = escape_literal(json_pointer(name))
        extracted = f"json_extract_string(data, '{path}')"
        if self.column_types.get(name) == "numeric":
            return f"TRY_CAST({extracted} AS DOUBLE) AS {self._q(name)}"
        return f"NULLIF({extracted}, '') AS {self._q(name)}"

    def _rows_cte(self, columns: List[str]) -> str:
        projections = ", ".join(self._projection(c) for c in columns) or "row_index"
        return f"{quote_identifier('rows')} AS (SELECT {projections} FROM {ROW_TABLE} WHERE dataset_id = ?)"

    # ------------------------------------------------------------------
    # 表达式
    # ------------------------------------------------------------------

    def measure_expression(self, measure: Measure) -> str:
        agg = measure.aggregation
        if agg == "custom":
            return parse_expression(measure.formula, set(self.column_types), self._q)
        if agg == "count":
            if not measure.column or measure.column == "*":
                return "COUNT(*)"
            return f"COUNT({self._q(measure.column)})"
        if agg == "count_distinct":
            return f"COUNT(DISTINCT {self._q(measure.column)})"
        return f"{_SIMPLE_AGGREGATIONS[agg]}({self._q(measure.column)})"

    def build_filter(self, f: Filter) -> Tuple[str, List[Any]]:
        """构建过滤条件（取值全部绑定为参数）"""
        shape_error = check_filter_shape(f)
        if shape_error:
            raise ValueError(shape_error)

        col = self._q(f.column)
        col_type = self.column_types.get(f.column, "text")
        op = f.operator

        if op == "is_null":
            return f"{col} IS NULL", []
        if op == "is_not_null":
            return f"{col} IS NOT NULL", []
        if op in {"=", "!=", ">", ">=", "<", "<="}:
            return f"{col} {op} ?", [coerce_value(f.value, col_type)]
        if op in {"in", "not_in"}:
            values = [coerce_value(v, col_type) for v in f.value]
            placeholders = ", ".join(["?"] * len(values))
            keyword = "IN" if op == "in" else "NOT IN"
            return f"{col} {keyword} ({placeholders})", values
        if op == "between":
            low, high = (coerce_value(v, col_type) for v in f.value)
            return f"{col} BETWEEN ? AND ?", [low, high]
        if op == "like":
            # 包含匹配，大小写不敏感
            escaped = escape_like(str(f.value))
            return f"CAST({col} AS VARCHAR) ILIKE ? ESCAPE '\\'", [f"%{escaped}%"]
        raise ValueError(f"不支持的操作符: {op}")

    def _window_expression(self, window: WindowFunction) -> str:
        over_parts = []
        if window.partition_by:
            over_parts.append("PARTITION BY " + ", ".join(self._q(p) for p in window.partition_by))
        if window.order_by:
            over_parts.append(f"ORDER BY {self._q(window.order_by)} {window.direction.upper()}")

        func = window.function
        if func == "moving_avg":
            frame = f"ROWS BETWEEN {window.window_size - 1} PRECEDING AND CURRENT ROW"
            over = " ".join(over_parts + [frame])
            return f"AVG({self._q(window.column)}) OVER ({over})"

        over = " ".join(over_parts)
        if func in {"lag", "lead"}:
            return f"{func.upper()}({self._q(window.column)}, {window.offset}) OVER ({over})"
        return f"{func.upper()}() OVER ({over})"

    def _order_clause(self, spec: ExecSpec) -> str:
        orders = [(o.column, o.direction) for o in spec.order_by]
        if spec.top_n and not spec.top_n.include_others:
            orders = [(spec.top_n.order_by, spec.top_n.direction)] + [
                o for o in orders if o[0] != spec.top_n.order_by
            ]
        if not orders:
            return ""
        parts = [f"{self._q(col)} {direction.upper()} NULLS LAST" for col, direction in orders]
        return "ORDER BY " + ", ".join(parts)

    def _effective_limit(self, spec: ExecSpec) -> int:
        limit = spec.limit or self.max_rows
        if spec.top_n:
            n = spec.top_n.n + (1 if spec.top_n.include_others else 0)
            limit = min(limit, n)
        return min(limit, self.max_rows)

    # ------------------------------------------------------------------
    # 编译
    # ------------------------------------------------------------------

    def compile(self, spec: ExecSpec) -> CompiledQuery:
        """
        编译 ExecSpec

        Args:
            spec: 已通过校验的 ExecSpec

        Returns:
            CompiledQuery: 第一个占位符为 dataset_id，其余参数按出现顺序排列
        """
        params: List[Any] = []
        ctes = [self._rows_cte(self._referenced_columns(spec))]

        where_clause = ""
        if spec.filters:
            conditions = []
            for f in spec.filters:
                clause, clause_params = self.build_filter(f)
                conditions.append(clause)
                params.extend(clause_params)
            where_clause = f" WHERE {' AND '.join(conditions)}"

        if spec.is_aggregated:
            select_parts = [self._q(d) for d in spec.dimensions]
            select_parts += [f"{self.measure_expression(m)} AS {self._q(m.name)}" for m in spec.measures]
            group_clause = ""
            if spec.dimensions:
                group_clause = " GROUP BY " + ", ".join(self._q(d) for d in spec.dimensions)
            result_select = f"SELECT {', '.join(select_parts)} FROM {quote_identifier('rows')}{where_clause}{group_clause}"
        else:
            result_select = f"SELECT * FROM {quote_identifier('rows')}{where_clause}"

        ctes.append(f"{quote_identifier('result')} AS ({result_select})")
        limit = self._effective_limit(spec)

        if spec.top_n and spec.top_n.include_others:
            sql = self._compile_top_n_others(spec, ctes, limit)
            return CompiledQuery(sql=sql, params=params)

        output = "*"
        if spec.window_functions:
            window_parts = [f"{self._window_expression(w)} AS {self._q(w.name)}" for w in spec.window_functions]
            output = "*, " + ", ".join(window_parts)

        order_clause = self._order_clause(spec)
        sql = f"WITH {', '.join(ctes)} SELECT {output} FROM {quote_identifier('result')}"
        if order_clause:
            sql = f"{sql} {order_clause}"
        sql = f"{sql} LIMIT {limit}"
        return CompiledQuery(sql=sql, params=params)

    def _compile_top_n_others(self, spec: ExecSpec, ctes: List[str], limit: int) -> str:
        top_n = spec.top_n
        rank_col = quote_identifier("__rank")
        order = f"{self._q(top_n.order_by)} {top_n.direction.upper()} NULLS LAST"
        ctes.append(
            f"{quote_identifier('ranked')} AS (SELECT *, ROW_NUMBER() OVER (ORDER BY {order}) AS {rank_col} "
            f"FROM {quote_identifier('result')})"
        )

        dims = [self._q(d) for d in spec.dimensions]
        top_parts = [f"CAST({d} AS VARCHAR) AS {d}" for d in dims]
        top_parts += [self._q(m.name) for m in spec.measures]
        top_parts.append(rank_col)

        others_parts = []
        for idx, d in enumerate(dims):
            label = f"'{OTHERS_LABEL}'" if idx == 0 else "CAST(NULL AS VARCHAR)"
            others_parts.append(f"{label} AS {d}")
        for m in spec.measures:
            reagg = _REAGGREGATIONS.get(m.aggregation)
            expr = f"{reagg}({self._q(m.name)})" if reagg else "CAST(NULL AS DOUBLE)"
            others_parts.append(f"{expr} AS {self._q(m.name)}")
        others_parts.append(f"{top_n.n + 1} AS {rank_col}")

        output_cols = ", ".join(dims + [self._q(m.name) for m in spec.measures])
        ranked = quote_identifier("ranked")
        return (
            f"WITH {', '.join(ctes)} "
            f"SELECT {output_cols} FROM ("
            f"SELECT {', '.join(top_parts)} FROM {ranked} WHERE {rank_col} <= {top_n.n} "
            f"UNION ALL "
            f"SELECT {', '.join(others_parts)} FROM {ranked} WHERE {rank_col} > {top_n.n} HAVING COUNT(*) > 0"
            f") AS {quote_identifier('top_n')} ORDER BY {rank_col} LIMIT {limit}"
        )
