"""系统常量定义"""

from typing import Dict, List, Set

# 支持的上传文件类型
SUPPORTED_FILE_EXTENSIONS: Set[str] = {".xlsx", ".xls", ".csv"}

# ExecSpec 支持的操作（白名单之外的一律在校验阶段拒绝）
SUPPORTED_OPERATIONS: Set[str] = {
    "clean", "derive", "aggregate", "topN", "window", "filter"
}

# 过滤操作符白名单
ALLOWED_FILTER_OPERATORS: Set[str] = {
    "=", "!=", ">", ">=", "<", "<=",
    "in", "not_in", "like", "between", "is_null", "is_not_null"
}

# 度量聚合函数
ALLOWED_AGGREGATIONS: Set[str] = {
    "sum", "avg", "count", "min", "max", "median", "stddev", "count_distinct", "custom"
}

# 窗口函数
ALLOWED_WINDOW_FUNCTIONS: Set[str] = {
    "row_number", "rank", "dense_rank", "lag", "lead", "moving_avg"
}

# 自定义公式允许的函数
ALLOWED_EXPR_FUNCTIONS: Set[str] = {
    "sum", "avg", "min", "max", "count", "nullif", "coalesce", "round", "abs"
}

# 公式中的聚合函数（聚合查询里列引用必须位于其中）
AGGREGATE_EXPR_FUNCTIONS: Set[str] = {"sum", "avg", "min", "max", "count"}

# 列类型
COLUMN_TYPES: Set[str] = {"text", "numeric", "date", "boolean", "empty"}

# pandas dtype → 列类型
DTYPE_MAPPING: Dict[str, str] = {
    "int64": "numeric",
    "float64": "numeric",
    "Int64": "numeric",
    "object": "text",
    "string": "text",
    "bool": "boolean",
    "boolean": "boolean",
    "datetime64[ns]": "date",
}

# 领域关键词（列名归一化后做子串匹配，顺序即平局时的优先级）
DOMAIN_KEYWORDS: Dict[str, List[str]] = {
    "logistics": ["transportadora", "carrier", "entrega", "delivery", "otif", "prazo", "lead_time"],
    "sales": ["venda", "sales", "vendedor", "salesperson", "cliente", "customer", "receita", "revenue"],
    "hr": ["funcionario", "employee", "salario", "salary", "cargo", "position", "departamento"],
    "financial": ["custo", "cost", "despesa", "expense", "lucro", "profit", "orcamento", "budget"],
}

# SQL 保留字（出现即强制加引号）
SQL_RESERVED_WORDS: Set[str] = {
    "all", "and", "any", "as", "asc", "between", "by", "case", "cast", "check",
    "column", "constraint", "create", "cross", "current_date", "current_time",
    "default", "delete", "desc", "distinct", "drop", "else", "end", "except",
    "exists", "false", "fetch", "for", "foreign", "from", "full", "group",
    "having", "in", "inner", "insert", "intersect", "into", "is", "join",
    "left", "like", "limit", "not", "null", "offset", "on", "or", "order",
    "outer", "over", "partition", "primary", "references", "right", "select",
    "set", "table", "then", "to", "true", "union", "unique", "update", "user",
    "using", "values", "when", "where", "window", "with", "date", "time",
    "timestamp", "rows", "range",
}

# 规模分档阈值
SIZE_SMALL_MAX_ROWS = 10_000
SIZE_MEDIUM_MAX_ROWS = 100_000

# 最大限制
MAX_COLUMNS = 500
MAX_ROWS_SAMPLE = 1000
MAX_QUERY_ROWS = 100_000
DATACARD_SAMPLE_ROWS = 10

# 缓存有效期（秒）
CACHE_TTL_SECONDS = 60 * 60

# 不可分析的质量分阈值
UNANALYZABLE_QUALITY_SCORE = 20
