"""SQL 安全工具：标识符引用、LIKE 转义、公式解析、只读校验"""

import re
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import sqlparse

from analytics_engine.core.constants import AGGREGATE_EXPR_FUNCTIONS, ALLOWED_EXPR_FUNCTIONS, SQL_RESERVED_WORDS
from analytics_engine.utils.logger import log

_SIMPLE_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

_TOKEN_SPEC = re.compile(
    r"\s*(?:(\d+(?:\.\d+)?)|\"((?:[^\"]|\"\")+)\"|([A-Za-z_\u00c0-\u024f\u4e00-\u9fa5][\w\u00c0-\u024f\u4e00-\u9fa5]*)|([+\-*/(),]))"
)

# 查询复杂度上限
MAX_FILTERS = 20
MAX_DIMENSIONS = 10
MAX_MEASURES = 20
MAX_WINDOW_FUNCTIONS = 10


class UnsafeSQLError(ValueError):
    """拒绝执行的 SQL"""


def quote_identifier(name: str, force: bool = True) -> str:
    """
    安全引用标识符

    Args:
        name: 标识符
        force: 是否总是加引号；否则仅对保留字和特殊字符加引号

    Returns:
        可直接拼接进 SQL 的标识符
    """
    if not force and _SIMPLE_IDENTIFIER.match(name) and name not in SQL_RESERVED_WORDS:
        return name
    escaped = name.replace('"', '""')
    return f'"{escaped}"'


def escape_literal(value: str) -> str:
    """转义 SQL 字符串字面量中的单引号"""
    return value.replace("'", "''")


def escape_like(value: str) -> str:
    """转义 LIKE 模式字符"""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def json_pointer(key: str) -> str:
    """JSON Pointer 路径（~ → ~0，/ → ~1）"""
    return "/" + key.replace("~", "~0").replace("/", "~1")


def validate_select_only(sql: str) -> None:
    """
    校验 SQL 为单条 SELECT（允许 WITH ... SELECT）

    Raises:
        UnsafeSQLError: 多语句或非 SELECT
    """
    statements = [s for s in sqlparse.parse(sql) if s.token_first(skip_cm=True) is not None]
    if len(statements) != 1:
        raise UnsafeSQLError("仅允许单条 SELECT 语句")
    stmt_type = statements[0].get_type()
    if stmt_type != "SELECT":
        log.warning(f"拒绝非 SELECT 语句: {stmt_type}")
        raise UnsafeSQLError(f"仅允许 SELECT 语句，实际为: {stmt_type}")


def validate_query_complexity(spec: Dict[str, Any]) -> List[str]:
    """
    校验查询复杂度

    Args:
        spec: ExecSpec 字典

    Returns:
        超限说明列表（空表示通过）
    """
    errors = []
    if len(spec.get("filters", [])) > MAX_FILTERS:
        errors.append(f"过滤条件过多（上限 {MAX_FILTERS}）")
    if len(spec.get("dimensions", [])) > MAX_DIMENSIONS:
        errors.append(f"分组列过多（上限 {MAX_DIMENSIONS}）")
    if len(spec.get("measures", [])) > MAX_MEASURES:
        errors.append(f"度量过多（上限 {MAX_MEASURES}）")
    if len(spec.get("window_functions", [])) > MAX_WINDOW_FUNCTIONS:
        errors.append(f"窗口函数过多（上限 {MAX_WINDOW_FUNCTIONS}）")
    return errors


def _tokenize(expr: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(expr):
        if expr[pos:].strip() == "":
            break
        match = _TOKEN_SPEC.match(expr, pos)
        if not match:
            raise ValueError("表达式包含非法字符")
        number, quoted, ident, op = match.groups()
        if number:
            tokens.append(("number", number))
        elif quoted:
            tokens.append(("quoted", quoted.replace('""', '"')))
        elif ident:
            tokens.append(("ident", ident))
        elif op:
            tokens.append(("op", op))
        pos = match.end()
    return tokens


def parse_expression(
    expr: str,
    allowed_identifiers: Set[str],
    quote: Callable[[str], str] = quote_identifier,
    bare: Optional[List[str]] = None
) -> str:
    """
    安全解析公式并输出 SQL 片段

    仅允许数字、白名单函数、四则运算和允许的列；
    列可写作裸标识符或双引号标识符。

    Args:
        expr: 原始公式
        allowed_identifiers: 允许的列名集合
        quote: 标识符输出函数
        bare: 若提供，收集不在聚合函数内的列引用

    Returns:
        规范化后的安全表达式
    """
    tokens = _tokenize(expr)
    if not tokens:
        raise ValueError("表达式为空")

    index = 0
    aggregate_depth = 0

    def peek() -> Optional[Tuple[str, str]]:
        return tokens[index] if index < len(tokens) else None

    def consume(expected: str | None = None) -> Tuple[str, str]:
        nonlocal index
        if index >= len(tokens):
            raise ValueError("表达式不完整")
        token = tokens[index]
        if expected and token[1] != expected:
            raise ValueError("表达式语法错误")
        index += 1
        return token

    def is_op(token: Optional[Tuple[str, str]], values: Set[str]) -> bool:
        return bool(token) and token[0] == "op" and token[1] in values

    def parse_sum() -> str:
        node = parse_term()
        while is_op(peek(), {"+", "-"}):
            op = consume()[1]
            node = f"({node} {op} {parse_term()})"
        return node

    def parse_term() -> str:
        node = parse_factor()
        while is_op(peek(), {"*", "/"}):
            op = consume()[1]
            node = f"({node} {op} {parse_factor()})"
        return node

    def parse_factor() -> str:
        nonlocal aggregate_depth
        token = peek()
        if not token:
            raise ValueError("表达式不完整")

        if is_op(token, {"+", "-"}):
            op = consume()[1]
            # 加括号，避免连续负号形成 SQL 注释
            return f"({op}{parse_factor()})"

        if token[0] == "number":
            return consume()[1]

        if token[0] == "ident" and is_op(tokens[index + 1] if index + 1 < len(tokens) else None, {"("}):
            func = consume()[1]
            if func.lower() not in ALLOWED_EXPR_FUNCTIONS:
                raise ValueError(f"表达式包含未授权函数: {func}")
            consume("(")
            if func.lower() == "count" and is_op(peek(), {"*"}):
                consume("*")
                consume(")")
                return "count(*)"
            aggregate = func.lower() in AGGREGATE_EXPR_FUNCTIONS
            if aggregate:
                aggregate_depth += 1
            args: List[str] = []
            if not is_op(peek(), {")"}):
                args.append(parse_sum())
                while is_op(peek(), {","}):
                    consume(",")
                    args.append(parse_sum())
            consume(")")
            if aggregate:
                aggregate_depth -= 1
            return f"{func.lower()}({', '.join(args)})"

        if token[0] in ("ident", "quoted"):
            name = consume()[1]
            if name not in allowed_identifiers:
                raise ValueError(f"表达式包含未授权字段: {name}")
            if bare is not None and aggregate_depth == 0 and name not in bare:
                bare.append(name)
            return quote(name)

        if is_op(token, {"("}):
            consume("(")
            inner = parse_sum()
            consume(")")
            return f"({inner})"

        raise ValueError("表达式语法错误")

    result = parse_sum()
    if index != len(tokens):
        raise ValueError("表达式语法错误")
    return result


def expression_identifiers(expr: str, allowed_identifiers: Set[str]) -> List[str]:
    """解析公式并返回引用到的列（按出现顺序去重）"""
    seen: List[str] = []

    def record(name: str) -> str:
        if name not in seen:
            seen.append(name)
        return quote_identifier(name)

    parse_expression(expr, allowed_identifiers, record)
    return seen


def bare_identifiers(expr: str, allowed_identifiers: Set[str]) -> List[str]:
    """不在聚合函数内的列引用（聚合查询中无法编译）"""
    bare: List[str] = []
    parse_expression(expr, allowed_identifiers, bare=bare)
    return bare
