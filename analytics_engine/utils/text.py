"""文本归一化与字符串相似度"""

import re
import unicodedata


def strip_accents(value: str) -> str:
    """去除重音符号（São → Sao）"""
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_text(value: str) -> str:
    """
    语义匹配用归一化

    小写、去首尾空白、下划线/连字符转空格、合并空白、去重音
    """
    text = strip_accents(str(value)).lower().strip()
    text = re.sub(r"[_\-]+", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def normalize_column_name(name: str) -> str:
    """列名归一化（snake_case 形式）"""
    text = strip_accents(str(name)).lower().strip()
    text = re.sub(r"[^\w]+", "_", text)
    return text.strip("_")


def levenshtein(a: str, b: str) -> int:
    """编辑距离"""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + cost
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """归一化相似度 1 - distance / max_len"""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest
