"""测试公共夹具"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from analytics_engine.core.config import AnalyticsConfig
from analytics_engine.engines.datacard_builder import build_datacard
from analytics_engine.engines.dataset_loader import DatasetLoader
from analytics_engine.engines.duckdb_store import DuckDBStore
from analytics_engine.models.datacard import DataCard, DatasetSample

REGIONS = ["Norte", "Sul", "Leste", "Oeste"]
PRODUCTS = [f"P{i:02d}" for i in range(15)]


def sales_records(n: int = 40) -> List[Dict[str, Any]]:
    """
    销售样例数据

    region 4 个取值，product 15 个取值，revenue = 100 + 10 * i（全部不同）
    """
    return [
        {
            "region": REGIONS[i % 4],
            "product": PRODUCTS[i % 15],
            "revenue": 100.0 + i * 10,
            "discount": float(i % 7),
            "quantity": i % 5 + 1,
            "date": f"2024-01-{i % 28 + 1:02d}",
        }
        for i in range(n)
    ]


def make_datacard(
    records: List[Dict[str, Any]],
    dataset_id: str = "ds_test",
    column_types: Optional[Dict[str, str]] = None
) -> DataCard:
    columns: List[str] = []
    for record in records:
        for key in record:
            if key not in columns:
                columns.append(key)
    sample = DatasetSample(
        columns=columns,
        rows=[[r.get(c) for c in columns] for r in records],
        total_rows=len(records),
        column_types=column_types or {}
    )
    return build_datacard(dataset_id, sample)


class CountingPort:
    """记录调用次数的 SQL 端口"""

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, error: Optional[Exception] = None, delay: float = 0.0):
        self.rows = rows if rows is not None else [{"region": "Norte", "total": 10.0}]
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def execute_secure_sql(self, sql: str, dataset_id: str, params: List[Any]) -> List[Dict[str, Any]]:
        self.calls.append({"sql": sql, "dataset_id": dataset_id, "params": params})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return [dict(r) for r in self.rows]


class FakeLLM:
    """返回固定文本的 LLM 端口"""

    def __init__(self, text: str):
        self.text = text
        self.prompts: List[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.text


@pytest.fixture
def config():
    return AnalyticsConfig()


@pytest.fixture
def store():
    store = DuckDBStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def empty_store():
    """不含参考数据的存储"""
    store = DuckDBStore(":memory:", seed=False)
    yield store
    store.close()


@pytest.fixture
def sales_datacard():
    return make_datacard(sales_records())


async def load_sales(store: DuckDBStore, n: int = 40, dataset_id: str = "ds_sales") -> str:
    info = await DatasetLoader(store).load_records(sales_records(n), "sales", dataset_id=dataset_id)
    return info.dataset_id
