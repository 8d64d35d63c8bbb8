"""Dataset Loader - 文件/记录 → 数据集行存储"""

import math
import uuid
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from analytics_engine.core.constants import DTYPE_MAPPING, MAX_COLUMNS, SUPPORTED_FILE_EXTENSIONS
from analytics_engine.engines.duckdb_store import DuckDBStore
from analytics_engine.models.datacard import DatasetInfo
from analytics_engine.utils.logger import log


def new_dataset_id() -> str:
    return f"ds_{uuid.uuid4().hex[:12]}"


def read_file(file_path: Path, sheet: Optional[str] = None, header_row: int = 1) -> Tuple[pd.DataFrame, str]:
    """
    读取 Excel / CSV

    Args:
        file_path: 文件路径
        sheet: Excel Sheet 名称
        header_row: 表头行号（从1开始）

    Returns:
        (DataFrame, source_type)
    """
    suffix = file_path.suffix.lower()
    if suffix not in SUPPORTED_FILE_EXTENSIONS:
        raise ValueError(f"不支持的文件类型: {file_path.suffix}")

    try:
        if suffix in [".xlsx", ".xls"]:
            df = pd.read_excel(file_path, sheet_name=sheet or 0, header=header_row - 1)
            source_type = "excel"
        else:
            df = pd.read_csv(file_path, header=header_row - 1)
            source_type = "csv"
    except Exception as e:
        log.error(f"读取文件失败: {e}")
        raise

    log.info(f"文件读取成功: {file_path.name} ({len(df)} 行, {len(df.columns)} 列)")
    return df, source_type


def infer_column_types(df: pd.DataFrame) -> Dict[str, str]:
    """
    pandas dtype → 列类型

    object 列不声明类型，由 DataCard 按取值推断
    """
    column_types: Dict[str, str] = {}
    for col in df.columns:
        dtype = str(df[col].dtype)
        if dtype.startswith("datetime64"):
            column_types[str(col)] = "date"
        elif dtype != "object" and dtype in DTYPE_MAPPING:
            column_types[str(col)] = DTYPE_MAPPING[dtype]
    return column_types


def _json_value(value: Any) -> Any:
    """单元格取值 → JSON 可序列化的取值（日期统一为 ISO 字符串）"""
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is pd.NaT or value is pd.NA:
        return None
    if isinstance(value, pd.Timestamp):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "item"):
        # numpy 标量
        return value.item()
    return value


def dataframe_to_records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    columns = [str(c) for c in df.columns]
    return [
        {col: _json_value(v) for col, v in zip(columns, row)}
        for row in df.itertuples(index=False, name=None)
    ]


class DatasetLoader:
    """数据集入库"""

    def __init__(self, store: DuckDBStore):
        self.store = store

    async def load_dataframe(
        self,
        df: pd.DataFrame,
        name: str,
        source_type: str = "records",
        dataset_id: Optional[str] = None
    ) -> DatasetInfo:
        """DataFrame 入库"""
        if len(df.columns) > MAX_COLUMNS:
            raise ValueError(f"列数超过限制: {len(df.columns)} > {MAX_COLUMNS}")

        info = DatasetInfo(
            dataset_id=dataset_id or new_dataset_id(),
            name=name,
            source_type=source_type,
            columns=[str(c) for c in df.columns],
            column_types=infer_column_types(df),
            total_rows=len(df)
        )
        await self.store.save_dataset(info, dataframe_to_records(df))
        log.info(f"数据集 {info.dataset_id} 创建完成: {name}")
        return info

    async def load_file(
        self,
        file_path: Path,
        name: Optional[str] = None,
        sheet: Optional[str] = None,
        header_row: int = 1
    ) -> DatasetInfo:
        df, source_type = read_file(file_path, sheet=sheet, header_row=header_row)
        return await self.load_dataframe(df, name or file_path.name, source_type=source_type)

    async def load_records(
        self,
        records: List[Dict[str, Any]],
        name: str,
        dataset_id: Optional[str] = None
    ) -> DatasetInfo:
        """
        记录列表入库（列顺序取首次出现顺序）
        """
        columns: List[str] = []
        for record in records:
            for key in record:
                if key not in columns:
                    columns.append(key)
        df = pd.DataFrame(records, columns=columns)
        return await self.load_dataframe(df, name, source_type="records", dataset_id=dataset_id)
