"""流水线阶段追踪"""

import time
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List

from pydantic import BaseModel


class StageLog(BaseModel):
    """单阶段执行日志"""
    stage: str
    latency_ms: float = 0
    error: str | None = None
    timestamp: datetime


class PipelineTrace:
    """追踪上下文"""

    def __init__(self):
        self.stages: List[StageLog] = []
        self.start_time = time.perf_counter()
        self.completed_stage: str = "none"

    def add_stage(self, stage: StageLog):
        """添加阶段记录"""
        self.stages.append(stage)
        if stage.error is None:
            self.completed_stage = stage.stage

    def record(self, name: str, started: float, error: str | None = None):
        """按起始时间记录一个阶段"""
        self.add_stage(StageLog(
            stage=name,
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
            error=error,
            timestamp=datetime.now()
        ))

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """计时一个阶段；异常时记录错误并继续抛出"""
        started = time.perf_counter()
        error = None
        try:
            yield
        except Exception as e:
            error = str(e)
            raise
        finally:
            self.record(name, started, error)

    def timings(self) -> Dict[str, float]:
        return {s.stage: s.latency_ms for s in self.stages}

    def total_ms(self) -> float:
        return round((time.perf_counter() - self.start_time) * 1000, 2)
