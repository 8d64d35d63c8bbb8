"""FastAPI 主应用"""

import asyncio
import shutil
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional

from fastapi import APIRouter, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from analytics_engine.core.config import AnalyticsConfig, get_analytics_config, settings
from analytics_engine.core.constants import SUPPORTED_FILE_EXTENSIONS
from analytics_engine.core.errors import AnalyticsError, ErrorCode
from analytics_engine.engines.dataset_loader import DatasetLoader
from analytics_engine.engines.duckdb_store import DuckDBStore
from analytics_engine.engines.orchestrator import AnalyticsOrchestrator, build_orchestrator
from analytics_engine.engines.policies_engine import get_policy_recommendations
from analytics_engine.engines.spec_planner import LangChainLLMPort, LLMPort
from analytics_engine.models.datacard import DataCard, DatasetInfo
from analytics_engine.models.lineage import LineageTrace
from analytics_engine.models.response import (
    AnalysisRequest,
    AnalysisResponse,
    ArtifactRequest,
    ExecuteRequest,
    LLMConfig,
    PlanRequest,
    RecordsUploadRequest,
    UploadResponse,
)
from analytics_engine.utils.logger import log

APP_NAME = "Analytics Engine"
APP_VERSION = "0.1.0"

ERROR_STATUS = {
    ErrorCode.SCHEMA_DETECTION_FAILURE: 404,
}

LLMFactory = Callable[[Optional[LLMConfig]], LLMPort]

router = APIRouter()


def create_app(
    store: Optional[DuckDBStore] = None,
    config: Optional[AnalyticsConfig] = None,
    llm_factory: Optional[LLMFactory] = None
) -> FastAPI:
    """
    创建应用

    Args:
        store: 存储客户端（默认按 settings.duckdb_path 打开）
        config: 分析配置（默认按 ANALYTICS_ENV 选择 profile）
        llm_factory: LLM 端口工厂（默认 LangChain）
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await get_orchestrator(app)
        yield
        orchestrator = app.state.orchestrator
        if orchestrator is not None:
            await orchestrator.drain()
        if app.state.store is not None:
            app.state.store.close()
        log.info("服务已停止")

    app = FastAPI(
        title=APP_NAME,
        description="确定性数据分析执行引擎：画像 → 语义 → 模板/兜底 → 编译执行 → 血缘",
        version=APP_VERSION,
        debug=settings.debug,
        lifespan=lifespan
    )

    # CORS 配置
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.store = store
    app.state.config = config or get_analytics_config()
    app.state.llm_factory = llm_factory or LangChainLLMPort
    app.state.orchestrator = None
    app.state.orchestrator_lock = asyncio.Lock()

    app.add_exception_handler(AnalyticsError, analytics_error_handler)
    app.include_router(router)
    return app


def get_store(app: FastAPI) -> DuckDBStore:
    """按需打开存储"""
    if app.state.store is None:
        app.state.store = DuckDBStore(settings.duckdb_path)
    return app.state.store


async def get_orchestrator(app: FastAPI) -> AnalyticsOrchestrator:
    """按需组装流水线（仅一次）"""
    if app.state.orchestrator is None:
        async with app.state.orchestrator_lock:
            if app.state.orchestrator is None:
                app.state.orchestrator = await build_orchestrator(get_store(app), app.state.config)
    return app.state.orchestrator


async def analytics_error_handler(request: Request, exc: AnalyticsError) -> JSONResponse:
    log.warning(f"请求失败 [{exc.code}]: {exc.message}")
    return JSONResponse(status_code=ERROR_STATUS.get(exc.code, 400), content=exc.to_dict())


@router.get("/")
async def root():
    """根路径"""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "status": "running"
    }


@router.get("/health")
async def health(request: Request):
    """健康检查"""
    return {
        "status": "healthy",
        "flags_active": request.app.state.config.active_flags()
    }


@router.post("/upload", response_model=UploadResponse)
async def upload_file(request: Request, file: UploadFile = File(...)):
    """
    上传文件并入库

    支持格式：Excel (.xlsx, .xls), CSV (.csv)
    """
    log.info(f"接收文件上传: {file.filename}")

    # 检查文件类型
    file_path = Path(file.filename or "")
    if file_path.suffix.lower() not in SUPPORTED_FILE_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail=f"不支持的文件类型: {file_path.suffix}"
        )

    # 检查文件大小
    file.file.seek(0, 2)
    size = file.file.tell()
    file.file.seek(0)

    max_size = settings.max_upload_size_mb * 1024 * 1024
    if size > max_size:
        raise HTTPException(
            status_code=400,
            detail=f"文件大小超过限制: {size} > {max_size}"
        )

    save_path = settings.upload_dir / f"{uuid.uuid4().hex[:8]}_{file_path.name}"
    try:
        with open(save_path, "wb") as buffer:
            shutil.copyfileobj(file.file, buffer)
        log.info(f"文件保存成功: {save_path}")

        info = await DatasetLoader(get_store(request.app)).load_file(save_path, name=file_path.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log.error(f"文件上传失败: {e}")
        raise HTTPException(status_code=500, detail=f"文件入库失败: {e}")

    return UploadResponse(
        dataset_id=info.dataset_id,
        filename=file_path.name,
        size_bytes=size,
        total_rows=info.total_rows,
        columns=info.columns,
        column_types=info.column_types
    )


@router.post("/datasets", response_model=DatasetInfo)
async def create_dataset(body: RecordsUploadRequest, request: Request):
    """以 JSON 记录创建数据集"""
    try:
        return await DatasetLoader(get_store(request.app)).load_records(body.records, body.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/datasets")
async def list_datasets(request: Request):
    datasets = await get_store(request.app).list_datasets()
    return {"datasets": datasets}


@router.delete("/datasets/{dataset_id}")
async def delete_dataset(dataset_id: str, request: Request):
    """删除数据集并清理其缓存"""
    store: DuckDBStore = get_store(request.app)
    if await store.get_dataset(dataset_id) is None:
        raise HTTPException(status_code=404, detail=f"数据集不存在: {dataset_id}")
    orchestrator = await get_orchestrator(request.app)
    await store.delete_dataset(dataset_id)
    removed = await orchestrator.executor.cache.invalidate_cache(dataset_id) if orchestrator.executor.cache else 0
    return {"dataset_id": dataset_id, "deleted": True, "cache_entries_removed": removed}


@router.get("/datasets/{dataset_id}/datacard", response_model=DataCard)
async def get_datacard(dataset_id: str, request: Request, semantic: bool = True):
    """
    数据集画像

    Args:
        semantic: 是否附带语义映射
    """
    orchestrator = await get_orchestrator(request.app)
    datacard = await orchestrator.build_datacard(dataset_id)
    if semantic and orchestrator.config.enable_semantic_mapping:
        datacard = orchestrator.semantic_layer.resolve_datacard(datacard)
    return datacard


@router.get("/datasets/{dataset_id}/suggestions")
async def get_suggestions(dataset_id: str, request: Request):
    """可用指标、模板匹配情况与兜底策略"""
    orchestrator = await get_orchestrator(request.app)
    datacard = orchestrator.semantic_layer.resolve_datacard(await orchestrator.build_datacard(dataset_id))
    match = orchestrator.template_matcher.match(datacard, orchestrator.config.template_match_threshold)
    return {
        "dataset_id": dataset_id,
        "metrics": orchestrator.metrics.suggest_metrics(datacard),
        "template": {
            "matched": match.matched,
            "best_template_id": match.best_template_id,
            "score": round(match.score, 4),
            "missing_columns": match.missing_columns,
        },
        "fallback_strategy": orchestrator.fallback.suggest_strategy(datacard),
        "fallback_overview": orchestrator.fallback.strategy_overview(datacard),
        "policy_recommendations": get_policy_recommendations(datacard, orchestrator.config.policies),
    }


@router.post("/analyze", response_model=AnalysisResponse)
async def analyze(body: AnalysisRequest, request: Request):
    """自动分析（模板或兜底策略）"""
    log.info(f"收到分析请求: dataset={body.dataset_id}")
    orchestrator = await get_orchestrator(request.app)
    return await orchestrator.analyze(body.dataset_id, body.question)


@router.post("/execute", response_model=AnalysisResponse)
async def execute(body: ExecuteRequest, request: Request):
    """执行调用方提供的 ExecSpec"""
    log.info(f"收到执行请求: dataset={body.dataset_id}")
    orchestrator = await get_orchestrator(request.app)
    return await orchestrator.execute_spec(body.dataset_id, body.exec_spec, use_cache=body.use_cache)


@router.post("/plan", response_model=AnalysisResponse)
async def plan(body: PlanRequest, request: Request):
    """
    自然语言问题 → ExecSpec → 执行

    Args:
        question: 用户问题
        dataset_id: 数据集ID
        llm_config: LLM 配置（可选，用于自定义 API Key 和 Model）
    """
    log.info(f"收到规划请求: {body.question}")
    if body.llm_config:
        log.info(f"使用自定义 LLM 配置: provider={body.llm_config.provider}, model={body.llm_config.model}")

    orchestrator = await get_orchestrator(request.app)
    factory: LLMFactory = request.app.state.llm_factory
    return await orchestrator.plan_and_execute(
        body.dataset_id,
        body.question,
        lambda: factory(body.llm_config)
    )


@router.get("/lineage/{exec_id}", response_model=LineageTrace)
async def get_lineage(exec_id: str, request: Request):
    orchestrator = await get_orchestrator(request.app)
    trace = await orchestrator.lineage.get_lineage_trace(exec_id)
    if trace is None:
        raise HTTPException(status_code=404, detail=f"执行记录不存在: {exec_id}")
    return trace


@router.get("/lineage/{exec_id}/artifacts")
async def get_artifacts(exec_id: str, request: Request):
    orchestrator = await get_orchestrator(request.app)
    artifacts = await orchestrator.lineage.get_artifacts(exec_id)
    return {"exec_id": exec_id, "artifacts": artifacts}


@router.post("/lineage/{exec_id}/artifacts")
async def add_artifact(exec_id: str, artifact: ArtifactRequest, request: Request):
    """登记由外部渲染器生成的产物"""
    orchestrator = await get_orchestrator(request.app)
    artifact_id = await orchestrator.lineage.log_artifact(
        exec_id, artifact.artifact_type, artifact.payload, artifact.metadata
    )
    if artifact_id is None:
        raise HTTPException(status_code=500, detail="产物写入失败")
    return {"exec_id": exec_id, "artifact_id": artifact_id}


@router.get("/performance/stats")
async def performance_stats(request: Request, days: int = 7):
    orchestrator = await get_orchestrator(request.app)
    return await orchestrator.lineage.get_performance_stats(days)


@router.post("/cache/cleanup")
async def cleanup_cache(request: Request):
    """清理过期缓存"""
    orchestrator = await get_orchestrator(request.app)
    if orchestrator.executor.cache is None:
        return {"removed": 0}
    return {"removed": await orchestrator.executor.cache.clean_expired_cache()}


app = create_app()
