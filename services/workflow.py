"""
工作流协调中心 (Workflow Manager)
系统的 Facade 层：组装编排器，并把外部请求分发至具体的处理方法。
"""
from __future__ import annotations
import logging
from typing import Optional

from config.loader import load_config
from core.schemas import AIConfig, ProjectSpec
from infra.storage.sql_db import ObjectStore
from services.stage_orchestrator import StageOrchestrator

logger = logging.getLogger(__name__)

STEPS = ("create_project", "execute_stage", "project_status", "list_projects", "project_notations")


def build_orchestrator(config: Optional[dict] = None, database_url: Optional[str] = None, **kwargs) -> StageOrchestrator:
    """
    按配置组装编排器。

    Args:
        config: 全局配置，None 时读取 config.yaml 与 user_config.yaml
        database_url: 覆盖 storage.database_url
        kwargs: 透传给 StageOrchestrator (provider_factory、cache、mentor)
    """
    config = config if config is not None else load_config()
    url = database_url or config.get("storage", {}).get("database_url", "sqlite:///data/progressive.db")
    logger.info(f"初始化编排器，数据库: {url.split('@')[-1]}")
    return StageOrchestrator(ObjectStore(url), config, **kwargs)


def run_step(step_name: str, orchestrator: StageOrchestrator, payload: Optional[dict] = None):
    """
    业务逻辑统一入口点。

    Args:
        step_name: 步骤名称 (见 STEPS)
        orchestrator: 编排器实例
        payload: 请求数据
    """
    payload = payload or {}
    logger.info(f"路由请求: {step_name}")

    if step_name == "create_project":
        spec = ProjectSpec(
            project_name=payload.get("project_name"),
            content_type=payload.get("content_type"),
            topic=payload.get("topic"),
            target_audience=payload.get("target_audience"),
            genre=payload.get("genre"),
            metadata=payload.get("metadata") or {},
        )
        return orchestrator.create_project(spec)
    if step_name == "execute_stage":
        ai_config = AIConfig.from_dict(payload.get("ai_config"))
        return orchestrator.execute_stage(payload.get("project_id"), payload.get("stage_number"), ai_config)
    if step_name == "project_status":
        return orchestrator.get_status(payload["project_id"])
    if step_name == "list_projects":
        return orchestrator.list_projects(
            status=payload.get("status"),
            content_type=payload.get("content_type"),
            limit=payload.get("limit", 50),
            offset=payload.get("offset", 0),
        )
    if step_name == "project_notations":
        return orchestrator.get_notations(payload["project_id"], expand=bool(payload.get("expand")))

    raise ValueError(f"未知的步骤名称: {step_name}")
