"""
项目核心管理模块 (Core Project Manager)
负责项目的创建、查询和进度统计。阶段推进由编排器负责。
"""
import logging

from core.exceptions import ProjectNotFoundError, ProjectValidationError
from core.schemas import ProjectSpec, CONTENT_TYPES

logger = logging.getLogger(__name__)

STYLE_GUIDE_KEYS = ("tone", "pov", "tense", "vocabulary_level", "pacing")

class ProjectManager:
    """
    统一管理项目的生命周期。
    """

    @staticmethod
    def validate_spec(spec: ProjectSpec):
        """
        校验创建项目的请求。

        Raises:
            ProjectValidationError: 缺少必填字段或内容类型不受支持。
        """
        missing = [name for name in ("project_name", "content_type", "topic") if not str(getattr(spec, name) or "").strip()]
        if missing:
            raise ProjectValidationError(f"Missing required fields: {', '.join(missing)}")
        if spec.content_type not in CONTENT_TYPES:
            raise ProjectValidationError(
                f"Unsupported content_type '{spec.content_type}'. Must be one of: {', '.join(CONTENT_TYPES)}")
        if spec.metadata is not None and not isinstance(spec.metadata, dict):
            raise ProjectValidationError("metadata must be an object")

    @staticmethod
    def create_project(store, spec: ProjectSpec) -> dict:
        ProjectManager.validate_spec(spec)
        metadata = dict(spec.metadata or {})
        unknown_style = [k for k in metadata if k not in STYLE_GUIDE_KEYS]
        if unknown_style:
            logger.debug(f"项目元数据包含风格指南以外的键: {unknown_style}")
        project = store.create_project(
            project_name=spec.project_name.strip(),
            content_type=spec.content_type,
            topic=spec.topic.strip(),
            target_audience=spec.target_audience,
            genre=spec.genre,
            metadata=metadata,
        )
        logger.info(f"项目 '{project['project_name']}' 已创建 (id={project['id']}, 类型={project['content_type']})。")
        return project

    @staticmethod
    def get_project_status(store, project_id: int) -> dict:
        """项目、全部阶段记录以及统计数据。"""
        project = store.get_project(project_id)
        if not project:
            raise ProjectNotFoundError(project_id)
        return {
            "project": project,
            "stages": store.get_stages(project_id),
            "statistics": store.get_statistics(project_id),
        }

    @staticmethod
    def list_projects(store, status: str = None, content_type: str = None, limit: int = 50, offset: int = 0) -> dict:
        limit = max(1, min(int(limit), 200))
        offset = max(0, int(offset))
        projects, total = store.list_projects(status=status, content_type=content_type, limit=limit, offset=offset)
        return {"projects": projects, "total": total, "limit": limit, "offset": offset}
