"""
关系数据库管理器 (SQL Store)
负责项目、阶段、实体、时间线、结构单元、记号以及评审记录的持久化。
"""
import os
import json
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional, Iterable

from sqlalchemy import create_engine, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from core.models import (
    Base, ContentProject, ContentStage, ContentObject, TimelineEvent,
    StructuralUnit, GranularUnit, UAOLNotation, NotationEvolution, MentorReportRecord, CorrectionHistory
)
from core.exceptions import (
    PersistenceError, ProjectNotFoundError, StageAlreadyCompletedError, StageInProgressError
)

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50


@lru_cache(maxsize=5)
def get_engine(database_url: str):
    """
    获取指定数据库的引擎 (带缓存)。
    """
    if database_url.startswith("sqlite"):
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # 内存库：所有会话共享同一个连接
            engine = create_engine(database_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
        else:
            _ensure_sqlite_dir(database_url)
            engine = create_engine(database_url, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(database_url, pool_pre_ping=True)

    # 自动建表
    Base.metadata.create_all(engine)
    return engine


def _ensure_sqlite_dir(database_url: str):
    path = database_url.replace("sqlite:///", "", 1)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)


def get_session(database_url: str) -> Session:
    """获取一个新的数据库会话"""
    engine = get_engine(database_url)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    return SessionLocal()


def _dumps(value) -> Optional[str]:
    return json.dumps(value, ensure_ascii=False) if value is not None else None


def _is_stale(stage: ContentStage, stale_after_seconds: Optional[int]) -> bool:
    """in_progress 记录是否已超时 (SQLite 读回的时间不带时区，按 UTC 处理)"""
    if not stale_after_seconds:
        return False
    started = stage.started_at or stage.updated_at or stage.created_at
    if started is None:
        return True
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - started).total_seconds() > stale_after_seconds


class ObjectStore:
    """
    对象存储 (ObjectStore)
    每个方法使用独立会话：成功提交，失败回滚并抛出 PersistenceError。
    """

    def __init__(self, database_url: str):
        self.database_url = database_url

    def _session(self) -> Session:
        return get_session(self.database_url)

    # --- 项目 ---

    def create_project(self, project_name: str, content_type: str, topic: str,
                       target_audience: str = None, genre: str = None, metadata: dict = None) -> dict:
        session = self._session()
        try:
            project = ContentProject(
                project_name=project_name,
                content_type=content_type,
                topic=topic,
                target_audience=target_audience,
                genre=genre,
                project_metadata=metadata or {},
                current_stage=0,
                total_stages=4,
                status='pending',
            )
            session.add(project)
            session.commit()
            logger.info(f"已创建项目 {project.id}: {project_name} ({content_type})")
            return project.to_dict()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"创建项目失败 {project_name}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to create project: {e}") from e
        finally:
            session.close()

    def get_project(self, project_id: int) -> Optional[dict]:
        session = self._session()
        try:
            project = session.get(ContentProject, project_id)
            return project.to_dict() if project else None
        finally:
            session.close()

    def list_projects(self, status: str = None, content_type: str = None,
                      limit: int = DEFAULT_LIST_LIMIT, offset: int = 0) -> tuple:
        """返回 (项目列表, 总数)，按创建时间倒序。"""
        session = self._session()
        try:
            query = session.query(ContentProject)
            if status:
                query = query.filter(ContentProject.status == status)
            if content_type:
                query = query.filter(ContentProject.content_type == content_type)
            total = query.count()
            rows = (query.order_by(ContentProject.created_at.desc(), ContentProject.id.desc())
                    .offset(offset).limit(limit).all())
            return [p.to_dict() for p in rows], total
        finally:
            session.close()

    def advance_project(self, project_id: int, stage_number: int):
        """阶段完成后推进项目进度；第 4 阶段完成时项目完成。"""
        session = self._session()
        try:
            project = session.get(ContentProject, project_id)
            if not project:
                raise ProjectNotFoundError(project_id)
            project.current_stage = max(project.current_stage or 0, stage_number)
            if stage_number >= project.total_stages:
                project.status = 'completed'
                project.completed_at = datetime.now(timezone.utc)
            else:
                project.status = 'in_progress'
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update project {project_id}: {e}") from e
        finally:
            session.close()

    def set_project_status(self, project_id: int, status: str):
        session = self._session()
        try:
            project = session.get(ContentProject, project_id)
            if project and project.status != 'completed':
                project.status = status
                session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to update project {project_id}: {e}") from e
        finally:
            session.close()

    # --- 阶段 ---

    def get_stage(self, project_id: int, stage_number: int) -> Optional[dict]:
        session = self._session()
        try:
            stage = session.query(ContentStage).filter_by(project_id=project_id, stage_number=stage_number).first()
            return stage.to_dict() if stage else None
        finally:
            session.close()

    def get_stages(self, project_id: int) -> list:
        session = self._session()
        try:
            stages = session.query(ContentStage).filter_by(project_id=project_id).order_by(ContentStage.stage_number).all()
            return [s.to_dict() for s in stages]
        finally:
            session.close()

    def begin_stage(self, project_id: int, stage_number: int, stage_name: str, input_data=None,
                    stale_after_seconds: Optional[int] = None) -> dict:
        """
        写入一条 in_progress 的阶段记录，并在同一事务中把项目状态置为 in_progress。

        失败过的阶段复用原记录，并先清除上次尝试写入的实体与记号。
        已完成的阶段直接拒绝；正在执行的阶段也拒绝，除非它的 started_at
        早于 stale_after_seconds 秒之前 (进程崩溃遗留的记录)，此时按失败处理并复用。
        """
        session = self._session()
        try:
            project = session.get(ContentProject, project_id)
            if not project:
                raise ProjectNotFoundError(project_id)
            stage = session.query(ContentStage).filter_by(project_id=project_id, stage_number=stage_number).first()
            if stage is not None:
                if stage.status == 'completed':
                    raise StageAlreadyCompletedError(stage_number)
                if stage.status == 'in_progress':
                    if not _is_stale(stage, stale_after_seconds):
                        raise StageInProgressError(project_id, stage_number)
                    logger.warning(f"项目 {project_id} 阶段 {stage_number} 的 in_progress 记录已超过 "
                                   f"{stale_after_seconds} 秒未完成，按失败处理后重新执行")
                purged = self._purge_stage_rows(session, stage)
                if purged:
                    logger.info(f"重试阶段 {stage_number}: 已清除上次失败写入的 {purged} 行")
                stage.status = 'in_progress'
                stage.error = None
                stage.output_data = None
                stage.validation_score = None
                stage.input_data = _dumps(input_data)
                stage.started_at = datetime.now(timezone.utc)
            else:
                stage = ContentStage(
                    project_id=project_id,
                    stage_number=stage_number,
                    stage_name=stage_name,
                    status='in_progress',
                    input_data=_dumps(input_data),
                    started_at=datetime.now(timezone.utc),
                )
                session.add(stage)
            if project.status != 'completed':
                project.status = 'in_progress'
            session.commit()
            return stage.to_dict()
        except IntegrityError as e:
            # 另一个请求已经插入了同一阶段
            session.rollback()
            raise StageInProgressError(project_id, stage_number) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to create stage record: {e}") from e
        finally:
            session.close()

    def _purge_stage_rows(self, session: Session, stage: ContentStage) -> int:
        count = 0
        # 先删叶子，再删结构树
        for model in (GranularUnit, TimelineEvent, ContentObject, UAOLNotation):
            count += session.query(model).filter(model.stage_id == stage.id).delete(synchronize_session=False)
        count += (session.query(NotationEvolution)
                  .filter_by(project_id=stage.project_id, stage_number=stage.stage_number)
                  .delete(synchronize_session=False))
        units = session.query(StructuralUnit).filter(StructuralUnit.stage_id == stage.id).all()
        for unit in sorted(units, key=lambda u: u.unit_level, reverse=True):
            session.delete(unit)
            session.flush()
            count += 1
        return count

    def complete_stage(self, stage_id: int, output, validation_score: float, processing_time_ms: int,
                       ai_provider: str = None, ai_model: str = None, tokens_used: int = 0,
                       notations_count: int = 0) -> dict:
        session = self._session()
        try:
            stage = session.get(ContentStage, stage_id)
            stage.status = 'completed'
            stage.output_data = _dumps(output)
            stage.validation_score = validation_score
            stage.processing_time_ms = processing_time_ms
            stage.ai_provider = ai_provider
            stage.ai_model = ai_model
            stage.tokens_used = tokens_used
            stage.notations_count = notations_count
            stage.completed_at = datetime.now(timezone.utc)
            session.commit()
            return stage.to_dict()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to finalize stage {stage_id}: {e}") from e
        finally:
            session.close()

    def fail_stage(self, stage_id: int, error: str, processing_time_ms: int = None):
        session = self._session()
        try:
            stage = session.get(ContentStage, stage_id)
            if stage is None:
                return
            stage.status = 'failed'
            stage.error = error
            stage.processing_time_ms = processing_time_ms
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"标记阶段 {stage_id} 失败状态时出错: {e}", exc_info=True)
            raise PersistenceError(f"Failed to mark stage {stage_id} as failed: {e}") from e
        finally:
            session.close()

    # --- 实体与时间线 ---

    def save_objects(self, project_id: int, stage_id: int, objects: Iterable) -> int:
        """
        保存实体。code 已存在 (项目内或本批次内) 或无法确定 code 的实体跳过。
        """
        session = self._session()
        try:
            existing = {r[0] for r in session.query(ContentObject.object_code).filter_by(project_id=project_id).all()}
            saved = 0
            for obj in objects:
                if not obj.code:
                    logger.warning(f"实体缺少 code 和名称，已跳过: {obj.type}")
                    continue
                if obj.code in existing:
                    logger.warning(f"实体 code 重复，已跳过: {obj.code}")
                    continue
                existing.add(obj.code)
                session.add(ContentObject(
                    project_id=project_id,
                    stage_id=stage_id,
                    object_type=obj.type,
                    object_code=obj.code,
                    name=obj.name,
                    description=obj.description,
                    extended_info=obj.extended_info,
                    relationships=obj.relationships,
                    object_metadata=obj.metadata,
                ))
                saved += 1
            session.commit()
            return saved
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"保存实体失败 (项目 {project_id}): {e}", exc_info=True)
            raise PersistenceError(f"Failed to save objects: {e}") from e
        finally:
            session.close()

    def save_timeline(self, project_id: int, stage_id: int, events: Iterable) -> int:
        session = self._session()
        try:
            offset = session.query(func.max(TimelineEvent.sequence_order)).filter_by(project_id=project_id).scalar() or 0
            saved = 0
            for i, event in enumerate(events):
                session.add(TimelineEvent(
                    project_id=project_id,
                    stage_id=stage_id,
                    sequence_order=offset + i + 1,
                    time_marker=event.time_marker,
                    event_description=event.description,
                    event_type=event.type,
                    involved_objects=event.involved_objects,
                    impact_level=event.impact_level,
                ))
                saved += 1
            session.commit()
            return saved
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"保存时间线失败 (项目 {project_id}): {e}", exc_info=True)
            raise PersistenceError(f"Failed to save timeline: {e}") from e
        finally:
            session.close()

    def get_objects(self, project_id: int, object_type: str = None) -> list:
        session = self._session()
        try:
            query = session.query(ContentObject).filter_by(project_id=project_id)
            if object_type:
                query = query.filter_by(object_type=object_type)
            return [o.to_dict() for o in query.order_by(ContentObject.id).all()]
        finally:
            session.close()

    def get_timeline(self, project_id: int) -> list:
        session = self._session()
        try:
            events = (session.query(TimelineEvent).filter_by(project_id=project_id)
                      .order_by(TimelineEvent.sequence_order, TimelineEvent.id).all())
            return [e.to_dict() for e in events]
        finally:
            session.close()

    # --- 结构单元 ---

    def save_structural_units(self, project_id: int, stage_id: int, units: Iterable) -> int:
        """递归保存结构树，子单元的 unit_level 为父级 + 1。"""
        session = self._session()
        try:
            existing = {r[0] for r in session.query(StructuralUnit.unit_code).filter_by(project_id=project_id).all()}
            counter = {"saved": 0, "auto": 0}

            def _save(unit, parent: Optional[StructuralUnit], level: int, path: str):
                code = unit.code
                if not code:
                    counter["auto"] += 1
                    code = path
                if code in existing:
                    logger.warning(f"结构单元 code 重复，已跳过该子树: {code}")
                    return
                existing.add(code)
                row = StructuralUnit(
                    project_id=project_id,
                    stage_id=stage_id,
                    parent_unit_id=parent.id if parent else None,
                    unit_level=level,
                    unit_type=unit.type,
                    unit_code=code,
                    title=unit.title,
                    description=unit.description,
                    featured_objects=unit.featured_objects,
                    target_size=unit.target_size,
                    size_unit=unit.size_unit,
                    unit_metadata=unit.metadata,
                )
                session.add(row)
                session.flush() # 需要 row.id 作为子单元的 parent_unit_id
                counter["saved"] += 1
                for i, child in enumerate(unit.children, start=1):
                    _save(child, row, level + 1, f"{code}.{i}")

            for i, unit in enumerate(units, start=1):
                _save(unit, None, 1, str(i))
            session.commit()
            if counter["auto"]:
                logger.info(f"{counter['auto']} 个结构单元缺少 code，已按层级路径生成")
            return counter["saved"]
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"保存结构单元失败 (项目 {project_id}): {e}", exc_info=True)
            raise PersistenceError(f"Failed to save structural units: {e}") from e
        finally:
            session.close()

    def get_structural_units(self, project_id: int) -> list:
        session = self._session()
        try:
            units = (session.query(StructuralUnit).filter_by(project_id=project_id)
                     .order_by(StructuralUnit.unit_level, StructuralUnit.id).all())
            return [u.to_dict() for u in units]
        finally:
            session.close()

    # --- 细粒度单元 ---

    def save_granular_units(self, project_id: int, stage_id: int, units: Iterable) -> tuple:
        """
        保存细粒度单元，按 parent_code 匹配结构单元的 unit_code。
        找不到父单元的条目直接跳过，不影响其余条目。

        Returns:
            (saved, skipped)
        """
        session = self._session()
        try:
            parents = {u.unit_code: u.id for u in session.query(StructuralUnit).filter_by(project_id=project_id).all()}
            saved, skipped = 0, 0
            for unit in units:
                parent_id = parents.get(unit.parent_code) if unit.parent_code else None
                if parent_id is None:
                    logger.warning(f"细粒度单元 {unit.code or unit.title} 的父单元 '{unit.parent_code}' 不存在，已跳过")
                    skipped += 1
                    continue
                session.add(GranularUnit(
                    project_id=project_id,
                    structural_unit_id=parent_id,
                    stage_id=stage_id,
                    unit_number=unit.number,
                    unit_type=unit.type,
                    unit_code=unit.code,
                    title=unit.title,
                    description=unit.description,
                    estimated_size=unit.estimated_size,
                    size_unit=unit.size_unit,
                    execution_style=unit.execution_style,
                    research_needed=unit.research_needed,
                    featured_objects=unit.featured_objects,
                    progression_arc=unit.progression_arc,
                    key_elements=unit.key_elements,
                    creator_notes=unit.creator_notes,
                ))
                saved += 1
            session.commit()
            return saved, skipped
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"保存细粒度单元失败 (项目 {project_id}): {e}", exc_info=True)
            raise PersistenceError(f"Failed to save granular units: {e}") from e
        finally:
            session.close()

    def get_granular_units(self, project_id: int) -> list:
        session = self._session()
        try:
            units = session.query(GranularUnit).filter_by(project_id=project_id).order_by(GranularUnit.id).all()
            return [u.to_dict() for u in units]
        finally:
            session.close()

    # --- UAOL 记号 ---

    def replace_stage_notations(self, project_id: int, stage_id: int, stage_number: int,
                                notations: Iterable, source: str = 'rule') -> int:
        """
        用新记号替换某阶段已有的记号。

        Args:
            notations: (kind, code, notation) 或 (kind, code, notation, rich_data)
        """
        session = self._session()
        try:
            session.query(UAOLNotation).filter_by(stage_id=stage_id).delete(synchronize_session=False)
            count = 0
            for row in notations:
                kind, code, text = row[:3]
                session.add(UAOLNotation(
                    project_id=project_id,
                    stage_id=stage_id,
                    stage_number=stage_number,
                    kind=kind,
                    code=code,
                    notation=text,
                    source=source,
                    rich_data=row[3] if len(row) > 3 else None,
                ))
                count += 1
            session.commit()
            return count
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"保存记号失败 (项目 {project_id} 阶段 {stage_number}): {e}", exc_info=True)
            raise PersistenceError(f"Failed to save notations: {e}") from e
        finally:
            session.close()

    def get_notations(self, project_id: int, before_stage: int = None, completed_only: bool = True) -> list:
        """
        读取记号，按阶段号和写入顺序排列。
        completed_only 时只读取已完成阶段的记号，避免读到正在执行的阶段写入的数据。
        """
        session = self._session()
        try:
            query = session.query(UAOLNotation).filter(UAOLNotation.project_id == project_id)
            if before_stage is not None:
                query = query.filter(UAOLNotation.stage_number < before_stage)
            if completed_only:
                query = query.join(ContentStage, ContentStage.id == UAOLNotation.stage_id).filter(ContentStage.status == 'completed')
            rows = query.order_by(UAOLNotation.stage_number, UAOLNotation.id).all()
            return [n.to_dict() for n in rows]
        finally:
            session.close()

    def save_evolutions(self, project_id: int, stage_number: int, changes: Iterable, trigger: str) -> int:
        """
        追加记号演化记录。

        Args:
            changes: (kind, code, from_notation, to_notation) 四元组
        """
        session = self._session()
        try:
            count = 0
            for kind, code, before, after in changes:
                session.add(NotationEvolution(
                    project_id=project_id,
                    stage_number=stage_number,
                    kind=kind,
                    code=code,
                    from_notation=before,
                    to_notation=after,
                    trigger=trigger,
                ))
                count += 1
            session.commit()
            return count
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"保存记号演化失败 (项目 {project_id} 阶段 {stage_number}): {e}", exc_info=True)
            raise PersistenceError(f"Failed to save notation evolutions: {e}") from e
        finally:
            session.close()

    def get_evolutions(self, project_id: int, stage_number: int = None) -> list:
        session = self._session()
        try:
            query = session.query(NotationEvolution).filter_by(project_id=project_id)
            if stage_number is not None:
                query = query.filter_by(stage_number=stage_number)
            return [e.to_dict() for e in query.order_by(NotationEvolution.id).all()]
        finally:
            session.close()

    # --- 评审与修正 ---

    def save_mentor_report(self, project_id: int, report) -> int:
        session = self._session()
        try:
            data = report.to_dict()
            row = MentorReportRecord(
                project_id=project_id,
                stage_number=report.stage_number,
                validation_score=report.validation_score,
                issues=data["issues"],
                suggestions=data["suggestions"],
                corrections_applied=report.corrections_applied,
                mentor_insight=report.mentor_insight,
                continuity_check=data["continuity_check"],
            )
            session.add(row)
            session.commit()
            return row.id
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"保存评审报告失败 (项目 {project_id}): {e}", exc_info=True)
            raise PersistenceError(f"Failed to save mentor report: {e}") from e
        finally:
            session.close()

    def save_correction(self, project_id: int, stage_number: int, original, corrected,
                        issues_fixed: list, original_score: float, final_score: float) -> int:
        session = self._session()
        try:
            row = CorrectionHistory(
                project_id=project_id,
                stage_number=stage_number,
                original_content=_dumps(original),
                corrected_content=_dumps(corrected),
                issues_fixed=issues_fixed,
                original_score=original_score,
                final_score=final_score,
            )
            session.add(row)
            session.commit()
            return row.id
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"保存修正历史失败 (项目 {project_id}): {e}", exc_info=True)
            raise PersistenceError(f"Failed to save correction history: {e}") from e
        finally:
            session.close()

    def get_mentor_reports(self, project_id: int, stage_number: int = None) -> list:
        session = self._session()
        try:
            query = session.query(MentorReportRecord).filter_by(project_id=project_id)
            if stage_number is not None:
                query = query.filter_by(stage_number=stage_number)
            return [r.to_dict() for r in query.order_by(MentorReportRecord.id).all()]
        finally:
            session.close()

    def get_corrections(self, project_id: int, stage_number: int = None) -> list:
        session = self._session()
        try:
            query = session.query(CorrectionHistory).filter_by(project_id=project_id)
            if stage_number is not None:
                query = query.filter_by(stage_number=stage_number)
            return [c.to_dict() for c in query.order_by(CorrectionHistory.id).all()]
        finally:
            session.close()

    # --- 统计 ---

    def get_statistics(self, project_id: int) -> dict:
        session = self._session()
        try:
            def _count(model, **filters):
                return session.query(func.count(model.id)).filter_by(project_id=project_id, **filters).scalar() or 0

            return {
                "objects": _count(ContentObject),
                "timeline_events": _count(TimelineEvent),
                "structural_units": _count(StructuralUnit),
                "granular_units": _count(GranularUnit),
                "notations": _count(UAOLNotation),
                "completed_stages": _count(ContentStage, status='completed'),
            }
        finally:
            session.close()
