"""
核心数据模型 (Data Models)
定义渐进式内容生成引擎存储在关系数据库中的表结构。
"""
import json
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, DateTime, JSON,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

def _utcnow():
    return datetime.now(timezone.utc)

def _iso(value):
    return value.isoformat() if value else None


class ContentProject(Base):
    """
    内容项目表
    一个项目对应一个主题，经过四个阶段生成完整的长篇作品结构。
    """
    __tablename__ = 'content_generation_projects'

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_name = Column(String, nullable=False)
    content_type = Column(String, nullable=False) # novel / course / documentary / podcast
    topic = Column(Text, nullable=False)
    target_audience = Column(String, nullable=True)
    genre = Column(String, nullable=True)
    current_stage = Column(Integer, nullable=False, default=0) # 最近完成的阶段 (0-4)
    total_stages = Column(Integer, nullable=False, default=4)
    status = Column(String, nullable=False, default='pending') # pending / in_progress / completed / failed
    project_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "project_name": self.project_name,
            "content_type": self.content_type,
            "topic": self.topic,
            "target_audience": self.target_audience,
            "genre": self.genre,
            "current_stage": self.current_stage,
            "total_stages": self.total_stages,
            "status": self.status,
            "metadata": self.project_metadata or {},
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }


class ContentStage(Base):
    """
    阶段表
    每个项目的每个阶段号只有一行；completed 之后不再修改。
    """
    __tablename__ = 'content_generation_stages'
    __table_args__ = (UniqueConstraint('project_id', 'stage_number', name='uq_stage_per_project'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey('content_generation_projects.id'), nullable=False, index=True)
    stage_number = Column(Integer, nullable=False)
    stage_name = Column(String, nullable=False)
    status = Column(String, nullable=False, default='in_progress') # in_progress / completed / failed
    input_data = Column(Text, nullable=True) # 上一阶段输出 (JSON 文本)
    output_data = Column(Text, nullable=True) # 本阶段最终输出 (JSON 文本)
    validation_score = Column(Float, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    ai_provider = Column(String, nullable=True)
    ai_model = Column(String, nullable=True)
    tokens_used = Column(Integer, default=0)
    notations_count = Column(Integer, default=0)
    started_at = Column(DateTime, nullable=True) # 最近一次进入 in_progress 的时间
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "stage_number": self.stage_number,
            "stage_name": self.stage_name,
            "status": self.status,
            "input_data": json.loads(self.input_data) if self.input_data else None,
            "output_data": json.loads(self.output_data) if self.output_data else None,
            "validation_score": self.validation_score,
            "processing_time_ms": self.processing_time_ms,
            "error": self.error,
            "ai_provider": self.ai_provider,
            "ai_model": self.ai_model,
            "tokens_used": self.tokens_used or 0,
            "notations_count": self.notations_count or 0,
            "started_at": _iso(self.started_at),
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }


class ContentObject(Base):
    """
    实体表 (人物、地点、概念等)
    object_code 在项目内唯一，是后续阶段和记号引用实体的连接键。
    """
    __tablename__ = 'content_objects'
    __table_args__ = (UniqueConstraint('project_id', 'object_code', name='uq_object_code'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey('content_generation_projects.id'), nullable=False, index=True)
    stage_id = Column(Integer, ForeignKey('content_generation_stages.id'), nullable=False)
    object_type = Column(String, nullable=False)
    object_code = Column(String, nullable=False)
    name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    extended_info = Column(Text, nullable=True)
    relationships = Column(JSON, nullable=True) # {code: relation}
    object_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "stage_id": self.stage_id,
            "type": self.object_type,
            "code": self.object_code,
            "name": self.name,
            "description": self.description,
            "extended_info": self.extended_info,
            "relationships": self.relationships or {},
            "metadata": self.object_metadata or {},
        }


class TimelineEvent(Base):
    """
    时间线事件表
    sequence_order 决定读取顺序。
    """
    __tablename__ = 'content_timeline'

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey('content_generation_projects.id'), nullable=False, index=True)
    stage_id = Column(Integer, ForeignKey('content_generation_stages.id'), nullable=False)
    sequence_order = Column(Integer, nullable=False)
    time_marker = Column(String, nullable=True) # 故事内时间，如 "10 years before story"
    event_description = Column(Text, nullable=True)
    event_type = Column(String, nullable=True)
    involved_objects = Column(JSON, nullable=True) # [code, ...]
    impact_level = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "sequence_order": self.sequence_order,
            "time_marker": self.time_marker,
            "description": self.event_description,
            "type": self.event_type,
            "involved_objects": self.involved_objects or [],
            "impact_level": self.impact_level,
        }


class StructuralUnit(Base):
    """
    结构单元表 (幕 / 章 / 模块 / 集)
    通过 parent_unit_id 自引用成树，unit_level = 父级 + 1。
    """
    __tablename__ = 'content_structural_units'
    __table_args__ = (
        UniqueConstraint('project_id', 'unit_code', name='uq_structural_unit_code'),
        Index('ix_structural_parent', 'parent_unit_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey('content_generation_projects.id'), nullable=False, index=True)
    stage_id = Column(Integer, ForeignKey('content_generation_stages.id'), nullable=False)
    parent_unit_id = Column(Integer, ForeignKey('content_structural_units.id'), nullable=True)
    unit_level = Column(Integer, nullable=False, default=1)
    unit_type = Column(String, nullable=True)
    unit_code = Column(String, nullable=False)
    title = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    featured_objects = Column(JSON, nullable=True)
    target_size = Column(Integer, nullable=True)
    size_unit = Column(String, nullable=True, default='words')
    unit_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "parent_unit_id": self.parent_unit_id,
            "unit_level": self.unit_level,
            "type": self.unit_type,
            "code": self.unit_code,
            "title": self.title,
            "description": self.description,
            "featured_objects": self.featured_objects or [],
            "target_size": self.target_size,
            "size_unit": self.size_unit,
            "metadata": self.unit_metadata or {},
        }


class GranularUnit(Base):
    """
    细粒度单元表 (场景 / 活动 / 片段)
    每行恰好挂在一个结构单元之下。
    """
    __tablename__ = 'content_granular_units'

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey('content_generation_projects.id'), nullable=False, index=True)
    structural_unit_id = Column(Integer, ForeignKey('content_structural_units.id'), nullable=False)
    stage_id = Column(Integer, ForeignKey('content_generation_stages.id'), nullable=False)
    unit_number = Column(Integer, default=1)
    unit_type = Column(String, nullable=True)
    unit_code = Column(String, nullable=True)
    title = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    estimated_size = Column(Integer, nullable=True)
    size_unit = Column(String, nullable=True, default='words')
    execution_style = Column(String, nullable=True)
    research_needed = Column(JSON, nullable=True)
    featured_objects = Column(JSON, nullable=True)
    progression_arc = Column(String, nullable=True)
    key_elements = Column(JSON, nullable=True)
    creator_notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "structural_unit_id": self.structural_unit_id,
            "stage_id": self.stage_id,
            "unit_number": self.unit_number,
            "type": self.unit_type,
            "code": self.unit_code,
            "title": self.title,
            "description": self.description,
            "estimated_size": self.estimated_size,
            "size_unit": self.size_unit,
            "execution_style": self.execution_style,
            "research_needed": self.research_needed or [],
            "featured_objects": self.featured_objects or [],
            "progression_arc": self.progression_arc,
            "key_elements": self.key_elements or [],
            "creator_notes": self.creator_notes,
        }


class UAOLNotation(Base):
    """
    UAOL 记号表
    按阶段分版本存储，紧凑上下文只读取已完成阶段的记号。
    """
    __tablename__ = 'uaol_notations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey('content_generation_projects.id'), nullable=False, index=True)
    stage_id = Column(Integer, ForeignKey('content_generation_stages.id'), nullable=False)
    stage_number = Column(Integer, nullable=False)
    kind = Column(String, nullable=False)
    code = Column(String, nullable=False)
    notation = Column(Text, nullable=False)
    source = Column(String, nullable=False, default='rule') # rule / ai
    rich_data = Column(JSON, nullable=True) # 解析出的完整字段，展开记号时优先使用
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "stage_number": self.stage_number,
            "kind": self.kind,
            "code": self.code,
            "notation": self.notation,
            "source": self.source,
            "rich_data": self.rich_data,
        }


class NotationEvolution(Base):
    """
    记号演化历史 (仅追加)
    同一 (kind, code) 的记号被新版本替换时记录前后两个版本及触发原因。
    """
    __tablename__ = 'uaol_notation_evolutions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey('content_generation_projects.id'), nullable=False, index=True)
    stage_number = Column(Integer, nullable=False)
    kind = Column(String, nullable=False)
    code = Column(String, nullable=False)
    from_notation = Column(Text, nullable=True) # 新增的记号为空
    to_notation = Column(Text, nullable=True) # 被移除的记号为空
    trigger = Column(String, nullable=False) # correction / retry / ...
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "stage_number": self.stage_number,
            "kind": self.kind,
            "code": self.code,
            "from_notation": self.from_notation,
            "to_notation": self.to_notation,
            "trigger": self.trigger,
            "created_at": _iso(self.created_at),
        }


class MentorReportRecord(Base):
    """导师评审报告 (仅追加)"""
    __tablename__ = 'mentor_reports'

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey('content_generation_projects.id'), nullable=False, index=True)
    stage_number = Column(Integer, nullable=False)
    validation_score = Column(Float, nullable=False)
    issues = Column(JSON, nullable=True)
    suggestions = Column(JSON, nullable=True)
    corrections_applied = Column(Boolean, default=False)
    mentor_insight = Column(Text, nullable=True)
    continuity_check = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "stage_number": self.stage_number,
            "validation_score": self.validation_score,
            "issues": self.issues or [],
            "suggestions": self.suggestions or [],
            "corrections_applied": bool(self.corrections_applied),
            "mentor_insight": self.mentor_insight,
            "continuity_check": self.continuity_check or {},
        }


class CorrectionHistory(Base):
    """修正历史 (仅追加，每次修正一行)"""
    __tablename__ = 'correction_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey('content_generation_projects.id'), nullable=False, index=True)
    stage_number = Column(Integer, nullable=False)
    original_content = Column(Text, nullable=True)
    corrected_content = Column(Text, nullable=True)
    issues_fixed = Column(JSON, nullable=True)
    original_score = Column(Float, nullable=True)
    final_score = Column(Float, nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "stage_number": self.stage_number,
            "original_content": json.loads(self.original_content) if self.original_content else None,
            "corrected_content": json.loads(self.corrected_content) if self.corrected_content else None,
            "issues_fixed": self.issues_fixed or [],
            "original_score": self.original_score,
            "final_score": self.final_score,
        }
