"""
阶段输出的类型化结构 (Pydantic)

AI 返回的 JSON 在落库前按阶段校验：
- 阶段 2: 实体 + 时间线 (+ 情节线)
- 阶段 3: 结构单元树
- 阶段 4: 细粒度单元 (叶子)
字段别名兼容模型常见的不同写法。
"""
import re
from typing import Optional, Any
from pydantic import BaseModel, Field, ConfigDict, AliasChoices, ValidationError, field_validator, model_validator

from core.exceptions import OutputValidationError

CODE_PREFIXES = {
    "character": "char",
    "location": "loc",
    "concept": "concept",
    "theme": "theme",
}


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", str(text).lower()).strip("_")


def derive_code(object_type: str, name: Optional[str]) -> Optional[str]:
    """由类型前缀和名称生成实体 code，例如 character + "Mara Voss" -> char_mara_voss。"""
    if not name:
        return None
    slug = slugify(name)
    if not slug:
        return None
    prefix = CODE_PREFIXES.get(object_type, slugify(object_type) or "obj")
    return f"{prefix}_{slug}"


def _to_code_list(value: Any) -> list:
    if value is None:
        return []
    if not isinstance(value, (list, tuple, set)):
        return [str(value)]
    codes = []
    for item in value:
        if isinstance(item, dict):
            item = item.get("code") or item.get("id") or item.get("name")
        if item is not None and str(item).strip():
            codes.append(str(item).strip())
    return codes


def _to_text_list(value: Any) -> list:
    if value is None:
        return []
    if not isinstance(value, (list, tuple, set)):
        return [str(value)]
    return [str(v) for v in value if v is not None]


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = re.search(r"\d+", str(value).replace(",", ""))
    return int(match.group()) if match else None


def _to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


class _StageModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# --- 阶段 2 ---

class ObjectSpec(_StageModel):
    """实体 (人物 / 地点 / 概念 / 工具 ...)"""
    type: str = "object"
    code: Optional[str] = Field(None, validation_alias=AliasChoices("code", "id"))
    name: Optional[str] = None
    description: Optional[str] = None
    extended_info: Optional[str] = Field(None, validation_alias=AliasChoices("extended_info", "backstory"))
    relationships: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v):
        return str(v).strip().lower() if v else "object"

    @field_validator("code", "name", "description", "extended_info", mode="before")
    @classmethod
    def _stringify(cls, v):
        return _to_str(v)

    @field_validator("relationships", mode="before")
    @classmethod
    def _normalize_relationships(cls, v):
        if not v:
            return {}
        if isinstance(v, dict):
            return {str(k): _to_str(r) or "" for k, r in v.items()}
        # [{"target": "char_x", "relation": "mentor"}, ...]
        relations = {}
        for item in v:
            if isinstance(item, dict):
                target = item.get("target") or item.get("code") or item.get("id")
                if target:
                    relations[str(target)] = _to_str(item.get("relation") or item.get("type")) or ""
        return relations

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_dict(cls, v):
        return v if isinstance(v, dict) else {}

    @model_validator(mode="after")
    def _fill_code(self):
        if not self.code:
            self.code = derive_code(self.type, self.name)
        return self


class TimelineEventSpec(_StageModel):
    time_marker: Optional[str] = Field(None, validation_alias=AliasChoices("time_marker", "time", "timestamp"))
    description: Optional[str] = Field(None, validation_alias=AliasChoices("description", "event"))
    type: str = "main_content"
    involved_objects: list[str] = Field(default_factory=list, validation_alias=AliasChoices("involved_objects", "objects", "participants"))
    impact_level: str = Field("important", validation_alias=AliasChoices("impact_level", "impact"))

    @field_validator("time_marker", "description", mode="before")
    @classmethod
    def _stringify(cls, v):
        return _to_str(v)

    @field_validator("type", "impact_level", mode="before")
    @classmethod
    def _default_tags(cls, v, info):
        if v:
            return str(v)
        return "main_content" if info.field_name == "type" else "important"

    @field_validator("involved_objects", mode="before")
    @classmethod
    def _codes(cls, v):
        return _to_code_list(v)


class PlotThreadSpec(_StageModel):
    code: Optional[str] = Field(None, validation_alias=AliasChoices("code", "id", "name"))
    description: Optional[str] = None
    status: str = "open"
    related: list[str] = Field(default_factory=list, validation_alias=AliasChoices("related", "objects", "characters"))

    @field_validator("code", "description", mode="before")
    @classmethod
    def _stringify(cls, v):
        return _to_str(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        return str(v) if v else "open"

    @field_validator("related", mode="before")
    @classmethod
    def _codes(cls, v):
        return _to_code_list(v)


class ObjectsTimelineOutput(_StageModel):
    objects: list[ObjectSpec] = Field(default_factory=list, validation_alias=AliasChoices("objects", "entities"))
    timeline: list[TimelineEventSpec] = Field(default_factory=list, validation_alias=AliasChoices("timeline", "events"))
    plot_threads: list[PlotThreadSpec] = Field(default_factory=list)

    @field_validator("objects", "timeline", "plot_threads", mode="before")
    @classmethod
    def _only_dicts(cls, v):
        return [item for item in (v or []) if isinstance(item, dict)]


# --- 阶段 3 ---

class StructuralUnitSpec(_StageModel):
    type: str = "unit"
    code: Optional[str] = Field(None, validation_alias=AliasChoices("code", "id", "number"))
    title: Optional[str] = Field(None, validation_alias=AliasChoices("title", "name"))
    description: Optional[str] = None
    featured_objects: list[str] = Field(default_factory=list, validation_alias=AliasChoices("featured_objects", "objects"))
    target_size: Optional[int] = Field(None, validation_alias=AliasChoices("target_size", "word_count", "duration"))
    size_unit: str = "words"
    metadata: dict[str, Any] = Field(default_factory=dict)
    children: list["StructuralUnitSpec"] = Field(default_factory=list, validation_alias=AliasChoices("children", "elements", "chapters", "lessons"))

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v):
        return str(v).strip().lower() if v else "unit"

    @field_validator("code", "title", "description", mode="before")
    @classmethod
    def _stringify(cls, v):
        return _to_str(v)

    @field_validator("featured_objects", mode="before")
    @classmethod
    def _codes(cls, v):
        return _to_code_list(v)

    @field_validator("target_size", mode="before")
    @classmethod
    def _size(cls, v):
        return _to_int(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_dict(cls, v):
        return v if isinstance(v, dict) else {}

    @field_validator("children", mode="before")
    @classmethod
    def _only_dicts(cls, v):
        return [item for item in (v or []) if isinstance(item, dict)]

    def walk(self):
        """深度优先遍历 (自身在前)"""
        yield self
        for child in self.children:
            yield from child.walk()


StructuralUnitSpec.model_rebuild()


class StructureOutput(_StageModel):
    structure: list[StructuralUnitSpec] = Field(default_factory=list, validation_alias=AliasChoices("structure", "structural_units", "acts", "modules", "episodes"))

    @field_validator("structure", mode="before")
    @classmethod
    def _only_dicts(cls, v):
        return [item for item in (v or []) if isinstance(item, dict)]

    def walk(self):
        for unit in self.structure:
            yield from unit.walk()

    def assign_missing_codes(self):
        """为缺少 code 的单元按层级路径生成 code (1, 1.2, 1.2.3 ...)。"""
        def _assign(units, prefix):
            for i, unit in enumerate(units, start=1):
                if not unit.code:
                    unit.code = f"{prefix}.{i}" if prefix else str(i)
                _assign(unit.children, unit.code)
        _assign(self.structure, None)
        return self


# --- 阶段 4 ---

class GranularUnitSpec(_StageModel):
    type: str = "scene"
    code: Optional[str] = Field(None, validation_alias=AliasChoices("code", "id"))
    parent_code: Optional[str] = Field(None, validation_alias=AliasChoices("parent_code", "chapter_code", "lesson_code", "episode_code"))
    number: int = Field(1, validation_alias=AliasChoices("number", "unit_number"))
    title: Optional[str] = None
    description: Optional[str] = None
    estimated_size: int = Field(2000, validation_alias=AliasChoices("estimated_size", "word_count", "duration"))
    size_unit: str = "words"
    execution_style: str = Field("narrative", validation_alias=AliasChoices("execution_style", "style"))
    research_needed: list[str] = Field(default_factory=list, validation_alias=AliasChoices("research_needed", "research"))
    featured_objects: list[str] = Field(default_factory=list, validation_alias=AliasChoices("featured_objects", "objects"))
    progression_arc: Optional[str] = Field(None, validation_alias=AliasChoices("progression_arc", "arc", "progression"))
    key_elements: list[str] = Field(default_factory=list, validation_alias=AliasChoices("key_elements", "key_lines"))
    creator_notes: Optional[str] = Field(None, validation_alias=AliasChoices("creator_notes", "notes"))
    conflict: Optional[str] = Field(None, validation_alias=AliasChoices("conflict", "tension"))

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v):
        return str(v).strip().lower() if v else "scene"

    @field_validator("code", "parent_code", "title", "description", "progression_arc", "creator_notes", "conflict", mode="before")
    @classmethod
    def _stringify(cls, v):
        return _to_str(v)

    @field_validator("number", mode="before")
    @classmethod
    def _number(cls, v):
        return _to_int(v) or 1

    @field_validator("estimated_size", mode="before")
    @classmethod
    def _size(cls, v):
        return _to_int(v) or 2000

    @field_validator("execution_style", mode="before")
    @classmethod
    def _style(cls, v):
        return str(v) if v else "narrative"

    @field_validator("research_needed", "key_elements", mode="before")
    @classmethod
    def _texts(cls, v):
        return _to_text_list(v)

    @field_validator("featured_objects", mode="before")
    @classmethod
    def _codes(cls, v):
        return _to_code_list(v)


class GranularOutput(_StageModel):
    granular_units: list[GranularUnitSpec] = Field(default_factory=list, validation_alias=AliasChoices("granular_units", "scenes", "activities", "segments"))

    @field_validator("granular_units", mode="before")
    @classmethod
    def _only_dicts(cls, v):
        return [item for item in (v or []) if isinstance(item, dict)]


STAGE_OUTPUT_MODELS = {
    2: ObjectsTimelineOutput,
    3: StructureOutput,
    4: GranularOutput,
}


def parse_stage_output(stage_number: int, output: Any):
    """
    按阶段号把 AI 输出校验为类型化结构。

    阶段 1 是自由结构的整体构思，返回 None。
    Raises:
        OutputValidationError: 输出不是 JSON 对象或不符合该阶段的结构。
    """
    model = STAGE_OUTPUT_MODELS.get(stage_number)
    if model is None:
        return None
    if not isinstance(output, dict):
        raise OutputValidationError(f"Stage {stage_number} output must be a JSON object")
    try:
        return model.model_validate(output)
    except ValidationError as e:
        raise OutputValidationError(f"Stage {stage_number} output failed validation: {e}") from e
