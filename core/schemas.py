"""
业务对象定义 (Schemas)
定义系统各层级间传递的强类型数据结构，确保数据流透明且可预测。
"""
from dataclasses import dataclass, field, asdict
from typing import Optional, List, Dict, Any

STAGE_NAMES = {
    1: "big_picture",
    2: "objects_relations",
    3: "structure",
    4: "granular_units",
}

CONTENT_TYPES = ("novel", "course", "documentary", "podcast")


@dataclass
class ProjectSpec:
    """创建项目的请求数据"""
    project_name: str
    content_type: str
    topic: str
    target_audience: Optional[str] = None
    genre: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AIConfig:
    """
    单次阶段执行的 AI 调用配置。
    未设置的字段由 config.yaml 中的阶段默认值补齐。
    """
    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    skip_validation: bool = False
    context_mode: Optional[str] = None # full / compact
    ai_notation_parsing: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "AIConfig":
        data = data or {}
        return cls(
            provider=data.get("provider"),
            model=data.get("model"),
            temperature=data.get("temperature"),
            max_tokens=data.get("max_tokens", data.get("maxTokens")),
            skip_validation=bool(data.get("skip_validation", False)),
            context_mode=data.get("context_mode"),
            ai_notation_parsing=bool(data.get("ai_notation_parsing", False)),
        )


@dataclass
class CompletionOptions:
    model: Optional[str] = None
    temperature: float = 0.8
    max_tokens: int = 8000
    system_prompt: Optional[str] = None


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class Completion:
    """AI 提供商的统一返回结构"""
    content: str
    usage: Usage = field(default_factory=Usage)
    provider: Optional[str] = None
    model: Optional[str] = None


@dataclass
class EntityProfile:
    """上下文中的实体档案 (人物、地点、概念等)"""
    code: str
    type: str
    name: str = ""
    description: str = ""
    extended_info: str = ""
    relationships: Dict[str, str] = field(default_factory=dict)
    first_stage: Optional[int] = None


@dataclass
class TimelineEntry:
    sequence_order: int
    time_marker: str = ""
    description: str = ""
    type: str = "main_content"
    involved_objects: List[str] = field(default_factory=list)
    impact_level: str = "important"


@dataclass
class PlotThread:
    code: str
    description: str = ""
    status: str = "open"
    related: List[str] = field(default_factory=list)


@dataclass
class StyleGuide:
    tone: str = ""
    pov: str = ""
    tense: str = ""
    vocabulary_level: str = ""
    pacing: str = ""

    @classmethod
    def from_metadata(cls, metadata: Optional[dict]) -> "StyleGuide":
        metadata = metadata or {}
        return cls(**{k: str(metadata.get(k) or "") for k in ("tone", "pov", "tense", "vocabulary_level", "pacing")})

    def is_empty(self) -> bool:
        return not any(asdict(self).values())


@dataclass
class ProjectContext:
    """
    项目运行时上下文 (完整模式)
    以实体 code 为键的只读快照，每次阶段执行加载一次，不在请求之间共享。
    """
    project_id: int
    content_type: str
    topic: str = ""
    characters: Dict[str, EntityProfile] = field(default_factory=dict)
    locations: Dict[str, EntityProfile] = field(default_factory=dict)
    other_objects: Dict[str, EntityProfile] = field(default_factory=dict)
    timeline: List[TimelineEntry] = field(default_factory=list)
    plot_threads: Dict[str, PlotThread] = field(default_factory=dict)
    style_guide: StyleGuide = field(default_factory=StyleGuide)
    structure: List[Dict[str, Any]] = field(default_factory=list)
    stage_outputs: Dict[int, Any] = field(default_factory=dict)

    def all_codes(self) -> set:
        return set(self.characters) | set(self.locations) | set(self.other_objects)

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectContext":
        return cls(
            project_id=data["project_id"],
            content_type=data["content_type"],
            topic=data.get("topic", ""),
            characters={k: EntityProfile(**v) for k, v in data.get("characters", {}).items()},
            locations={k: EntityProfile(**v) for k, v in data.get("locations", {}).items()},
            other_objects={k: EntityProfile(**v) for k, v in data.get("other_objects", {}).items()},
            timeline=[TimelineEntry(**e) for e in data.get("timeline", [])],
            plot_threads={k: PlotThread(**v) for k, v in data.get("plot_threads", {}).items()},
            style_guide=StyleGuide(**data.get("style_guide", {})),
            structure=list(data.get("structure", [])),
            # JSON 缓存会把整数键变成字符串
            stage_outputs={int(k): v for k, v in data.get("stage_outputs", {}).items()},
        )


@dataclass
class ValidationIssue:
    severity: str # critical / major / minor
    category: str # characters / locations / timeline / plot_threads / structure / quality
    description: str
    location: str = ""
    suggested_fix: str = ""


@dataclass
class ContinuityCheck:
    characters_consistent: bool = True
    locations_consistent: bool = True
    timeline_consistent: bool = True
    plot_threads_consistent: bool = True
    details: List[str] = field(default_factory=list)


@dataclass
class MentorReport:
    stage_number: int
    validation_score: float
    issues: List[ValidationIssue] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    corrections_applied: bool = False
    mentor_insight: str = ""
    continuity_check: ContinuityCheck = field(default_factory=ContinuityCheck)

    def to_dict(self):
        return asdict(self)


@dataclass
class StageResult:
    """阶段执行结果"""
    stage_id: int
    project_id: int
    stage_number: int
    stage_name: str
    output: Any
    validation_score: float
    issues_fixed: int = 0
    mentor_insight: str = ""
    continuity_check: Dict[str, Any] = field(default_factory=dict)
    corrections_applied: bool = False
    next_stage: Optional[int] = None
    tokens_used: int = 0
    notations_count: int = 0
    timings: Dict[str, int] = field(default_factory=dict)

    def to_response(self) -> dict:
        return {
            "id": self.stage_id,
            "stage_number": self.stage_number,
            "stage_name": self.stage_name,
            "output": self.output,
            "validation": {
                "score": self.validation_score,
                "issues_fixed": self.issues_fixed,
                "mentor_insight": self.mentor_insight,
                "continuity_check": self.continuity_check,
            },
            "next_stage": self.next_stage,
            "tokens_used": self.tokens_used,
            "notations_count": self.notations_count,
            "timings": self.timings,
        }
