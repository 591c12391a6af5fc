"""
UAOL 记号编解码 (Notation Codec)

一条记号描述一个实体、关系、事件或结构单元的一个事实，格式 (版本 U1):

    U1|<kind>|<code>|key=value|key=value...

- kind: concept / char / loc / ent / rel / event / struct / unit
- 值中的 % | = , : 换行 以 %XX 转义
- 列表值以 "," 分隔，映射值为 "code:relation" 对
- 值为 None 的字段省略；空列表、空映射同样省略

decode(encode(x)) == x 对所有事实成立。
"""
import re
import logging
from dataclasses import dataclass, field, fields
from typing import Optional, List, Dict, Any, Union
from urllib.parse import unquote

from core.exceptions import NotationError
from core.stage_outputs import (
    ObjectsTimelineOutput, StructureOutput, GranularOutput, parse_stage_output, slugify
)

logger = logging.getLogger(__name__)

VERSION = "U1"
_ESCAPES = {"%": "%25", "|": "%7C", "=": "%3D", ",": "%2C", ":": "%3A", "\n": "%0A", "\r": "%0D"}
_ESCAPE_RE = re.compile("|".join(re.escape(c) for c in _ESCAPES))


@dataclass
class ConceptFact:
    code: str
    summary: Optional[str] = None
    kind = "concept"


@dataclass
class EntityFact:
    kind: str # char / loc / ent
    code: str
    type: Optional[str] = None
    name: Optional[str] = None
    summary: Optional[str] = None
    relationships: Dict[str, str] = field(default_factory=dict)


@dataclass
class RelationFact:
    code: str # 关系的源实体
    target: str
    relation: Optional[str] = None
    kind = "rel"


@dataclass
class EventFact:
    code: str
    seq: Optional[int] = None
    time_marker: Optional[str] = None
    summary: Optional[str] = None
    type: Optional[str] = None
    involved_objects: List[str] = field(default_factory=list)
    impact_level: Optional[str] = None
    kind = "event"


@dataclass
class StructureFact:
    code: str
    type: Optional[str] = None
    level: Optional[int] = None
    title: Optional[str] = None
    parent: Optional[str] = None
    featured_objects: List[str] = field(default_factory=list)
    kind = "struct"


@dataclass
class UnitFact:
    code: str
    type: Optional[str] = None
    parent: Optional[str] = None
    title: Optional[str] = None
    featured_objects: List[str] = field(default_factory=list)
    kind = "unit"


Fact = Union[ConceptFact, EntityFact, RelationFact, EventFact, StructureFact, UnitFact]

ENTITY_KINDS = {"char": "character", "loc": "location", "ent": None}

# kind -> (类, [(字段名, 记号键, 值类型)])
_SCHEMAS = {
    "concept": (ConceptFact, [("summary", "summary", "str")]),
    "char": (EntityFact, [("type", "type", "str"), ("name", "name", "str"), ("summary", "summary", "str"), ("relationships", "rel", "map")]),
    "loc": (EntityFact, [("type", "type", "str"), ("name", "name", "str"), ("summary", "summary", "str"), ("relationships", "rel", "map")]),
    "ent": (EntityFact, [("type", "type", "str"), ("name", "name", "str"), ("summary", "summary", "str"), ("relationships", "rel", "map")]),
    "rel": (RelationFact, [("target", "target", "str"), ("relation", "relation", "str")]),
    "event": (EventFact, [("seq", "seq", "int"), ("time_marker", "time", "str"), ("summary", "summary", "str"), ("type", "type", "str"),
                          ("involved_objects", "objects", "list"), ("impact_level", "impact", "str")]),
    "struct": (StructureFact, [("type", "type", "str"), ("level", "level", "int"), ("title", "title", "str"), ("parent", "parent", "str"),
                               ("featured_objects", "objects", "list")]),
    "unit": (UnitFact, [("type", "type", "str"), ("parent", "parent", "str"), ("title", "title", "str"), ("featured_objects", "objects", "list")]),
}


def _escape(value) -> str:
    return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group()], str(value))


def _encode_value(value, value_type: str) -> Optional[str]:
    if value is None:
        return None
    if value_type == "list":
        if any(v is None or str(v) == "" for v in value):
            raise NotationError("List values must not contain empty items")
        return ",".join(_escape(v) for v in value) if value else None
    if value_type == "map":
        if any(not str(k) for k in value):
            raise NotationError("Relationship codes must not be empty")
        return ",".join(f"{_escape(k)}:{_escape(v)}" for k, v in value.items()) if value else None
    return _escape(value)


def _decode_value(raw: str, value_type: str, line: str):
    if value_type == "list":
        return [unquote(v) for v in raw.split(",")] if raw else []
    if value_type == "map":
        result = {}
        for pair in raw.split(",") if raw else []:
            key, sep, rel = pair.partition(":")
            if not sep:
                raise NotationError(f"Malformed relationship '{pair}' in notation: {line}")
            result[unquote(key)] = unquote(rel)
        return result
    if value_type == "int":
        try:
            return int(raw)
        except ValueError as e:
            raise NotationError(f"Expected integer, got '{raw}' in notation: {line}") from e
    return unquote(raw)


def encode(fact: Fact) -> str:
    """把一个事实编码为一行记号。"""
    kind = fact.kind
    if kind not in _SCHEMAS:
        raise NotationError(f"Unknown notation kind: {kind}")
    if not fact.code:
        raise NotationError(f"Cannot encode a {kind} fact without a code")
    parts = [VERSION, kind, _escape(fact.code)]
    for attr, key, value_type in _SCHEMAS[kind][1]:
        encoded = _encode_value(getattr(fact, attr), value_type)
        if encoded is not None:
            parts.append(f"{key}={encoded}")
    return "|".join(parts)


def decode(line: str) -> Fact:
    """把一行记号解析为类型化事实。"""
    text = line.lstrip().rstrip("\r\n")
    parts = text.split("|")
    if len(parts) < 3 or parts[0] != VERSION:
        raise NotationError(f"Not a {VERSION} notation: {line}")
    kind, code = parts[1], unquote(parts[2])
    if kind not in _SCHEMAS:
        raise NotationError(f"Unknown notation kind '{kind}': {line}")
    if not code:
        raise NotationError(f"Notation without code: {line}")

    cls, schema = _SCHEMAS[kind]
    by_key = {key: (attr, value_type) for attr, key, value_type in schema}
    values = {}
    for part in parts[3:]:
        key, sep, raw = part.partition("=")
        if not sep:
            raise NotationError(f"Malformed field '{part}' in notation: {line}")
        if key not in by_key:
            logger.debug(f"忽略未知的记号字段 '{key}': {line}")
            continue
        attr, value_type = by_key[key]
        values[attr] = _decode_value(raw, value_type, line)

    if cls is EntityFact:
        return EntityFact(kind=kind, code=code, **values)
    return cls(code=code, **values)


def _truncate(text, length: int) -> Optional[str]:
    if text is None:
        return None
    if isinstance(text, (dict, list)):
        text = _flatten(text)
    text = " ".join(str(text).split())
    if len(text) <= length:
        return text
    return text[: max(length - 3, 0)].rstrip() + "..."


def _flatten(value) -> str:
    if isinstance(value, dict):
        return "; ".join(f"{k}: {_flatten(v)}" for k, v in value.items())
    if isinstance(value, list):
        return ", ".join(_flatten(v) for v in value)
    return str(value)


def _entity_kind(object_type: str) -> str:
    if object_type == "character":
        return "char"
    if object_type == "location":
        return "loc"
    return "ent"


def extract_facts(stage_number: int, output: Any, summary_length: int = 80) -> List[Fact]:
    """
    按阶段规则从输出中提取事实 (不调用 AI)。

    阶段 1 提取顶层概念段，阶段 2 提取实体、事件和情节线，
    阶段 3 提取结构树，阶段 4 提取细粒度单元。
    """
    if not isinstance(output, dict):
        output = {"content": output}

    facts: List[Fact] = []
    if stage_number == 1:
        for key, value in output.items():
            code = slugify(key) or "content"
            facts.append(ConceptFact(code=code, summary=_truncate(value, summary_length)))
        return facts

    parsed = parse_stage_output(stage_number, output)
    if isinstance(parsed, ObjectsTimelineOutput):
        for obj in parsed.objects:
            if not obj.code:
                continue
            kind = _entity_kind(obj.type)
            facts.append(EntityFact(
                kind=kind,
                code=obj.code,
                type=obj.type if kind == "ent" else None,
                name=obj.name,
                summary=_truncate(obj.description, summary_length),
                relationships=dict(obj.relationships),
            ))
        for i, event in enumerate(parsed.timeline, start=1):
            facts.append(EventFact(
                code=f"evt_{i}",
                seq=i,
                time_marker=event.time_marker,
                summary=_truncate(event.description, summary_length),
                type=event.type,
                involved_objects=list(event.involved_objects),
                impact_level=event.impact_level,
            ))
        for thread in parsed.plot_threads:
            if not thread.code:
                continue
            facts.append(EntityFact(
                kind="ent",
                code=thread.code,
                type="plot_thread",
                summary=_truncate(thread.description, summary_length),
                relationships={code: "involves" for code in thread.related},
            ))
    elif isinstance(parsed, StructureOutput):
        parsed.assign_missing_codes()

        def _visit(unit, parent_code, level):
            facts.append(StructureFact(
                code=unit.code,
                type=unit.type,
                level=level,
                title=_truncate(unit.title, summary_length),
                parent=parent_code,
                featured_objects=list(unit.featured_objects),
            ))
            for child in unit.children:
                _visit(child, unit.code, level + 1)

        for unit in parsed.structure:
            _visit(unit, None, 1)
    elif isinstance(parsed, GranularOutput):
        for unit in parsed.granular_units:
            code = unit.code or (f"{unit.parent_code}.{unit.number}" if unit.parent_code else None)
            if not code:
                continue
            facts.append(UnitFact(
                code=code,
                type=unit.type,
                parent=unit.parent_code,
                title=_truncate(unit.title, summary_length),
                featured_objects=list(unit.featured_objects),
            ))
    return facts


def parse_notation_lines(text: str) -> List[Fact]:
    """
    从 AI 返回的文本中解析记号行。
    非记号行 (说明文字、代码块标记等) 和格式错误的行被跳过。
    """
    facts = []
    for raw_line in text.splitlines():
        line = raw_line.strip().strip("`")
        start = line.find(f"{VERSION}|")
        if start < 0:
            continue
        try:
            facts.append(decode(line[start:]))
        except NotationError as e:
            logger.debug(f"跳过无法解析的记号行: {e}")
    return facts


def parse_ai_output_to_notations(output: Any, stage_number: int, summary_length: int = 80) -> List[Fact]:
    """
    把 AI 输出转换为事实列表：
    文本按记号行解析，JSON 对象按阶段规则提取。
    """
    if isinstance(output, str):
        facts = parse_notation_lines(output)
        if facts:
            return facts
    return extract_facts(stage_number, output, summary_length)


def to_rows(facts: List[Fact]) -> List[tuple]:
    """事实 -> (kind, code, notation, rich_data) 行，按出现顺序去重。"""
    rows, seen = [], set()
    for fact in facts:
        text = encode(fact)
        if text in seen:
            continue
        seen.add(text)
        rows.append((fact.kind, fact.code, text, fact_fields(fact)))
    return rows


def diff_rows(before: List[tuple], after: List[tuple]) -> List[tuple]:
    """
    按 (kind, code) 比较两组记号行，返回发生变化的 (kind, code, from, to)。
    新增的记号 from 为 None，被移除的记号 to 为 None。
    """
    old = {(row[0], row[1]): row[2] for row in before}
    new = {(row[0], row[1]): row[2] for row in after}
    changes = []
    for key, text in new.items():
        if old.get(key) != text:
            changes.append((key[0], key[1], old.get(key), text))
    for key, text in old.items():
        if key not in new:
            changes.append((key[0], key[1], text, None))
    return changes


def describe(fact: Fact) -> str:
    """事实的一行可读摘要，用于紧凑上下文。"""
    if isinstance(fact, ConceptFact):
        return f"{fact.code}: {fact.summary}" if fact.summary else fact.code
    if isinstance(fact, EntityFact):
        label = fact.name or fact.code
        kind = ENTITY_KINDS.get(fact.kind) or fact.type or "entity"
        text = f"{fact.code} ({kind}) {label}"
        if fact.summary:
            text += f" - {fact.summary}"
        return text
    if isinstance(fact, RelationFact):
        return f"{fact.code} -[{fact.relation or 'related'}]-> {fact.target}"
    if isinstance(fact, EventFact):
        who = ",".join(fact.involved_objects)
        return f"#{fact.seq} [{fact.time_marker or '?'}] {fact.summary or ''} ({who})"
    if isinstance(fact, StructureFact):
        return f"{fact.code} {fact.type or 'unit'}: {fact.title or ''}"
    if isinstance(fact, UnitFact):
        return f"{fact.code} {fact.type or 'unit'} in {fact.parent or '?'}: {fact.title or ''}"
    return str(fact)


def expand_notation(text: str) -> Dict[str, Any]:
    """
    把一条记号展开为自然语言生成指令和要求列表。
    """
    fact = decode(text)
    requirements = []
    if isinstance(fact, ConceptFact):
        instruction = f"Develop the concept '{fact.code}'" + (f": {fact.summary}" if fact.summary else ".")
        requirements.append("Keep the concept consistent with the big picture")
    elif isinstance(fact, EntityFact):
        kind = ENTITY_KINDS.get(fact.kind) or fact.type or "entity"
        instruction = f"Write the {kind} {fact.name or fact.code} ({fact.code})"
        if fact.summary:
            instruction += f": {fact.summary}"
        for target, relation in fact.relationships.items():
            requirements.append(f"Preserve the relationship '{relation or 'related'}' with {target}")
        requirements.append(f"Refer to this {kind} by the code {fact.code}")
    elif isinstance(fact, RelationFact):
        instruction = f"Show the relationship between {fact.code} and {fact.target}" + (f" ({fact.relation})" if fact.relation else "")
        requirements.append("Both entities must appear together")
    elif isinstance(fact, EventFact):
        instruction = f"Depict event #{fact.seq}" + (f" at {fact.time_marker}" if fact.time_marker else "") + (f": {fact.summary}" if fact.summary else "")
        if fact.involved_objects:
            requirements.append(f"Involve {', '.join(fact.involved_objects)}")
        if fact.impact_level:
            requirements.append(f"Treat the event as {fact.impact_level}")
        requirements.append("Keep the chronological order of the timeline")
    elif isinstance(fact, StructureFact):
        instruction = f"Write {fact.type or 'unit'} {fact.code}" + (f" '{fact.title}'" if fact.title else "")
        if fact.parent:
            requirements.append(f"Place it inside {fact.parent}")
        if fact.featured_objects:
            requirements.append(f"Feature {', '.join(fact.featured_objects)}")
    else:
        instruction = f"Write {fact.type or 'unit'} {fact.code}" + (f" '{fact.title}'" if fact.title else "")
        if fact.parent:
            requirements.append(f"It belongs to {fact.parent}")
        if fact.featured_objects:
            requirements.append(f"Feature {', '.join(fact.featured_objects)}")
    return {"kind": fact.kind, "code": fact.code, "instruction": instruction, "requirements": requirements}


def fact_fields(fact: Fact) -> Dict[str, Any]:
    """事实的字段字典，作为记号行的 rich_data 保存。"""
    data = {f.name: getattr(fact, f.name) for f in fields(fact)}
    data["kind"] = fact.kind
    return data
