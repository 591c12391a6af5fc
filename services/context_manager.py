"""
完整上下文管理器 (Full Context)
从数据库重新读取项目的全部实体、时间线、情节线和结构，原样序列化进提示词。
提示词大小随项目规模线性增长。
"""
import json
import logging
import time
from typing import Optional

import networkx as nx

from core.exceptions import ProjectNotFoundError
from core.schemas import (
    ProjectContext, EntityProfile, TimelineEntry, PlotThread, StyleGuide
)
from core.stage_outputs import PlotThreadSpec
from chains.base import get_style_instruction
from prompts.manager import render_shared

logger = logging.getLogger(__name__)


def build_relationship_graph(context: ProjectContext) -> nx.DiGraph:
    """
    实体关系图：节点为实体 code，边来自实体的 relationships，
    同一时间线事件中同时出现的实体之间加 co_occurs 边 (weight 为共现次数)。
    """
    graph = nx.DiGraph()
    entities = {**context.other_objects, **context.locations, **context.characters}
    for code, entity in entities.items():
        graph.add_node(code, type=entity.type, name=entity.name)
    for code, entity in entities.items():
        for target, relation in entity.relationships.items():
            graph.add_edge(code, target, relation=relation or "related")
    for event in context.timeline:
        involved = [c for c in event.involved_objects if c in entities]
        for i, source in enumerate(involved):
            for target in involved[i + 1:]:
                if graph.has_edge(source, target):
                    graph[source][target]["weight"] = graph[source][target].get("weight", 0) + 1
                else:
                    graph.add_edge(source, target, relation="co_occurs", weight=1)
    return graph


def _json(value) -> str:
    return json.dumps(value, ensure_ascii=False, indent=2)


class FullContextManager:
    """
    Args:
        store: ObjectStore
        cache: KVCache，键为 context:<project_id>
        ttl: 缓存过期秒数
    """
    name = "full"

    def __init__(self, store, cache, ttl: int = 3600):
        self.store = store
        self.cache = cache
        self.ttl = ttl

    @staticmethod
    def cache_key(project_id: int) -> str:
        return f"context:{project_id}"

    def invalidate(self, project_id: int):
        self.cache.delete(self.cache_key(project_id))

    def load_project_context(self, project_id: int) -> ProjectContext:
        cached = self.cache.get(self.cache_key(project_id))
        if cached:
            return ProjectContext.from_dict(cached)

        project = self.store.get_project(project_id)
        if not project:
            raise ProjectNotFoundError(project_id)

        context = ProjectContext(
            project_id=project_id,
            content_type=project["content_type"],
            topic=project["topic"],
            style_guide=StyleGuide.from_metadata(project.get("metadata")),
        )

        stages = self.store.get_stages(project_id)
        stage_numbers = {s["id"]: s["stage_number"] for s in stages}
        for obj in self.store.get_objects(project_id):
            profile = EntityProfile(
                code=obj["code"],
                type=obj["type"],
                name=obj["name"] or "",
                description=obj["description"] or "",
                extended_info=obj["extended_info"] or "",
                relationships=obj["relationships"],
                first_stage=stage_numbers.get(obj["stage_id"]),
            )
            if obj["type"] == "character":
                context.characters[profile.code] = profile
            elif obj["type"] == "location":
                context.locations[profile.code] = profile
            else:
                context.other_objects[profile.code] = profile

        for event in self.store.get_timeline(project_id):
            context.timeline.append(TimelineEntry(
                sequence_order=event["sequence_order"],
                time_marker=event["time_marker"] or "",
                description=event["description"] or "",
                type=event["type"] or "main_content",
                involved_objects=event["involved_objects"],
                impact_level=event["impact_level"] or "important",
            ))

        for stage in stages:
            if stage["status"] != "completed":
                continue
            output = stage["output_data"]
            context.stage_outputs[stage["stage_number"]] = output
            if isinstance(output, dict):
                for raw in output.get("plot_threads") or []:
                    if not isinstance(raw, dict):
                        continue
                    thread = PlotThreadSpec.model_validate(raw)
                    if thread.code:
                        context.plot_threads[thread.code] = PlotThread(
                            code=thread.code,
                            description=thread.description or "",
                            status=thread.status,
                            related=thread.related,
                        )

        context.structure = [
            {"code": u["code"], "title": u["title"], "type": u["type"], "level": u["unit_level"], "parent_unit_id": u["parent_unit_id"]}
            for u in self.store.get_structural_units(project_id)
        ]

        self.cache.put(self.cache_key(project_id), context.to_dict(), ttl=self.ttl)
        return context

    # --- 提示词 ---

    def _entity_lines(self, entities: dict) -> list:
        lines = []
        for entity in entities.values():
            line = f"- {entity.code}: {entity.name}"
            if entity.description:
                line += f" - {entity.description}"
            if entity.relationships:
                rels = ", ".join(f"{rel or 'related'} {target}" for target, rel in entity.relationships.items())
                line += f" (relationships: {rels})"
            lines.append(line)
        return lines

    def _stage2_context(self, context: ProjectContext) -> str:
        text = "PREVIOUS STAGE SUMMARY (BIG PICTURE):\n"
        big_picture = context.stage_outputs.get(1)
        if isinstance(big_picture, dict):
            text += "\n".join(f"- {key}" for key in big_picture) + "\n"
        return text

    def _stage3_context(self, context: ProjectContext) -> str:
        text = "ESTABLISHED CHARACTERS:\n" + "\n".join(self._entity_lines(context.characters)) + "\n\n"
        text += "ESTABLISHED LOCATIONS:\n" + "\n".join(self._entity_lines(context.locations)) + "\n\n"
        if context.other_objects:
            text += "OTHER OBJECTS:\n" + "\n".join(self._entity_lines(context.other_objects)) + "\n\n"
        text += "TIMELINE:\n" + "\n".join(
            f"{e.sequence_order}. [{e.time_marker}] {e.description} ({', '.join(e.involved_objects)}; {e.impact_level})"
            for e in context.timeline
        ) + "\n\n"
        text += self._plot_thread_text(context)
        graph = build_relationship_graph(context)
        if graph.number_of_edges():
            central = sorted(graph.degree, key=lambda item: item[1], reverse=True)[:5]
            text += "MOST CONNECTED ENTITIES: " + ", ".join(f"{code} ({degree})" for code, degree in central) + "\n\n"
        return text

    def _stage4_context(self, context: ProjectContext) -> str:
        text = f"CHARACTER CODES: {', '.join(context.characters)}\n"
        text += f"LOCATION CODES: {', '.join(context.locations)}\n"
        if context.other_objects:
            text += f"OTHER OBJECT CODES: {', '.join(context.other_objects)}\n"
        text += "\n" + self._plot_thread_text(context)
        text += "STRUCTURE (use these codes as parent_code):\n" + "\n".join(
            f"{'  ' * (u['level'] - 1)}- {u['code']} {u['type'] or ''}: {u['title'] or ''}" for u in context.structure
        ) + "\n\n"
        return text

    def _plot_thread_text(self, context: ProjectContext) -> str:
        if not context.plot_threads:
            return ""
        return "PLOT THREADS:\n" + "\n".join(
            f"- {t.code} [{t.status}]: {t.description}" for t in context.plot_threads.values()
        ) + "\n\n"

    def build_contextual_prompt(self, project_id: int, stage_number: int, base_prompt: str) -> str:
        started = time.perf_counter()
        context = self.load_project_context(project_id)

        prompt = "=== PROJECT CONTEXT ===\n"
        prompt += f"Project Type: {context.content_type}\nTopic: {context.topic}\nCurrent Stage: {stage_number}\n\n"
        if stage_number == 2:
            prompt += self._stage2_context(context)
        elif stage_number == 3:
            prompt += self._stage3_context(context)
        elif stage_number == 4:
            prompt += self._stage4_context(context)

        style = get_style_instruction(context.style_guide)
        if style:
            prompt += style + "\n\n"

        previous = context.stage_outputs.get(stage_number - 1)
        if previous is not None:
            prompt += f"PREVIOUS STAGE OUTPUT (stage {stage_number - 1}):\n{_json(previous)}\n\n"

        prompt += render_shared("continuity_rules") + "\n"
        prompt += f"=== YOUR TASK ===\n{base_prompt}\n"

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(f"[完整上下文] 项目 {project_id} 阶段 {stage_number}: 构建耗时 {elapsed_ms} ms, 提示词 {len(prompt)} 字符")
        return prompt

    build_prompt = build_contextual_prompt
