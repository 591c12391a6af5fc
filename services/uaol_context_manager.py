"""
紧凑上下文管理器 (UAOL Context)
用已保存的 UAOL 记号代替完整实体构建提示词。
每类记号都有数量上限，每条摘要都有长度上限，因此提示词大小与项目规模无关。
"""
import json
import logging
import time
from typing import Optional, List

from core.exceptions import AIInvocationError, OutputValidationError, ProjectNotFoundError
from core.schemas import CompletionOptions
from prompts.manager import render_shared
from services import notation_codec as codec

logger = logging.getLogger(__name__)

IMPACT_ORDER = {"critical": 0, "major": 1, "important": 2, "minor": 3}

DEFAULT_LIMITS = {
    "max_characters": 12,
    "max_locations": 8,
    "max_objects": 8,
    "max_concepts": 5,
    "max_structure": 40,
    "max_sections": 12,
    "max_events": 8,
    "summary_length": 80,
}


class UAOLContextManager:
    """
    Args:
        store: ObjectStore
        cache: KVCache，键为 uaol:<project_id>
        settings: config.yaml 的 context 段
    """
    name = "compact"

    def __init__(self, store, cache, settings: Optional[dict] = None):
        settings = settings or {}
        self.store = store
        self.cache = cache
        self.ttl = settings.get("cache_ttl_seconds", 3600)
        self.limits = {key: settings.get(key, default) for key, default in DEFAULT_LIMITS.items()}

    @staticmethod
    def cache_key(project_id: int) -> str:
        return f"uaol:{project_id}"

    def invalidate(self, project_id: int):
        self.cache.delete(self.cache_key(project_id))

    def load_context(self, project_id: int) -> dict:
        """
        读取项目已完成阶段的全部记号。

        Returns:
            {"project_id", "content_type", "topic", "notations": [...], "stage_notations": {阶段号: [...]},
             "evolutions": [...]}
        """
        cached = self.cache.get(self.cache_key(project_id))
        if cached:
            return cached

        project = self.store.get_project(project_id)
        if not project:
            raise ProjectNotFoundError(project_id)

        rows = self.store.get_notations(project_id, completed_only=True)
        stage_notations = {}
        for row in rows:
            stage_notations.setdefault(str(row["stage_number"]), []).append(row["notation"])
        context = {
            "project_id": project_id,
            "content_type": project["content_type"],
            "topic": project["topic"],
            "notations": [row["notation"] for row in rows],
            "stage_notations": stage_notations,
            "evolutions": self.store.get_evolutions(project_id),
        }
        self.cache.put(self.cache_key(project_id), context, ttl=self.ttl)
        return context

    def relevant_facts(self, context: dict, stage_number: int) -> List:
        """当前阶段之前所有阶段的记号，解析为事实。"""
        facts = []
        for stage in range(1, stage_number):
            for line in context["stage_notations"].get(str(stage), []):
                facts.append(codec.decode(line))
        return facts

    # --- 各阶段上下文 ---

    def _stage2_context(self, facts) -> str:
        concepts = [f for f in facts if isinstance(f, codec.ConceptFact)][: self.limits["max_sections"]]
        text = "PREVIOUS STAGE CONCEPTS:\n"
        for fact in concepts:
            text += f"  {codec.encode(fact)}\n  Meaning: {codec.describe(fact)}\n"
        text += "\nTask: Generate characters, locations, and relationships based on these concepts.\n\n"
        return text

    def _entities(self, facts, kind: str, limit_key: str) -> list:
        return [f for f in facts if isinstance(f, codec.EntityFact) and f.kind == kind][: self.limits[limit_key]]

    def _stage3_context(self, facts) -> str:
        chars = self._entities(facts, "char", "max_characters")
        locs = self._entities(facts, "loc", "max_locations")
        others = [f for f in facts if isinstance(f, codec.EntityFact) and f.kind == "ent"][: self.limits["max_objects"]]
        themes = [f for f in facts if isinstance(f, codec.ConceptFact)][: self.limits["max_concepts"]]
        events = sorted(
            (f for f in facts if isinstance(f, codec.EventFact)),
            key=lambda e: (IMPACT_ORDER.get(e.impact_level or "", 9), e.seq or 0),
        )[: self.limits["max_events"]]
        events.sort(key=lambda e: e.seq or 0)

        text = "AVAILABLE ENTITIES (use these codes in your structure):\n"
        text += "Characters:\n" + "".join(f"  {codec.describe(f)}\n" for f in chars)
        text += "Locations:\n" + "".join(f"  {codec.describe(f)}\n" for f in locs)
        if others:
            text += "Other objects:\n" + "".join(f"  {codec.describe(f)}\n" for f in others)
        text += f"Core Themes: {', '.join(f.code for f in themes)}\n"
        if events:
            text += "Key Events:\n" + "".join(f"  {codec.describe(f)}\n" for f in events)
        text += "\nREQUIREMENTS:\n"
        text += "- Each top-level unit must reference available characters\n"
        text += "- Each unit must use at least one listed location or object\n"
        text += "- The structure must advance the core themes\n\n"
        return text

    def _stage4_context(self, facts) -> str:
        chars = self._entities(facts, "char", "max_characters")
        locs = self._entities(facts, "loc", "max_locations")
        structs = sorted(
            (f for f in facts if isinstance(f, codec.StructureFact)),
            key=lambda s: (s.level or 1),
        )[: self.limits["max_structure"]]

        text = "AVAILABLE ELEMENTS:\n"
        text += f"Characters: {', '.join(f.code for f in chars)}\n"
        text += f"Locations: {', '.join(f.code for f in locs)}\n"
        text += "Structure (use these codes as parent_code):\n"
        text += "".join(f"  {codec.describe(s)}\n" for s in structs)
        text += "\nREQUIREMENTS:\n"
        text += "- Each unit must use characters from the list\n"
        text += "- Each unit must be set in a listed location\n"
        text += "- Units must follow the established structure\n"
        text += "- Include conflict, dialogue hints, and emotional beats\n\n"
        return text

    def build_uaol_prompt(self, project_id: int, stage_number: int, base_prompt: str) -> str:
        started = time.perf_counter()
        context = self.load_context(project_id)
        facts = self.relevant_facts(context, stage_number)

        prompt = "=== UAOL CONTEXT ===\n"
        prompt += f"Project Type: {context['content_type']}\nCurrent Stage: {stage_number}\n\n"
        if stage_number == 2:
            prompt += self._stage2_context(facts)
        elif stage_number == 3:
            prompt += self._stage3_context(facts)
        elif stage_number == 4:
            prompt += self._stage4_context(facts)
        prompt += render_shared("continuity_rules") + "\n"
        prompt += f"=== YOUR TASK ===\n{base_prompt}\n"

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(f"[UAOL 上下文] 项目 {project_id} 阶段 {stage_number}: 构建耗时 {elapsed_ms} ms, "
                    f"可用记号 {len(facts)} 条, 提示词 {len(prompt)} 字符")
        return prompt

    build_prompt = build_uaol_prompt

    def save_stage_notations(self, project_id: int, stage_id: int, stage_number: int, output,
                             ai_provider=None) -> List[str]:
        """
        把阶段输出转换为记号并保存 (替换该阶段已有的记号)。

        提供 ai_provider 时先请模型生成记号行；模型调用失败或没有产出有效记号时，
        回退到按阶段规则提取。
        """
        started = time.perf_counter()
        facts, source = [], "rule"
        if ai_provider is not None:
            try:
                completion = ai_provider.generate_completion(
                    render_shared("notation_extraction", stage_number=stage_number,
                                  stage_output=_output_text(output)),
                    CompletionOptions(temperature=0.2, max_tokens=4000,
                                      system_prompt="You convert structured content into UAOL notation lines."),
                )
                facts = codec.parse_notation_lines(completion.content)
                if facts:
                    source = "ai"
                else:
                    logger.warning(f"[UAOL 上下文] 模型没有返回有效记号，改用规则提取 (项目 {project_id} 阶段 {stage_number})")
            except AIInvocationError as e:
                logger.warning(f"[UAOL 上下文] 模型辅助解析失败，改用规则提取: {e}")

        if not facts:
            facts = codec.parse_ai_output_to_notations(output, stage_number, self.limits["summary_length"])

        rows = codec.to_rows(facts)
        self.store.replace_stage_notations(project_id, stage_id, stage_number, rows, source=source)
        self.invalidate(project_id)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(f"[UAOL 上下文] 项目 {project_id} 阶段 {stage_number}: 提取记号 {len(rows)} 条 ({source}), 耗时 {elapsed_ms} ms")
        return [row[2] for row in rows]

    def track_evolution(self, project_id: int, stage_number: int, before_output, after_output,
                        trigger: str = "correction") -> int:
        """
        记录同一阶段两个版本输出之间记号的变化 (按 kind + code 对齐)。
        两个版本都按规则提取，结果与模型无关。
        """
        summary_length = self.limits["summary_length"]
        try:
            before = codec.to_rows(codec.parse_ai_output_to_notations(before_output, stage_number, summary_length))
        except OutputValidationError as e:
            # 原始输出不符合阶段结构时，修正后的记号全部按新增记录
            logger.warning(f"[UAOL 上下文] 原始输出无法提取记号: {e}")
            before = []
        after = codec.to_rows(codec.parse_ai_output_to_notations(after_output, stage_number, summary_length))
        changes = codec.diff_rows(before, after)
        if changes:
            self.store.save_evolutions(project_id, stage_number, changes, trigger)
            self.invalidate(project_id)
        logger.info(f"[UAOL 上下文] 项目 {project_id} 阶段 {stage_number}: 记号演化 {len(changes)} 条 ({trigger})")
        return len(changes)

    def expand_notations(self, project_id: int) -> List[dict]:
        """已完成阶段的记号逐条展开为生成指令，附带保存的 rich_data。"""
        expanded = []
        for row in self.store.get_notations(project_id, completed_only=True):
            item = codec.expand_notation(row["notation"])
            item["stage_number"] = row["stage_number"]
            item["notation"] = row["notation"]
            item["rich_data"] = row["rich_data"] or codec.fact_fields(codec.decode(row["notation"]))
            expanded.append(item)
        return expanded


def _output_text(output) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, ensure_ascii=False, indent=2)
