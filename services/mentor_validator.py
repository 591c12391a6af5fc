"""
导师评审 (Mentor Validator)

按内容类型和阶段应用固定的评审规则，给出 0-100 分、问题列表和连续性标记。
评审器本身不重试，是否修正由编排器决定。
"""
import json
import logging
from collections import Counter
from dataclasses import asdict
from typing import Optional

from core.exceptions import AIInvocationError, OutputValidationError
from core.schemas import (
    MentorReport, ValidationIssue, ContinuityCheck, ProjectContext, CompletionOptions, STAGE_NAMES
)
from core.stage_outputs import parse_stage_output, slugify
from chains.base import get_style_instruction
from prompts.manager import render_shared

logger = logging.getLogger(__name__)

SKIP_MARKER = "[validation skipped]"

SEVERITY_PENALTIES = {"critical": 25, "major": 15, "minor": 5}

# 阶段 1 每种内容类型必须包含的段落
REQUIRED_SECTIONS = {
    "novel": ("core_concept", "thematic_framework", "narrative_arc", "world_vision", "core_conflicts"),
    "course": ("learning_objectives", "prerequisites", "course_structure", "content_scope"),
    "documentary": ("thesis", "arguments", "narrative_approach", "visual_strategy"),
    "podcast": ("premise", "format", "season_arc"),
}

MIN_DESCRIPTION_CHARS = 60


class _Findings:
    """评审过程中累积问题与连续性标记"""

    def __init__(self):
        self.issues = []
        self.continuity = ContinuityCheck()

    def add(self, severity: str, category: str, description: str, location: str = "", suggested_fix: str = ""):
        self.issues.append(ValidationIssue(severity, category, description, location, suggested_fix))
        flag = {
            "characters": "characters_consistent",
            "locations": "locations_consistent",
            "timeline": "timeline_consistent",
            "plot_threads": "plot_threads_consistent",
        }.get(category)
        if flag and severity in ("critical", "major"):
            setattr(self.continuity, flag, False)
            self.continuity.details.append(description)


def _unknown_code_category(codes) -> str:
    return "locations" if all(str(c).startswith("loc") for c in codes) else "characters"


def _has_section(section: str, present) -> bool:
    """整段匹配：core_concept 可写作 core_concept / core_concept_xxx / xxx_core_concept"""
    return any(key == section or key.startswith(section + "_") or key.endswith("_" + section) for key in present)


class MentorValidator:
    """
    Args:
        settings: config.yaml 的 mentor 段 (mode、threshold、ai_insight)
        ai_provider: 启用 ai_insight 时用于生成导师点评
    """

    def __init__(self, settings: Optional[dict] = None, ai_provider=None):
        settings = settings or {}
        self.mode = settings.get("mode", "rubric")
        self.threshold = settings.get("threshold", 70)
        self.ai_insight = bool(settings.get("ai_insight", False))
        self.ai_provider = ai_provider

    def validate(self, output, stage_number: int, context: ProjectContext, skip: bool = False,
                 ai_provider=None) -> MentorReport:
        """
        Args:
            ai_provider: 本次执行使用的提供商；启用 ai_insight 时用于生成导师点评，
                未提供时使用构造时传入的提供商
        """
        if skip or self.mode == "skip":
            logger.warning(f"阶段 {stage_number} 的导师评审已按配置跳过")
            return MentorReport(
                stage_number=stage_number,
                validation_score=100,
                mentor_insight=f"{SKIP_MARKER} Mentor validation disabled by configuration",
                continuity_check=ContinuityCheck(details=[SKIP_MARKER]),
            )

        findings = _Findings()
        if not isinstance(output, dict) or set(output) == {"content"}:
            findings.add("critical", "quality", "Output is not structured JSON", "output",
                         "Return the stage output as a JSON object with the requested structure")
        else:
            checker = {1: self._check_big_picture, 2: self._check_objects, 3: self._check_structure, 4: self._check_granular}[stage_number]
            try:
                checker(output, context, findings)
            except OutputValidationError as e:
                findings.add("critical", "structure", f"Output does not match the stage format: {e}", "output",
                             "Follow the JSON format given in the task exactly")

        score = max(0, 100 - sum(SEVERITY_PENALTIES[i.severity] for i in findings.issues))
        report = MentorReport(
            stage_number=stage_number,
            validation_score=score,
            issues=findings.issues,
            suggestions=self._suggestions(findings.issues),
            continuity_check=findings.continuity,
        )
        report.mentor_insight = self._insight(report, output, context, ai_provider or self.ai_provider)
        logger.info(f"阶段 {stage_number} 评审得分 {score}，问题 {len(report.issues)} 个")
        return report

    # --- 各阶段规则 ---

    def _check_big_picture(self, output: dict, context: ProjectContext, findings: _Findings):
        present = {slugify(key) for key in output} - {""}
        required = REQUIRED_SECTIONS.get(context.content_type, REQUIRED_SECTIONS["novel"])
        for section in required:
            if not _has_section(section, present):
                findings.add("major", "structure", f"Missing section '{section}'", section,
                             f"Add a '{section}' section to the big picture")
        empty = [key for key, value in output.items() if not value]
        if empty:
            findings.add("minor", "quality", f"Empty sections: {', '.join(empty)}", ", ".join(empty),
                         "Fill in every section")

    def _check_objects(self, output: dict, context: ProjectContext, findings: _Findings):
        parsed = parse_stage_output(2, output)
        if not parsed.objects:
            findings.add("critical", "characters", "No objects were generated", "objects",
                         "Generate the characters, locations and other objects of the work")
            return

        characters = [o for o in parsed.objects if o.type == "character"]
        locations = [o for o in parsed.objects if o.type == "location"]
        if context.content_type == "novel":
            if len(characters) < 3:
                findings.add("major", "characters", f"Only {len(characters)} characters defined", "objects",
                             "Define at least the main cast with distinct roles")
            if len(locations) < 2:
                findings.add("minor", "locations", f"Only {len(locations)} locations defined", "objects",
                             "Add the key locations with atmosphere")
        elif len(parsed.objects) < 3:
            findings.add("major", "quality", f"Only {len(parsed.objects)} objects defined", "objects",
                         "Define the core objects of the work")

        thin = [o.code or o.name for o in characters if len(o.description or "") < MIN_DESCRIPTION_CHARS]
        if thin:
            findings.add("minor", "characters", f"{len(thin)} characters have thin descriptions", ", ".join(filter(None, thin)),
                         "Give every character a full description with motivation and backstory")

        missing_codes = [o.name or o.type for o in parsed.objects if not o.code]
        if missing_codes:
            findings.add("minor", "quality", f"{len(missing_codes)} objects have neither code nor name", "objects",
                         "Give every object a unique code")

        codes = [o.code for o in parsed.objects if o.code]
        duplicates = sorted(code for code, n in Counter(codes).items() if n > 1)
        if duplicates:
            findings.add("major", _unknown_code_category(duplicates), f"Duplicate codes: {', '.join(duplicates)}", ", ".join(duplicates),
                         "Use a unique code for each object")
        reused = sorted(set(codes) & context.all_codes())
        if reused:
            findings.add("major", _unknown_code_category(reused), f"Codes already used in the project: {', '.join(reused)}", ", ".join(reused),
                         "Never reuse an existing code for a new object")

        known = set(codes) | context.all_codes()
        dangling = sorted({target for o in parsed.objects for target in o.relationships if target not in known})
        if dangling:
            findings.add("minor", "characters", f"Relationships point to unknown codes: {', '.join(dangling)}", ", ".join(dangling),
                         "Only reference codes defined in the objects list")

        if not parsed.timeline:
            findings.add("major", "timeline", "Timeline is empty", "timeline", "Add the chronological sequence of events")
        else:
            unknown = sorted({c for e in parsed.timeline for c in e.involved_objects if c not in known})
            if unknown:
                findings.add("major", "timeline", f"Timeline references unknown codes: {', '.join(unknown)}", ", ".join(unknown),
                             "Reference only defined object codes in timeline events")
            undescribed = [str(i) for i, e in enumerate(parsed.timeline, start=1) if not e.description]
            if undescribed:
                findings.add("minor", "timeline", f"Timeline events without description: {', '.join(undescribed)}", "timeline",
                             "Describe every event")

    def _check_structure(self, output: dict, context: ProjectContext, findings: _Findings):
        parsed = parse_stage_output(3, output)
        if not parsed.structure:
            findings.add("critical", "structure", "No structural units were generated", "structure",
                         "Generate the hierarchical structure")
            return
        parsed.assign_missing_codes()

        if context.content_type == "novel" and len(parsed.structure) < 3:
            findings.add("major", "structure", f"Only {len(parsed.structure)} top-level units (3 acts expected)", "structure",
                         "Organize the novel into three acts")

        units = list(parsed.walk())
        untitled = [u.code for u in units if not u.title]
        if untitled:
            findings.add("minor", "structure", f"Units without title: {', '.join(untitled)}", ", ".join(untitled),
                         "Give every unit a title")

        duplicates = sorted(code for code, n in Counter(u.code for u in units).items() if n > 1)
        if duplicates:
            findings.add("major", "structure", f"Duplicate unit codes: {', '.join(duplicates)}", ", ".join(duplicates),
                         "Use a unique code for each unit")

        known = context.all_codes()
        if known:
            unknown = sorted({c for u in units for c in u.featured_objects if c not in known})
            if unknown:
                findings.add("major", _unknown_code_category(unknown), f"Units feature unknown objects: {', '.join(unknown)}", ", ".join(unknown),
                             "Only feature objects established in stage 2")

        for unit in [parsed] + units:
            children = unit.structure if unit is parsed else unit.children
            sizes = [c.target_size for c in children if c.target_size]
            if len(sizes) >= 2 and max(sizes) > 3 * min(sizes):
                location = "structure" if unit is parsed else unit.code
                findings.add("minor", "structure", f"Unbalanced pacing in {location}: sizes range {min(sizes)}-{max(sizes)}", location,
                             "Balance the target sizes of sibling units")

    def _check_granular(self, output: dict, context: ProjectContext, findings: _Findings):
        parsed = parse_stage_output(4, output)
        if not parsed.granular_units:
            findings.add("critical", "structure", "No granular units were generated", "granular_units",
                         "Break every structural unit down into granular units")
            return

        structure_codes = {u["code"] for u in context.structure}
        orphans = sorted({u.parent_code or "?" for u in parsed.granular_units if u.parent_code not in structure_codes})
        if orphans:
            findings.add("major", "structure", f"Parent codes not found in the structure: {', '.join(orphans)}", ", ".join(orphans),
                         "Use the codes of existing structural units as parent_code")

        known = context.all_codes()
        if known:
            unknown = sorted({c for u in parsed.granular_units for c in u.featured_objects if c not in known})
            if unknown:
                findings.add("major", _unknown_code_category(unknown), f"Units feature unknown objects: {', '.join(unknown)}", ", ".join(unknown),
                             "Only feature objects established in stage 2")

        if context.content_type == "novel":
            flat = [u.code or u.title or str(u.number) for u in parsed.granular_units if not u.conflict and not u.progression_arc]
            if flat:
                findings.add("minor", "quality", f"{len(flat)} scenes have neither conflict nor arc", ", ".join(flat),
                             "Give every scene a conflict or an emotional arc")

        undescribed = [u.code or str(u.number) for u in parsed.granular_units if not u.description]
        if undescribed:
            findings.add("minor", "quality", f"Units without description: {', '.join(undescribed)}", ", ".join(undescribed),
                         "Describe every unit")

        open_threads = [t for t in context.plot_threads.values() if t.status != "resolved"]
        if open_threads:
            text = json.dumps(output, ensure_ascii=False).lower()
            untouched = [t.code for t in open_threads
                         if t.code.lower() not in text and not any(c.lower() in text for c in t.related)]
            if untouched:
                findings.add("minor", "plot_threads", f"Open plot threads never touched: {', '.join(untouched)}", ", ".join(untouched),
                             "Advance or resolve every open plot thread")
                findings.continuity.plot_threads_consistent = False
                findings.continuity.details.append(f"Open plot threads never touched: {', '.join(untouched)}")

    # --- 报告 ---

    def _suggestions(self, issues) -> list:
        suggestions = []
        for issue in sorted(issues, key=lambda i: SEVERITY_PENALTIES[i.severity], reverse=True):
            if issue.suggested_fix and issue.suggested_fix not in suggestions:
                suggestions.append(issue.suggested_fix)
        return suggestions

    def _insight(self, report: MentorReport, output, context: ProjectContext, ai_provider=None) -> str:
        counts = Counter(i.severity for i in report.issues)
        summary = (f"Stage {report.stage_number} scored {report.validation_score}/100 "
                   f"({counts['critical']} critical, {counts['major']} major, {counts['minor']} minor issues).")
        if report.issues:
            top = max(report.issues, key=lambda i: SEVERITY_PENALTIES[i.severity])
            summary += f" Most important: {top.description}."
        if not (self.ai_insight and ai_provider is not None):
            return summary

        try:
            completion = ai_provider.generate_completion(
                render_shared(
                    "mentor_insight",
                    stage_number=report.stage_number,
                    stage_name=STAGE_NAMES[report.stage_number],
                    content_type=context.content_type,
                    topic=context.topic,
                    findings="\n".join(f"- [{i.severity}] {i.description}" for i in report.issues) or "- none",
                    stage_output=json.dumps(output, ensure_ascii=False)[:6000],
                ),
                CompletionOptions(temperature=0.5, max_tokens=600),
            )
            return f"{summary}\n{completion.content.strip()}"
        except AIInvocationError as e:
            logger.warning(f"导师点评生成失败，仅返回评审摘要: {e}")
            return summary

    def build_correction_prompt(self, output, report: MentorReport, stage_number: int,
                                context: Optional[ProjectContext] = None) -> str:
        blocking = [i for i in report.issues if i.severity in ("critical", "major")] or report.issues
        issues = "\n".join(
            f"- [{i.severity.upper()}] ({i.category}) {i.description}"
            + (f" at {i.location}" if i.location else "")
            + (f"\n  Fix: {i.suggested_fix}" if i.suggested_fix else "")
            for i in blocking
        )

        context_text = ""
        if context is not None:
            if context.characters:
                context_text += "ESTABLISHED CHARACTERS:\n" + "\n".join(
                    f"- {c.code}: {c.name}" for c in context.characters.values()) + "\n\n"
            if context.locations:
                context_text += "ESTABLISHED LOCATIONS:\n" + "\n".join(
                    f"- {l.code}: {l.name}" for l in context.locations.values()) + "\n\n"
            style = get_style_instruction(context.style_guide)
            if style:
                context_text += style + "\n"

        return render_shared(
            "correction",
            stage_number=stage_number,
            issues=issues,
            context=context_text.strip(),
            original_output=json.dumps(output, ensure_ascii=False, indent=2),
        )

    @staticmethod
    def issues_as_dicts(report: MentorReport) -> list:
        return [asdict(i) for i in report.issues]
