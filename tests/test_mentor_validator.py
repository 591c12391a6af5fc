import pytest

from conftest import big_picture_output, objects_output, structure_output, granular_output
from core.schemas import Completion, ProjectContext, EntityProfile, PlotThread, StyleGuide
from services.mentor_validator import MentorValidator, SKIP_MARKER


@pytest.fixture
def mentor():
    return MentorValidator({"mode": "rubric", "threshold": 70, "ai_insight": False})


@pytest.fixture
def context():
    return ProjectContext(project_id=1, content_type="novel", topic="lighthouse")


@pytest.fixture
def populated_context():
    ctx = ProjectContext(project_id=1, content_type="novel", topic="lighthouse",
                         style_guide=StyleGuide(tone="brooding"))
    for i in range(1, 4):
        code = f"char_{i:03d}"
        ctx.characters[code] = EntityProfile(code=code, type="character", name=f"Character {i}")
    ctx.locations["loc_001"] = EntityProfile(code="loc_001", type="location", name="The Light")
    ctx.structure = [
        {"code": "1", "title": "Act 1", "type": "act", "level": 1, "parent_unit_id": None},
        {"code": "1.1", "title": "Chapter 1", "type": "chapter", "level": 2, "parent_unit_id": 1},
        {"code": "1.2", "title": "Chapter 2", "type": "chapter", "level": 2, "parent_unit_id": 1},
    ]
    return ctx


def test_skip_mode_returns_full_score(mentor, context):
    report = mentor.validate({"anything": 1}, 2, context, skip=True)
    assert report.validation_score == 100
    assert report.issues == []
    assert report.mentor_insight.startswith(SKIP_MARKER)

    skipping = MentorValidator({"mode": "skip"})
    assert skipping.validate({}, 1, context).validation_score == 100


def test_complete_big_picture_scores_full(mentor, context):
    report = mentor.validate(big_picture_output(), 1, context)
    assert report.validation_score == 100
    assert "0 critical, 0 major, 0 minor" in report.mentor_insight


def test_missing_sections_are_major(mentor, context):
    output = big_picture_output()
    del output["world_vision"]
    del output["core_conflicts"]
    report = mentor.validate(output, 1, context)
    assert report.validation_score == 70
    assert {i.location for i in report.issues} == {"world_vision", "core_conflicts"}
    assert all(i.severity == "major" for i in report.issues)


def test_partial_section_names_do_not_count(mentor, context):
    output = big_picture_output()
    output["core"] = output.pop("core_concept")
    del output["core_conflicts"]
    report = mentor.validate(output, 1, context)
    assert {i.location for i in report.issues} == {"core_concept", "core_conflicts"}
    assert report.validation_score == 70


def test_section_names_match_whole_words(mentor, context):
    output = big_picture_output()
    output["Core Concept Overview"] = output.pop("core_concept")
    output["main_narrative_arc"] = output.pop("narrative_arc")
    report = mentor.validate(output, 1, context)
    assert report.validation_score == 100


def test_ai_insight_uses_provider_given_to_validate(context):
    class _Provider:
        def __init__(self):
            self.prompts = []

        def generate_completion(self, prompt, options=None):
            self.prompts.append(prompt)
            return Completion(content=" Tighten the midpoint. ", provider="fake", model="fake")

    provider = _Provider()
    mentor = MentorValidator({"mode": "rubric", "ai_insight": True})
    without = mentor.validate(big_picture_output(), 1, context)
    assert provider.prompts == []
    assert "Tighten" not in without.mentor_insight

    report = mentor.validate(big_picture_output(), 1, context, ai_provider=provider)
    assert len(provider.prompts) == 1
    assert report.mentor_insight.endswith("\nTighten the midpoint.")


def test_unstructured_output_is_critical(mentor, context):
    report = mentor.validate({"content": "Once upon a time"}, 2, context)
    assert report.validation_score == 75
    assert report.issues[0].severity == "critical"


def test_sparse_objects(mentor, context):
    report = mentor.validate(objects_output(characters=1, locations=0, events=0), 2, context)
    assert report.validation_score == 65
    assert not report.continuity_check.characters_consistent
    assert not report.continuity_check.timeline_consistent
    assert report.continuity_check.locations_consistent
    assert report.suggestions[0] != report.suggestions[-1]


def test_unknown_codes_break_continuity(mentor, context):
    output = objects_output()
    output["timeline"][0]["objects"].append("char_ghost")
    report = mentor.validate(output, 2, context)
    assert report.validation_score == 85
    assert not report.continuity_check.timeline_consistent
    assert any("char_ghost" in d for d in report.continuity_check.details)


def test_reused_codes_are_flagged(mentor, populated_context):
    report = mentor.validate(objects_output(), 2, populated_context)
    reused = [i for i in report.issues if "already used" in i.description]
    assert len(reused) == 1
    assert "char_001" in reused[0].description


def test_structure_features_unknown_objects(mentor, populated_context):
    output = structure_output()
    output["structure"][0]["children"][0]["objects"] = ["char_999"]
    report = mentor.validate(output, 3, populated_context)
    assert report.validation_score == 85
    assert not report.continuity_check.characters_consistent


def test_structure_pacing_imbalance(mentor, populated_context):
    output = structure_output()
    output["structure"][0]["children"][0]["word_count"] = 20000
    report = mentor.validate(output, 3, populated_context)
    assert report.validation_score == 95
    assert report.issues[0].location == "1"


def test_granular_orphans_and_flat_scenes(mentor, populated_context):
    output = granular_output(parent_codes=("1.1", "7.7"))
    for unit in output["granular_units"]:
        unit.pop("conflict")
        unit.pop("arc")
    report = mentor.validate(output, 4, populated_context)
    severities = sorted(i.severity for i in report.issues)
    assert severities == ["major", "minor"]
    assert report.validation_score == 80
    assert "7.7" in report.issues[0].description


def test_untouched_plot_threads(mentor, populated_context):
    populated_context.plot_threads["thread_storm"] = PlotThread(code="thread_storm", related=["char_003"])
    report = mentor.validate(granular_output(), 4, populated_context)
    assert report.validation_score == 95
    assert not report.continuity_check.plot_threads_consistent


def test_correction_prompt(mentor, populated_context):
    output = objects_output(characters=1, locations=0, events=0)
    report = mentor.validate(output, 2, populated_context)
    prompt = mentor.build_correction_prompt(output, report, 2, populated_context)

    assert "[MAJOR] (characters) Only 1 characters defined" in prompt
    assert "[MAJOR] (timeline) Timeline is empty" in prompt
    # 有阻断性问题时不列出次要问题
    assert "[MINOR]" not in prompt
    assert '"code": "char_001"' in prompt
    assert "ESTABLISHED CHARACTERS:" in prompt
    assert "Tone: brooding" in prompt


def test_issues_as_dicts(mentor, context):
    report = mentor.validate(objects_output(characters=1, locations=0, events=0), 2, context)
    dicts = MentorValidator.issues_as_dicts(report)
    assert len(dicts) == 3
    assert set(dicts[0]) == {"severity", "category", "description", "location", "suggested_fix"}
