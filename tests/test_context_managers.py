from conftest import big_picture_output, objects_output, structure_output

from core.schemas import ProjectSpec
from core.project_manager import ProjectManager
from prompts.manager import build_stage_prompt
from services.context_manager import build_relationship_graph


def _project_with_characters(store, make_orchestrator, characters):
    project = ProjectManager.create_project(store, ProjectSpec(
        project_name=f"Cast of {characters}", content_type="novel", topic="a flooded city",
    ))
    orchestrator, _ = make_orchestrator([big_picture_output(), objects_output(characters=characters)])
    orchestrator.execute_stage(project["id"], 1)
    orchestrator.execute_stage(project["id"], 2)
    return orchestrator, project


def _stage3_prompts(orchestrator, project):
    base = build_stage_prompt("novel", 3, project["topic"])
    full = orchestrator.full_context.build_prompt(project["id"], 3, base)
    compact = orchestrator.compact_context.build_prompt(project["id"], 3, base)
    return full, compact


def test_compact_prompt_size_is_independent_of_project_size(store, make_orchestrator):
    small_orch, small = _project_with_characters(store, make_orchestrator, 20)
    large_orch, large = _project_with_characters(store, make_orchestrator, 60)

    small_full, small_compact = _stage3_prompts(small_orch, small)
    large_full, large_compact = _stage3_prompts(large_orch, large)

    assert len(large_compact) - len(small_compact) <= 100
    assert len(large_full) - len(small_full) > 3000
    assert len(large_compact) < len(large_full)


def test_compact_prompt_respects_caps(store, make_orchestrator, config):
    orchestrator, project = _project_with_characters(store, make_orchestrator, 30)
    _, compact = _stage3_prompts(orchestrator, project)
    listed = [line for line in compact.splitlines() if "(character)" in line]
    assert len(listed) == config["context"]["max_characters"]
    assert "char_001" in compact
    assert "char_030" not in compact


def test_full_context_lists_every_entity(store, make_orchestrator):
    orchestrator, project = _project_with_characters(store, make_orchestrator, 8)
    full, _ = _stage3_prompts(orchestrator, project)
    for i in range(1, 9):
        assert f"char_{i:03d}: Character {i:03d}" in full
    assert "PLOT THREADS:" in full
    assert "thread_survivor" in full
    assert "=== YOUR TASK ===" in full


def test_context_is_cached_until_invalidated(store, make_orchestrator):
    orchestrator, project = _project_with_characters(store, make_orchestrator, 3)
    manager = orchestrator.full_context

    first = manager.load_project_context(project["id"])
    assert orchestrator.cache.get(manager.cache_key(project["id"])) is not None

    store.begin_stage(project["id"], 3, "structure")
    cached = manager.load_project_context(project["id"])
    assert set(cached.characters) == set(first.characters)

    manager.invalidate(project["id"])
    assert orchestrator.cache.get(manager.cache_key(project["id"])) is None


def test_execution_invalidates_both_caches(store, make_orchestrator, novel_project):
    orchestrator, _ = make_orchestrator([big_picture_output(), objects_output()])
    orchestrator.execute_stage(novel_project["id"], 1)
    before = orchestrator.get_notations(novel_project["id"])
    assert len(before["notations"]) == 5

    orchestrator.execute_stage(novel_project["id"], 2)
    after = orchestrator.get_notations(novel_project["id"])
    assert len(after["notations"]) > len(before["notations"])
    assert "2" in after["stage_notations"]


def test_context_loads_entities_timeline_and_structure(store, make_orchestrator, novel_project):
    orchestrator, _ = make_orchestrator([big_picture_output(), objects_output(), structure_output()])
    for n in (1, 2, 3):
        orchestrator.execute_stage(novel_project["id"], n)

    context = orchestrator.full_context.load_project_context(novel_project["id"])
    assert len(context.characters) == 6
    assert len(context.locations) == 4
    assert [e.sequence_order for e in context.timeline] == [1, 2, 3, 4, 5]
    assert context.style_guide.tone == "brooding"
    assert {u["code"] for u in context.structure} >= {"1", "1.1", "3.2"}
    assert set(context.stage_outputs) == {1, 2, 3}
    assert context.characters["char_002"].first_stage == 2


def test_relationship_graph(store, make_orchestrator, novel_project):
    orchestrator, _ = make_orchestrator([big_picture_output(), objects_output(characters=4, locations=2, events=3)])
    orchestrator.execute_stage(novel_project["id"], 1)
    orchestrator.execute_stage(novel_project["id"], 2)

    graph = build_relationship_graph(orchestrator.full_context.load_project_context(novel_project["id"]))
    assert graph.number_of_nodes() == 6
    assert graph["char_002"]["char_001"]["relation"] == "knows"
    assert graph["char_001"]["loc_001"]["relation"] == "co_occurs"
    assert graph["char_001"]["loc_001"]["weight"] == 3


def test_expanded_notations_carry_instructions_and_rich_data(make_orchestrator, novel_project):
    orchestrator, _ = make_orchestrator([big_picture_output()])
    orchestrator.execute_stage(novel_project["id"], 1)

    plain = orchestrator.get_notations(novel_project["id"])
    assert "expanded" not in plain

    expanded = orchestrator.get_notations(novel_project["id"], expand=True)["expanded"]
    assert len(expanded) == 5
    first = expanded[0]
    assert first["code"] == "core_concept"
    assert first["stage_number"] == 1
    assert first["instruction"].startswith("Develop the concept 'core_concept'")
    assert first["rich_data"]["kind"] == "concept"
    assert "keeper hides a shipwreck survivor" in first["rich_data"]["summary"]
