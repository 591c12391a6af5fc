import pytest

from core.exceptions import NotationError
from services import notation_codec as codec
from services.notation_codec import (
    ConceptFact, EntityFact, RelationFact, EventFact, StructureFact, UnitFact
)
from conftest import big_picture_output, objects_output, structure_output, granular_output


@pytest.mark.parametrize("fact", [
    ConceptFact(code="core_concept", summary="A keeper hides a survivor"),
    ConceptFact(code="empty_summary", summary=""),
    EntityFact(kind="char", code="char_mara", name="Mara Voss", summary="Keeper | 52, widow: stubborn, 100% loyal",
               relationships={"char_tom": "brother-in-law", "loc_light": "works at"}),
    EntityFact(kind="loc", code="loc_light", name="Godrevy Light", summary="Line one\nline two"),
    EntityFact(kind="ent", code="tool_lens", type="artifact", name="Fresnel lens"),
    RelationFact(code="char_mara", target="char_tom", relation="rivals=allies"),
    EventFact(code="evt_1", seq=1, time_marker="10 years before story", summary="The wreck, at dawn",
              type="backstory", involved_objects=["char_mara", "loc_light"], impact_level="critical"),
    StructureFact(code="1.2", type="chapter", level=2, title="The Inspector, Again", parent="1",
                  featured_objects=["char_mara"]),
    UnitFact(code="1.2.1", type="scene", parent="1.2", title="Stairs", featured_objects=["char_mara", "char_tom"]),
])
def test_decode_inverts_encode(fact):
    line = codec.encode(fact)
    assert "\n" not in line
    assert codec.decode(line) == fact


def test_encoding_is_self_describing():
    line = codec.encode(EntityFact(kind="char", code="char_mara", name="Mara", relationships={"char_tom": "sister"}))
    assert line.startswith("U1|char|char_mara|")
    fact = codec.decode(line)
    assert fact.kind == "char"
    assert fact.relationships == {"char_tom": "sister"}


def test_none_fields_are_omitted():
    assert codec.encode(ConceptFact(code="theme_duty")) == "U1|concept|theme_duty"


@pytest.mark.parametrize("line", [
    "char|char_mara|name=Mara",
    "U2|char|char_mara",
    "U1|wizard|merlin",
    "U1|char|",
    "U1|char|char_mara|nameMara",
    "U1|event|evt_1|seq=first",
    "U1|char|char_mara|rel=char_tom",
])
def test_decode_rejects_malformed_lines(line):
    with pytest.raises(NotationError):
        codec.decode(line)


def test_encode_rejects_unrepresentable_facts():
    with pytest.raises(NotationError):
        codec.encode(ConceptFact(code=""))
    with pytest.raises(NotationError):
        codec.encode(UnitFact(code="u1", featured_objects=["char_a", ""]))


def test_unknown_fields_are_ignored_for_forward_compatibility():
    fact = codec.decode("U1|loc|loc_light|name=Light|mood=grim")
    assert fact == EntityFact(kind="loc", code="loc_light", name="Light")


def test_extract_big_picture_concepts():
    facts = codec.extract_facts(1, big_picture_output(), summary_length=40)
    assert [f.code for f in facts] == ["core_concept", "thematic_framework", "narrative_arc", "world_vision", "core_conflicts"]
    assert all(len(f.summary) <= 40 for f in facts)


def test_extract_objects_events_and_threads():
    facts = codec.extract_facts(2, objects_output(characters=3, locations=2, events=2))
    kinds = [f.kind for f in facts]
    assert kinds.count("char") == 3
    assert kinds.count("loc") == 2
    assert kinds.count("event") == 2
    thread = [f for f in facts if f.kind == "ent"][0]
    assert thread.type == "plot_thread"
    assert thread.relationships == {"char_001": "involves"}
    events = [f for f in facts if f.kind == "event"]
    assert [e.seq for e in events] == [1, 2]


def test_extract_structure_keeps_hierarchy():
    facts = codec.extract_facts(3, structure_output(acts=2, chapters=2))
    by_code = {f.code: f for f in facts}
    assert by_code["1"].level == 1 and by_code["1"].parent is None
    assert by_code["2.1"].level == 2 and by_code["2.1"].parent == "2"


def test_extract_structure_generates_missing_codes():
    facts = codec.extract_facts(3, {"acts": [{"title": "One", "chapters": [{"title": "A"}, {"title": "B"}]}]})
    assert [f.code for f in facts] == ["1", "1.1", "1.2"]


def test_extract_granular_units():
    facts = codec.extract_facts(4, granular_output(parent_codes=("1.1",)))
    assert [(f.code, f.parent) for f in facts] == [("1.1.1", "1.1"), ("1.1.2", "1.1")]


def test_parse_ai_text_skips_noise():
    text = """Here are the notations:
```
U1|char|char_mara|name=Mara
- U1|loc|loc_light|name=Light
U1|bogus|x
not a notation
```"""
    facts = codec.parse_ai_output_to_notations(text, 2)
    assert [f.code for f in facts] == ["char_mara", "loc_light"]


def test_parse_ai_output_falls_back_to_rule_extraction_for_objects():
    facts = codec.parse_ai_output_to_notations(structure_output(acts=1, chapters=1), 3)
    assert [f.code for f in facts] == ["1", "1.1"]


def test_to_rows_deduplicates():
    fact = ConceptFact(code="a", summary="b")
    rows = codec.to_rows([fact, fact])
    assert rows == [("concept", "a", "U1|concept|a|summary=b", {"code": "a", "summary": "b", "kind": "concept"})]


def test_diff_rows_reports_changed_added_and_removed():
    before = [("char", "char_a", "U1|char|char_a|name=A"), ("loc", "loc_x", "U1|loc|loc_x")]
    after = [("char", "char_a", "U1|char|char_a|name=Anna"), ("char", "char_b", "U1|char|char_b")]
    changes = codec.diff_rows(before, after)
    assert changes == [
        ("char", "char_a", "U1|char|char_a|name=A", "U1|char|char_a|name=Anna"),
        ("char", "char_b", None, "U1|char|char_b"),
        ("loc", "loc_x", "U1|loc|loc_x", None),
    ]
    assert codec.diff_rows(after, after) == []


def test_expand_notation_produces_instruction():
    line = codec.encode(EntityFact(kind="char", code="char_mara", name="Mara Voss", summary="The keeper",
                                   relationships={"char_tom": "brother"}))
    expanded = codec.expand_notation(line)
    assert expanded["code"] == "char_mara"
    assert "Mara Voss" in expanded["instruction"]
    assert any("brother" in r and "char_tom" in r for r in expanded["requirements"])
