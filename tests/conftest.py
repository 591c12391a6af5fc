import copy
import json

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from config.loader import load_config
from core.schemas import ProjectSpec
from infra.llm.provider import AIProvider
from infra.storage.kv_cache import KVCache
from infra.storage.sql_db import ObjectStore
from services.stage_orchestrator import StageOrchestrator


class RecordingProvider(AIProvider):
    """按顺序返回预设回复并记录每次调用的提示词"""

    def __init__(self, responses, config=None):
        texts = [r if isinstance(r, str) else json.dumps(r) for r in responses]
        super().__init__(provider="fake", config=config, llm=FakeListChatModel(responses=texts))
        self.calls = []

    def generate_completion(self, prompt, options=None):
        self.calls.append((prompt, options))
        return super().generate_completion(prompt, options)


class BrokenLLM:
    """invoke 时抛出网络错误的模型"""

    def invoke(self, messages):
        raise ConnectionError("connection reset by peer")


@pytest.fixture
def config():
    cfg = copy.deepcopy(load_config())
    cfg["context"]["strategy"] = "full"
    cfg["mentor"]["mode"] = "rubric"
    cfg["mentor"]["ai_insight"] = False
    return cfg


@pytest.fixture
def store(tmp_path):
    return ObjectStore(f"sqlite:///{tmp_path}/progressive.db")


@pytest.fixture
def make_orchestrator(store, config):
    """
    返回 (orchestrator, provider)。每次调用都得到一个新的脚本化提供商。
    """
    def _make(responses, **kwargs):
        provider = RecordingProvider(responses, config)
        orchestrator = StageOrchestrator(
            store, config, provider_factory=lambda ai_config: provider, cache=KVCache(), **kwargs
        )
        return orchestrator, provider
    return _make


@pytest.fixture
def novel_project(store):
    from core.project_manager import ProjectManager
    return ProjectManager.create_project(store, ProjectSpec(
        project_name="The Keeper",
        content_type="novel",
        topic="lighthouse keeper's secret",
        target_audience="adult readers",
        genre="mystery",
        metadata={"tone": "brooding", "pov": "third person limited", "tense": "past"},
    ))


# --- 阶段输出构造 ---

def big_picture_output():
    return {
        "core_concept": {"premise": "A keeper hides a shipwreck survivor for twenty years.", "genre": "literary mystery"},
        "thematic_framework": {"primary_theme": "secrets isolate", "secondary_themes": ["duty", "guilt", "rescue"]},
        "narrative_arc": {"beginning": "A storm", "middle": "An inspector arrives", "end": "The truth surfaces"},
        "world_vision": {"setting": "A rock lighthouse off the Cornish coast", "time_period": "1952"},
        "core_conflicts": {"external": "The inspector", "internal": "The keeper's guilt"},
    }


def objects_output(characters=6, locations=4, events=5, prefix="char"):
    objects = []
    for i in range(1, characters + 1):
        objects.append({
            "type": "character",
            "code": f"{prefix}_{i:03d}",
            "name": f"Character {i:03d}",
            "description": f"Character {i:03d} is a weathered islander whose loyalty to the keeper is tested by the storm.",
            "backstory": "Grew up on the mainland.",
            "relationships": {f"{prefix}_001": "knows"} if i > 1 else {},
        })
    for i in range(1, locations + 1):
        objects.append({
            "type": "location",
            "code": f"loc_{i:03d}",
            "name": f"Location {i:03d}",
            "description": "A wind-scoured place where the fog never fully lifts.",
        })
    timeline = [{
        "time": f"day {i}",
        "description": f"Event {i:03d} changes what the village believes about the light.",
        "type": "main_content",
        "objects": [f"{prefix}_001", "loc_001"],
        "impact": "important",
    } for i in range(1, events + 1)]
    return {
        "objects": objects,
        "timeline": timeline,
        "plot_threads": [{"code": "thread_survivor", "description": "Who is hidden in the lamp room", "related": [f"{prefix}_001"]}],
    }


def structure_output(acts=3, chapters=2):
    return {
        "structure": [{
            "type": "act",
            "code": str(a),
            "title": f"Act {a}",
            "description": f"Act {a} description",
            "children": [{
                "type": "chapter",
                "code": f"{a}.{c}",
                "title": f"Chapter {a}.{c}",
                "description": "A chapter in the life of the light.",
                "objects": ["char_001", "loc_001"],
                "word_count": 5000,
            } for c in range(1, chapters + 1)],
        } for a in range(1, acts + 1)]
    }


def granular_output(parent_codes=("1.1", "1.2")):
    return {
        "granular_units": [{
            "type": "scene",
            "code": f"{parent}.{n}",
            "parent_code": parent,
            "number": n,
            "title": f"Scene {parent}.{n}",
            "description": "The keeper climbs the stairs while the storm rises.",
            "word_count": 1800,
            "style": "descriptive",
            "objects": ["char_001"],
            "conflict": "The survivor is nearly discovered",
            "arc": "calm -> tension",
            "key_lines": ["Nobody comes up here."],
            "notes": "Keep it tight",
        } for parent in parent_codes for n in (1, 2)]
    }
