from pathlib import Path

import pytest

from awf_engine.actions import build_registry
from awf_engine.config import Settings
from awf_engine.models import (
    EntryPoint,
    GraphEdge,
    GraphNode,
    NpcDoc,
    RulesetDoc,
    ScenarioDoc,
    ScenarioGraph,
    SlotPolicy,
    TimeBand,
    TimeConfig,
    WorldDoc,
)
from awf_engine.storage import Storage

STORY_ID = "story-whispercross"


def seed_content(storage: Storage) -> None:
    """A small world with one scenario, two NPCs and relationships attached."""
    storage.save_world(WorldDoc(
        id="mystika",
        version="1",
        slots={
            "tone": "Low fantasy, damp stone and candle smoke.",
            "taboos": "No modern technology.",
            "canon": "The Veil between worlds thins at night.",
        },
        time=TimeConfig(
            default_band="Dawn",
            bands=[
                TimeBand(name="Dawn", max_ticks=4),
                TimeBand(name="Day", max_ticks=8),
                TimeBand(name="Dusk", max_ticks=4),
                TimeBand(name="Night", max_ticks=8),
            ],
        ),
    ))
    storage.save_ruleset(RulesetDoc(
        id="default",
        slots={
            "principles": "Player agency first. Consequences are real.",
            "choice_style": "Offer 2-4 concrete choices.",
        },
    ))
    storage.save_scenario(ScenarioDoc(
        id="kiera_meet",
        slots={"setup": "The player wakes in the ruined chapel of Whispercross."},
        graph=ScenarioGraph(
            entry_node="chapel",
            nodes=[
                GraphNode(id="chapel"),
                GraphNode(id="market"),
                GraphNode(id="kiera_camp"),
                GraphNode(id="veil_gate"),
            ],
            edges=[
                GraphEdge(from_="chapel", to="market"),
                GraphEdge(from_="market", to="kiera_camp", guard="gte(rel.kiera.trust, 20)"),
                GraphEdge(from_="kiera_camp", to="veil_gate", guard="eq(flag.veil_open, true)"),
            ],
        ),
    ))
    storage.save_npc(NpcDoc(
        id="kiera", name="Kiera",
        slots={"bio": "A ranger who guards the forest road.", "persona": "Wary, dry humour."},
    ))
    storage.save_npc(NpcDoc(
        id="thorne", name="Thorne",
        slots={"bio": "The chapel's last keeper."},
    ))
    storage.save_entry_point(EntryPoint(slug="whispercross", story_id=STORY_ID, title="Whispercross"))
    storage.attach_module(STORY_ID, "relationships")
    storage.save_slot_policy("world", SlotPolicy(name="tone", must_keep=True, min_chars=40, priority=5))


@pytest.fixture
def storage(tmp_path: Path) -> Storage:
    s = Storage(tmp_path / "data")
    seed_content(s)
    return s


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(env="test", data_dir=tmp_path / "data", model_timeout=2.0)


@pytest.fixture
def registry(settings: Settings):
    return build_registry(settings)
