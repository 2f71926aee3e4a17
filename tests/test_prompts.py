"""Tests for awf_engine.prompts — Handlebars module slots and repair suffix."""

import pytest

from awf_engine.actions.relationships import DEFAULT_PARAMS, MODULE_DOC
from awf_engine.models import LinearSection, ModuleActionDef, ModuleDoc
from awf_engine.prompts import (
    PromptError,
    join_sections,
    render_module_slots,
    render_template,
    with_repair_hint,
)


class TestRenderTemplate:
    def test_basic(self) -> None:
        assert render_template("Hi {{name}}", {"name": "Kiera"}) == "Hi Kiera"

    def test_each(self) -> None:
        out = render_template("{{#each xs}}[{{this}}]{{/each}}", {"xs": ["a", "b"]})
        assert out == "[a][b]"

    def test_bad_template_raises(self) -> None:
        with pytest.raises(PromptError):
            render_template("{{#each xs}}unclosed", {"xs": []})


class TestModuleSlots:
    def test_relationships_with_params(self) -> None:
        slots = render_module_slots(MODULE_DOC, DEFAULT_PARAMS)
        assert slots["hints"].startswith("Mechanic: Relationships. ")
        assert "Gains scale 1.0; romance gated at trust ≥ 30; respect consent" in slots["hints"]
        assert slots["actions"] == "relationship.delta;"
        assert slots["params"] == "scale=1.0, minTrust=30"

    def test_module_without_params(self) -> None:
        module = ModuleDoc(
            id="stealth", title="Stealth", state_slice="stealth",
            ai_hints=["Guards notice noise & light."],
            actions=[ModuleActionDef(type="stealth.noise", mode="merge_delta_by_key")],
        )
        slots = render_module_slots(module, {})
        assert slots["hints"] == "Mechanic: Stealth. Guards notice noise & light."
        assert slots["actions"] == "stealth.noise;"
        assert "params" not in slots

    def test_no_actions_slot_when_module_exports_none(self) -> None:
        module = ModuleDoc(id="lore", title="Lore", state_slice="lore")
        assert "actions" not in render_module_slots(module, {})


class TestAssembly:
    def test_join_sections(self) -> None:
        sections = [
            LinearSection(key="core.all", label="CORE", text="# CORE"),
            LinearSection(key="input.all", label="INPUT", text="# INPUT"),
        ]
        assert join_sections(sections) == "# CORE\n\n# INPUT"

    def test_repair_hint_appended(self) -> None:
        out = with_repair_hint("PROMPT", "Include all required fields: scn, txt.")
        assert out.startswith("PROMPT\n\n# REPAIR")
        assert out.endswith("Include all required fields: scn, txt.")
