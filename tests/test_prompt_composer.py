"""Unit tests for system prompt composition and persona lookup."""
import pytest
from conftest import PERSONAS

from companion.errors import TurnValidationError
from companion.models import Route
from companion.personas import DEFAULT_PERSONAS_PATH, PersonaRegistry
from companion.prompt_composer import PromptComposer
from companion.prompts.persona_prompts import MEMORY_SECTION_HEADER, ROUTE_MODIFIERS, SAFETY_SUFFIX


@pytest.fixture
def composer():
    return PromptComposer()


class TestPromptComposer:
    """Section order and omission."""

    def test_all_sections_in_order(self, composer):
        prompt = composer.compose(
            PERSONAS[0],
            memory_context="### 用户背景记忆\n- 喜欢跑步",
            example_block="## 优秀回复参考\n### 示例 1",
            route=Route.ASSESSMENT,
        )

        positions = [
            prompt.index(PERSONAS[0].system_prompt.splitlines()[0]),
            prompt.index(MEMORY_SECTION_HEADER),
            prompt.index("## 优秀回复参考"),
            prompt.index(ROUTE_MODIFIERS[Route.ASSESSMENT]),
            prompt.index(SAFETY_SUFFIX),
        ]
        assert positions == sorted(positions)
        assert prompt.endswith(SAFETY_SUFFIX)

    def test_empty_sections_omitted(self, composer):
        prompt = composer.compose(PERSONAS[1], memory_context="  ", example_block="")

        assert MEMORY_SECTION_HEADER not in prompt
        assert "优秀回复参考" not in prompt
        assert prompt == f"{PERSONAS[1].system_prompt}\n\n{SAFETY_SUFFIX}"

    @pytest.mark.parametrize("route", list(Route))
    def test_route_modifier_selected(self, composer, route):
        prompt = composer.compose(PERSONAS[0], route=route)

        assert ROUTE_MODIFIERS[route] in prompt
        for other in Route:
            if other != route:
                assert ROUTE_MODIFIERS[other] not in prompt

    def test_crisis_suffix_carries_hotline(self, composer):
        assert "400-161-9995" in composer.compose(PERSONAS[0], route=Route.CRISIS)


class TestPersonaRegistry:
    """Persona lookup."""

    def test_default_when_unspecified(self, personas):
        assert personas.get(None).id == "companion"

    def test_lookup_by_id(self, personas):
        assert personas.get("mentor").temperature == 0.9

    def test_unknown_persona(self, personas):
        with pytest.raises(TurnValidationError) as exc_info:
            personas.get("pirate")
        assert exc_info.value.error_code == "unknown_persona"
        assert exc_info.value.status_code == 400

    def test_missing_default_rejected(self):
        with pytest.raises(ValueError):
            PersonaRegistry(PERSONAS, default_id="pirate")

    def test_bundled_personas_load(self):
        registry = PersonaRegistry.from_json(DEFAULT_PERSONAS_PATH, default_id="companion")

        assert set(registry.ids()) >= {"companion", "listener", "mentor"}
        assert registry.default().system_prompt
