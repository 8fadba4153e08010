"""System prompt composition."""
from typing import Optional

from companion.models import Persona, Route
from companion.prompts.persona_prompts import MEMORY_SECTION_HEADER, ROUTE_MODIFIERS, SAFETY_SUFFIX


class PromptComposer:
    """Assemble the final system prompt for a turn.

    Sections, in order: persona instructions, memory context, retrieved
    examples, route modifier, safety suffix. Empty sections are left out
    entirely.
    """

    def compose(
        self,
        persona: Persona,
        memory_context: str = "",
        example_block: str = "",
        route: Optional[Route] = None,
    ) -> str:
        """
        Build the system prompt.

        Args:
            persona: Persona whose base instructions lead the prompt
            memory_context: Rendered memory block, "" when none
            example_block: Rendered golden examples, "" when none
            route: Triage route selecting the mode modifier

        Returns:
            Final system prompt
        """
        sections = [persona.system_prompt.strip()]

        if memory_context.strip():
            sections.append(f"{MEMORY_SECTION_HEADER}\n{memory_context.strip()}")

        if example_block.strip():
            sections.append(example_block.strip())

        modifier = ROUTE_MODIFIERS.get(route) if route is not None else None
        if modifier:
            sections.append(modifier)

        sections.append(SAFETY_SUFFIX)
        return "\n\n".join(sections)
