"""Persona template registry."""
import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from companion.config import get_settings
from companion.errors import TurnValidationError
from companion.logging_config import get_logger
from companion.models import Persona

logger = get_logger(__name__)

DEFAULT_PERSONAS_PATH = Path(__file__).parent / "data" / "personas.json"


class PersonaRegistry:
    """Lookup of persona templates by id."""

    def __init__(self, personas: Iterable[Persona], default_id: Optional[str] = None):
        self._personas: Dict[str, Persona] = {p.id: p for p in personas}
        self.default_id = default_id or get_settings().default_persona_id
        if self.default_id not in self._personas:
            raise ValueError(f"Default persona '{self.default_id}' is not defined")

    @classmethod
    def from_json(cls, path: Union[str, Path] = DEFAULT_PERSONAS_PATH, default_id: Optional[str] = None) -> "PersonaRegistry":
        """
        Load personas from a JSON file.

        Args:
            path: File holding a list of persona objects
            default_id: Persona used when a request names none

        Returns:
            Populated registry
        """
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)

        personas = [Persona.model_validate(item) for item in raw]
        logger.info("personas_loaded", path=str(path), persona_count=len(personas))
        return cls(personas, default_id=default_id)

    def get(self, persona_id: Optional[str]) -> Persona:
        """
        Resolve a persona.

        Args:
            persona_id: Requested persona, None for the default

        Returns:
            The persona

        Raises:
            TurnValidationError: If the id is unknown
        """
        if persona_id is None:
            return self.default()

        persona = self._personas.get(persona_id)
        if persona is None:
            raise TurnValidationError(f"Unknown persona: {persona_id}", error_code="unknown_persona")
        return persona

    def default(self) -> Persona:
        return self._personas[self.default_id]

    def ids(self) -> List[str]:
        return list(self._personas)


# Global instance
_registry: Optional[PersonaRegistry] = None


def get_persona_registry() -> PersonaRegistry:
    """Get the global persona registry instance."""
    global _registry
    if _registry is None:
        _registry = PersonaRegistry.from_json()
    return _registry
