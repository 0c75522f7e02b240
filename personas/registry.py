"""
Persona Registry — Resolves persona names to timing profiles.

Built-in personas are always available; extra personas (or overrides of a
built-in) come from the `personas:` section of settings.yaml:

    personas:
      Jordan:
        read_cps: [11, 15]
        type_cps: [6, 9]
        comp_base_ms: [300, 900]
        comp_ms_per_token: [1, 3]
        write_ms_per_char: [3, 6]
        jitter_ms: [150, 700]
        pauses: { prob: 0.2, each_ms: [300, 800], max: 2 }
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

from pydantic import ValidationError

from models.schemas import PersonaProfile

logger = structlog.get_logger()


BUILTIN_PERSONAS: dict[str, dict[str, Any]] = {
    "Carlos": {
        "read_cps": (9, 12),
        "type_cps": (3, 6),
        "comp_base_ms": (600, 1500),
        "comp_ms_per_token": (2, 5),
        "write_ms_per_char": (5, 10),
        "jitter_ms": (250, 1200),
        "pauses": {"prob": 0.35, "each_ms": (400, 1200), "max": 2},
    },
    "Alex": {
        "read_cps": (10, 14),
        "type_cps": (5, 8),
        "comp_base_ms": (400, 1200),
        "comp_ms_per_token": (1, 4),
        "write_ms_per_char": (4, 8),
        "jitter_ms": (200, 900),
        "pauses": {"prob": 0.25, "each_ms": (300, 900), "max": 2},
    },
    "Sam": {
        "read_cps": (8, 11),
        "type_cps": (4, 7),
        "comp_base_ms": (500, 1300),
        "comp_ms_per_token": (2, 4),
        "write_ms_per_char": (6, 12),
        "jitter_ms": (300, 1000),
        "pauses": {"prob": 0.30, "each_ms": (350, 1000), "max": 3},
    },
}


class UnknownPersonaError(LookupError):
    """Raised when a persona name has no registered profile."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown persona: {name}")


class PersonaStore(abc.ABC):
    """Read-only lookup of persona timing profiles."""

    @abc.abstractmethod
    def get(self, name: str) -> PersonaProfile:
        """Return the named profile or raise UnknownPersonaError."""
        ...

    @abc.abstractmethod
    def names(self) -> list[str]:
        ...


class InMemoryPersonaStore(PersonaStore):
    """Dict-backed store seeded with the built-in personas."""

    def __init__(self, include_builtins: bool = True):
        self._profiles: dict[str, PersonaProfile] = {}
        if include_builtins:
            self.register_from_config(BUILTIN_PERSONAS)

    def register(self, profile: PersonaProfile):
        if not profile.name:
            raise ValueError("Persona profile needs a name")
        replaced = profile.name in self._profiles
        self._profiles[profile.name] = profile
        logger.debug("persona_registered", persona=profile.name, replaced=replaced)

    def register_from_config(self, config: dict[str, dict[str, Any]]):
        """Register every persona in a name → ranges mapping."""
        for name, raw in (config or {}).items():
            try:
                profile = PersonaProfile(name=name, **raw)
            except (ValidationError, TypeError) as e:
                logger.error("invalid_persona", persona=name, error=str(e))
                raise ValueError(f"Invalid persona '{name}': {e}") from e
            self.register(profile)

    def get(self, name: str) -> PersonaProfile:
        profile = self._profiles.get(name)
        if profile is None:
            raise UnknownPersonaError(name)
        return profile

    def names(self) -> list[str]:
        return sorted(self._profiles)


def create_persona_store(config: Optional[dict[str, dict[str, Any]]] = None) -> PersonaStore:
    """Factory: built-ins plus any personas declared in configuration."""
    store = InMemoryPersonaStore()
    if config:
        store.register_from_config(config)
        logger.info("personas_loaded", count=len(config))
    return store
