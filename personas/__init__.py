"""Persona timing profiles."""
from personas.registry import (
    BUILTIN_PERSONAS,
    InMemoryPersonaStore,
    PersonaStore,
    UnknownPersonaError,
    create_persona_store,
)

__all__ = [
    "BUILTIN_PERSONAS", "InMemoryPersonaStore", "PersonaStore",
    "UnknownPersonaError", "create_persona_store",
]
