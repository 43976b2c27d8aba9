"""Method allow-list and parameter validation.

Every call, direct or inside a batch, passes two gates before a handler runs:

1. ``is_allowed``: the method name must be in the static allow-list (exact,
   case-sensitive match).
2. ``validate``: each required parameter must be present and carry the
   declared primitive type. Extra parameters are ignored.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Literal, NamedTuple

type PrimitiveType = Literal["number", "string", "boolean", "table"]
"""Primitive types a schema field may declare (JSON-decoded values)."""


@dataclass(frozen=True)
class FieldSpec:
    """A required parameter: its name and primitive type."""

    name: str
    type: PrimitiveType


class ValidationResult(NamedTuple):
    """Outcome of :meth:`Validator.validate`.

    Attributes:
        ok: Whether the parameters satisfy the schema.
        message: Description of the first violation, ``None`` when ``ok``.
    """

    ok: bool
    message: str | None = None


def primitive_type_of(value: object) -> str:
    """Name the primitive type of a JSON-decoded value."""
    if value is None:
        return "nil"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping | list | tuple):
        return "table"
    return type(value).__name__


class Validator:
    """Allow-list plus per-method parameter schema.

    Args:
        schemas: Mapping of method name to its ordered required fields. The
            keys form the allow-list.
    """

    def __init__(self, schemas: Mapping[str, Iterable[FieldSpec]]) -> None:
        self._schemas: dict[str, tuple[FieldSpec, ...]] = {
            method: tuple(fields) for method, fields in schemas.items()
        }

    @property
    def methods(self) -> list[str]:
        """Allow-listed method names, in registration order."""
        return list(self._schemas)

    def schema_for(self, method: str) -> tuple[FieldSpec, ...] | None:
        """Required fields of *method*, or ``None`` if it is not allowed."""
        return self._schemas.get(method)

    def is_allowed(self, method: object) -> bool:
        """Return whether *method* is in the allow-list (exact match)."""
        return isinstance(method, str) and method in self._schemas

    def validate(self, method: str, params: object) -> ValidationResult:
        """Check *params* against the schema of *method*.

        Presence is checked before type for each field, in schema order; the
        first violation found is reported.
        """
        schema = self._schemas.get(method)
        if schema is None:
            return ValidationResult(False, f"Unknown method: {method}")

        if not schema:
            return ValidationResult(True)

        if not isinstance(params, Mapping):
            return ValidationResult(
                False, "Missing params: expected a table of parameters"
            )

        for field in schema:
            value = params.get(field.name)
            if value is None:
                return ValidationResult(
                    False, f"Missing required parameter: {field.name}"
                )
            actual = primitive_type_of(value)
            if actual != field.type:
                return ValidationResult(
                    False,
                    f"Invalid parameter type for '{field.name}': "
                    f"expected {field.type}, got {actual}",
                )

        return ValidationResult(True)


# ── Default MOHO method catalogue ────────────────────────────────────────


def _fields(*pairs: tuple[str, PrimitiveType]) -> tuple[FieldSpec, ...]:
    return tuple(FieldSpec(name, type_) for name, type_ in pairs)


_LAYER = ("layerId", "number")
_BONE = ("boneId", "number")
_FRAME = ("frame", "number")
_CHANNEL = ("channel", "string")

DEFAULT_METHOD_SCHEMAS: dict[str, tuple[FieldSpec, ...]] = {
    # Read-only
    "document.getInfo": (),
    "document.getLayers": (),
    "layer.getProperties": _fields(_LAYER),
    "layer.getChildren": _fields(_LAYER),
    "layer.getBones": _fields(_LAYER),
    "bone.getProperties": _fields(_LAYER, _BONE),
    "animation.getKeyframes": _fields(_LAYER, _CHANNEL),
    "animation.getFrameState": _fields(_LAYER, _FRAME),
    "mesh.getPoints": _fields(_LAYER),
    "mesh.getShapes": _fields(_LAYER),
    # Mutations
    "bone.setTransform": _fields(_LAYER, _BONE, _FRAME),
    "bone.selectBone": _fields(_LAYER, _BONE),
    "layer.setTransform": _fields(_LAYER, _FRAME),
    "layer.setVisibility": _fields(_LAYER, ("visible", "boolean")),
    "layer.setOpacity": _fields(_LAYER, _FRAME, ("opacity", "number")),
    "layer.setName": _fields(_LAYER, ("name", "string")),
    "layer.selectLayer": _fields(_LAYER),
    "animation.setKeyframe": _fields(_LAYER, _CHANNEL, _FRAME),
    "animation.deleteKeyframe": _fields(_LAYER, _CHANNEL, _FRAME),
    "animation.setInterpolation": _fields(_LAYER, _CHANNEL, _FRAME, ("mode", "string")),
    "document.setFrame": _fields(_FRAME),
    # Visual feedback (frame/width/height are optional)
    "document.screenshot": (),
    # Batch execution
    "batch.execute": _fields(("operations", "table")),
}
"""Allow-list and required parameters of the MOHO host methods."""


def default_validator() -> Validator:
    """Build a fresh :class:`Validator` for the MOHO method catalogue."""
    return Validator(DEFAULT_METHOD_SCHEMAS)
