"""Typed habit values and their JSON encoding at the storage boundary.

Every habit kind maps to exactly one value shape:

* ``boolean``: the habit was done or not (``{"shape": "boolean", "done": true}``)
* ``numeric``: an amount such as glasses of water or minutes of meditation
* ``structured``: a free-form object (meals, anything under "other")

Submissions may carry the bare value (``true``, ``2.5``, ``{"meal": ...}``);
``coerce_value`` wraps it in the shape for its kind. Stored rows are decoded
with ``decode_value`` which raises ``MalformedValueError`` when the payload
does not match the kind.
"""

import json
import math
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .models import HabitKind


class MalformedValueError(ValueError):
    """Raised when a habit value does not match the shape of its kind."""

    def __init__(self, habit_type: HabitKind, reason: str) -> None:
        super().__init__(f"Malformed value for {habit_type.value}: {reason}")
        self.habit_type = habit_type


class BooleanValue(BaseModel):
    """Done / not done."""

    shape: Literal["boolean"] = "boolean"
    done: bool

    def scalar(self) -> bool:
        return self.done


class NumericValue(BaseModel):
    """An amount, optionally with a unit."""

    shape: Literal["numeric"] = "numeric"
    amount: float = Field(allow_inf_nan=False)
    unit: str | None = None

    def scalar(self) -> float:
        return self.amount


class StructuredValue(BaseModel):
    """Free-form object with no numeric interpretation."""

    shape: Literal["structured"] = "structured"
    data: dict[str, Any] = Field(default_factory=dict)

    def scalar(self) -> dict[str, Any]:
        return self.data


HabitValue = Annotated[
    BooleanValue | NumericValue | StructuredValue,
    Field(discriminator="shape"),
]

_value_adapter: TypeAdapter[BooleanValue | NumericValue | StructuredValue] = TypeAdapter(
    HabitValue
)

# Shape expected for each habit kind
VALUE_SHAPES: dict[HabitKind, str] = {
    HabitKind.WATER: "numeric",
    HabitKind.SLEEP: "numeric",
    HabitKind.FASTING: "numeric",
    HabitKind.MEDITATION: "numeric",
    HabitKind.EXERCISE: "numeric",
    HabitKind.SUNLIGHT: "numeric",
    HabitKind.SAUNA: "numeric",
    HabitKind.BREATHING: "numeric",
    HabitKind.CAFFEINE: "numeric",
    HabitKind.ALCOHOL: "numeric",
    HabitKind.CRYOTHERAPY: "boolean",
    HabitKind.SOCIAL_CONTACT: "boolean",
    HabitKind.MASSAGE: "boolean",
    HabitKind.JOURNALING: "boolean",
    HabitKind.GROUNDING: "boolean",
    HabitKind.SUPPLEMENTS: "boolean",
    HabitKind.ACTIVE_REST: "boolean",
    HabitKind.STRESS_MANAGEMENT: "boolean",
    HabitKind.NUTRITION: "structured",
    HabitKind.OTHER: "structured",
}


def shape_for(habit_type: HabitKind) -> str:
    """Return the value shape for a habit kind."""
    return VALUE_SHAPES[habit_type]


def coerce_value(habit_type: HabitKind, raw: Any) -> BooleanValue | NumericValue | StructuredValue:
    """Build the typed value for a submitted raw value.

    Accepts either an already tagged object or the bare value.

    Raises:
        MalformedValueError: If the value cannot represent the habit kind.
    """
    shape = shape_for(habit_type)

    if isinstance(raw, BaseModel):
        raw = raw.model_dump()

    if isinstance(raw, dict) and "shape" in raw:
        value = _validate(habit_type, raw)
    elif shape == "boolean":
        if not isinstance(raw, bool):
            raise MalformedValueError(habit_type, f"expected a boolean, got {type(raw).__name__}")
        value = BooleanValue(done=raw)
    elif shape == "numeric":
        # bool is an int subclass; a checkbox is not an amount
        if isinstance(raw, bool) or not isinstance(raw, int | float):
            raise MalformedValueError(habit_type, f"expected a number, got {type(raw).__name__}")
        if not math.isfinite(raw):
            raise MalformedValueError(habit_type, f"expected a finite number, got {raw}")
        value = NumericValue(amount=float(raw))
    else:
        if not isinstance(raw, dict):
            raise MalformedValueError(habit_type, f"expected an object, got {type(raw).__name__}")
        value = StructuredValue(data=raw)

    if value.shape != shape:
        raise MalformedValueError(habit_type, f"expected shape {shape}, got {value.shape}")
    return value


def encode_value(value: BooleanValue | NumericValue | StructuredValue) -> str:
    """Serialize a typed value for the ``value`` column."""
    return value.model_dump_json(exclude_none=True)


def decode_value(habit_type: HabitKind, stored: str) -> BooleanValue | NumericValue | StructuredValue:
    """Deserialize a stored value and check it against its habit kind.

    Raises:
        MalformedValueError: If the payload is not valid JSON, is not a known
            shape, or has a shape other than the kind's.
    """
    try:
        raw = json.loads(stored)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedValueError(habit_type, f"invalid JSON ({e})") from e

    if not isinstance(raw, dict) or "shape" not in raw:
        # Rows written before values were tagged hold the bare value
        return coerce_value(habit_type, raw)

    value = _validate(habit_type, raw)
    expected = shape_for(habit_type)
    if value.shape != expected:
        raise MalformedValueError(habit_type, f"expected shape {expected}, got {value.shape}")
    return value


def _validate(habit_type: HabitKind, raw: dict[str, Any]) -> BooleanValue | NumericValue | StructuredValue:
    try:
        return _value_adapter.validate_python(raw)
    except ValidationError as e:
        raise MalformedValueError(habit_type, str(e.errors()[0]["msg"])) from e
