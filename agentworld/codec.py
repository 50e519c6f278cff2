"""Typed codec between pydantic records and flat store hashes.

Every hash record passes through here in both directions. Values are
stored as plain strings (decimals without exponent, booleans as 1/0)
so atomic store increments can operate on them in place; decoding
re-validates the whole record.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Generic, TypeVar

import orjson
from pydantic import BaseModel, ValidationError

from agentworld.exceptions import CorruptRecordError
from agentworld.types import format_amount

M = TypeVar("M", bound=BaseModel)


def encode_value(value: object) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Decimal):
        return format_amount(value)
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (dict, list)):
        return orjson.dumps(value).decode()
    return str(value)


class RecordCodec(Generic[M]):
    """Encode/decode one record type."""

    def __init__(self, model: type[M]) -> None:
        self._model = model

    def encode(self, record: M) -> dict[str, str]:
        return {
            name: encode_value(getattr(record, name))
            for name in self._model.model_fields
            if getattr(record, name) is not None
        }

    def decode(self, raw: dict[str, str]) -> M:
        try:
            return self._model.model_validate(raw)
        except ValidationError as e:
            raise CorruptRecordError(
                f"Stored {self._model.__name__} failed validation: {e}"
            ) from e

    def decode_optional(self, raw: dict[str, str]) -> M | None:
        return self.decode(raw) if raw else None


def dumps(record: BaseModel) -> str:
    """Whole-document JSON for list entries."""
    return orjson.dumps(record.model_dump(mode="json")).decode()


def loads(model: type[M], raw: str) -> M:
    try:
        return model.model_validate(orjson.loads(raw))
    except (orjson.JSONDecodeError, ValidationError) as e:
        raise CorruptRecordError(f"Stored {model.__name__} failed validation: {e}") from e
