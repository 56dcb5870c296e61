from __future__ import annotations

from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from src.services.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_records(model: Type[ModelT], data: Any, container_key: Optional[str] = None) -> List[ModelT]:
    if isinstance(data, dict):
        data = data.get(container_key or "items", [])
    if data is None:
        return []
    try:
        return [model.model_validate(item) for item in data]
    except SchemaError as exc:
        raise ValidationError(f"Malformed {model.__name__} payload from booking API: {exc}") from exc


def parse_record(model: Type[ModelT], data: Any) -> ModelT:
    try:
        return model.model_validate(data)
    except SchemaError as exc:
        raise ValidationError(f"Malformed {model.__name__} payload from booking API: {exc}") from exc
