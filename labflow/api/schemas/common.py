"""Common schemas for the Labflow API."""

from typing import Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts and emits camelCase field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ActionResult(CamelModel):
    """Standard mutation response."""
    ok: bool
    message: str


class ErrorResponse(CamelModel):
    ok: bool = False
    message: str
    detail: Optional[str] = None
