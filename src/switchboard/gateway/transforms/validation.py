"""Pydantic models for Anthropic Messages API request validation.

These models validate incoming requests to the gateway before any
translation work. Only the structure the translators rely on is enforced;
unknown fields pass through untouched.
"""

from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr
from pydantic import ValidationError as PydanticValidationError

from ..errors import RequestValidationError

# Report violations in this order, regardless of pydantic's internal ordering
_FIELD_ORDER = ("model", "max_tokens", "messages")

_FIELD_MESSAGES = {
    "model": "must be a non-empty string",
    "max_tokens": "must be a positive number",
    "messages": "must be an array with at least one element",
}


class MessagesRequest(BaseModel):
    """Anthropic Messages API request body."""

    model_config = ConfigDict(extra="allow")

    model: StrictStr = Field(min_length=1)
    max_tokens: Annotated[StrictInt, Field(gt=0)] | Annotated[StrictFloat, Field(gt=0)]
    messages: list[Any] = Field(min_length=1)


def validate_request(body: Any) -> list[RequestValidationError]:
    """Validate an Anthropic Messages API request body.

    Args:
        body: The parsed request body

    Returns:
        One error per offending field (empty if valid)
    """
    if not isinstance(body, dict):
        return [RequestValidationError("body", "request body must be a JSON object")]

    try:
        MessagesRequest.model_validate(body)
    except PydanticValidationError as e:
        fields: set[str] = set()
        for error in e.errors():
            loc = error.get("loc") or ()
            if loc:
                fields.add(str(loc[0]))
        return [
            RequestValidationError(name, _FIELD_MESSAGES[name])
            for name in _FIELD_ORDER
            if name in fields
        ]

    return []
