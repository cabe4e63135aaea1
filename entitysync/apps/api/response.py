from __future__ import annotations

from typing import Any, Generic, TypeVar

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class Envelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


class ItemList(BaseModel, Generic[T]):
    """Sync job and alert listings; ``count`` is the size of this page."""

    items: list[T]
    count: int

    @classmethod
    def of(cls, items: list[T]) -> ItemList[T]:
        return cls(items=items, count=len(items))


def _meta(request: Request) -> dict[str, Any]:
    # Set by the app middleware; errors raised before it ran fall back to the header.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id", "")
    return ResponseMeta(request_id=request_id).model_dump()


def envelope(request: Request, data: BaseModel | dict[str, Any]) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": _meta(request)}


def error_body(
    request: Request, *, code: str, message: str, details: dict[str, Any] | None = None
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
