from typing import Any, Dict, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse


class EngagementError(Exception):
    """Base class for failures raised by the engagement services."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    error_code: str = "ENGAGEMENT_ERROR"

    def __init__(self, detail: str, metadata: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.detail = detail
        self.metadata = metadata or {}


class NotFoundError(EngagementError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "RESOURCE_NOT_FOUND"

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(
            f"{resource} with id {resource_id} not found",
            metadata={"resource": resource, "id": resource_id}
        )


class NotAvailableError(EngagementError):
    """The story exists but is outside its publication window."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "STORY_NOT_AVAILABLE"

    def __init__(self, story_id: int):
        super().__init__(
            f"Story with id {story_id} is not currently published",
            metadata={"story_id": story_id}
        )


class InvalidArgumentError(EngagementError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = "INVALID_ARGUMENT"

    def __init__(self, field: str, detail: str):
        super().__init__(detail, metadata={"field": field})


class DuplicateInteractionError(EngagementError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "DUPLICATE_INTERACTION"

    def __init__(self, member_id: int, story_id: int, action: str):
        super().__init__(
            f"Member {member_id} already has a '{action}' interaction on story {story_id}",
            metadata={"member_id": member_id, "story_id": story_id, "action": action}
        )


class AlreadyRatedError(EngagementError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "ALREADY_RATED"

    def __init__(self, member_id: int, story_id: int):
        super().__init__(
            f"Member {member_id} has already rated story {story_id}. Use update instead.",
            metadata={"member_id": member_id, "story_id": story_id}
        )


class TransientStoreError(EngagementError):
    """Storage or cache failure. The whole operation is safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "TRANSIENT_STORE_FAILURE"

    def __init__(self, detail: str = "Storage temporarily unavailable"):
        super().__init__(detail)


class APIError(HTTPException):
    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: str = None,
        metadata: Dict[str, Any] = None
    ):
        super().__init__(
            status_code=status_code,
            detail={
                "message": detail,
                "error_code": error_code or "UNKNOWN_ERROR",
                "metadata": metadata or {}
            }
        )

    @classmethod
    def from_engagement_error(cls, exc: EngagementError) -> "APIError":
        return cls(
            status_code=exc.status_code,
            detail=exc.detail,
            error_code=exc.error_code,
            metadata=exc.metadata
        )


async def engagement_error_handler(request: Request, exc: EngagementError) -> JSONResponse:
    api_error = APIError.from_engagement_error(exc)
    return JSONResponse(status_code=api_error.status_code, content={"detail": api_error.detail})
