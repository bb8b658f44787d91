"""Custom exception classes for the application."""

from fastapi import HTTPException, status


class NotFoundError(HTTPException):
    def __init__(self, resource: str = "Resource"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found",
        )


class ForbiddenError(HTTPException):
    def __init__(self, detail: str = "You don't have permission to access this resource"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
        )


class BusinessRuleError(HTTPException):
    """A domain rule refused the operation; nothing was changed."""

    def __init__(self, detail: str, code: str = "business_rule"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )
        self.code = code


class ConflictError(HTTPException):
    def __init__(self, detail: str = "Another request is already in progress"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )
