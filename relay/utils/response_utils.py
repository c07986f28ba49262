"""
Response utility functions for standardized API responses.
"""
from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def success_response(
    message: str = "Response was successful",
    data: Optional[Any] = None,
    status_code: int = 200,
    **kwargs
) -> JSONResponse:
    """
    Create a standardized success response.

    Args:
        message: Success message
        data: Response data, pydantic models and datetimes included
        status_code: HTTP status code (default: 200)
        **kwargs: Additional top-level fields

    Returns:
        JSONResponse of the form {"status": "success", "message": ..., "data": ...}
    """
    response = {
        "status": "success",
        "message": message,
        "data": jsonable_encoder(data) if data is not None else {}
    }
    response.update(kwargs)

    return JSONResponse(content=response, status_code=status_code)


def error_response(
    code: str,
    message: str,
    path: str,
    status_code: int = 400,
    **details
) -> JSONResponse:
    """
    Create a standardized error response.

    Args:
        code: Machine readable error code (e.g. VALIDATION_ERROR)
        message: Human readable message, never containing internals
        path: Request path the error belongs to
        status_code: HTTP status code (default: 400)
        **details: Extra fields such as `field` or `details`

    Returns:
        JSONResponse of the form {"error": {"code", "message", "path", ...}}
    """
    error = {"code": code, "message": message, "path": path}
    error.update({key: value for key, value in details.items() if value is not None})

    return JSONResponse(content={"error": jsonable_encoder(error)}, status_code=status_code)
