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
        data: Response data, encoded with ``jsonable_encoder`` (datetimes, models)
        status_code: HTTP status code (default: 200)
        **kwargs: Additional top-level fields

    Returns:
        JSONResponse shaped as ``{"success": true, "message", "data"}``
    """
    response = {
        "success": True,
        "message": message,
        "data": data if data is not None else {}
    }
    response.update(kwargs)

    return JSONResponse(content=jsonable_encoder(response), status_code=status_code)


def error_response(
    message: str = "An error occurred",
    data: Optional[Any] = None,
    status_code: int = 400,
    **kwargs
) -> JSONResponse:
    """Create a standardized error response shaped as ``{"success": false, "message", "data"}``."""
    response = {
        "success": False,
        "message": message,
        "data": data if data is not None else {}
    }
    response.update(kwargs)

    return JSONResponse(content=jsonable_encoder(response), status_code=status_code)
