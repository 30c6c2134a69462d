# Shared utilities
from .response_utils import success_response, error_response

__all__ = ["success_response", "error_response"]
