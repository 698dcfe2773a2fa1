"""
Custom exception classes and error handling utilities.
"""

from typing import Optional, Dict, Any
import time
import traceback


class PlaceHarvesterError(Exception):
    """Base exception for all place harvester errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NavigationError(PlaceHarvesterError):
    """Exception raised when a tab could be neither updated nor opened."""
    pass


class CaptureTimeoutError(PlaceHarvesterError):
    """Exception raised when no matching network event arrived in time."""
    pass


class ExtractionError(PlaceHarvesterError):
    """Exception raised when a loaded page yields no usable record."""
    pass


class KeyMismatchError(ExtractionError):
    """Exception raised when the extracted place id contradicts the dispatched URL."""
    pass


class MessageDeliveryError(PlaceHarvesterError):
    """Exception raised when a message cannot reach the other context."""
    pass


class EnrichmentError(PlaceHarvesterError):
    """Exception raised by the text summarization collaborator."""
    pass


class ConfigurationError(PlaceHarvesterError):
    """Exception raised for configuration-related issues."""
    pass


class ValidationError(PlaceHarvesterError):
    """Exception raised for data validation failures."""
    pass


class StateManagementError(PlaceHarvesterError):
    """Exception raised during state management operations."""
    pass


def handle_error(
    error: Exception,
    logger,
    context: Optional[Dict[str, Any]] = None,
    reraise: bool = True
) -> None:
    """
    Handle and log errors with context information.

    Args:
        error: The exception that occurred
        logger: Structured logger instance to use for logging
        context: Additional context information
        reraise: Whether to reraise the exception after logging
    """
    error_context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "traceback": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
        **(context or {})
    }

    if isinstance(error, PlaceHarvesterError):
        error_context.update(error.details)

    logger.error("Error occurred", **error_context)

    if reraise:
        raise error


def retry_on_error(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff_factor: float = 2.0,
    exceptions: tuple = (Exception,)
):
    """
    Decorator for retrying functions on specific exceptions.

    Args:
        max_attempts: Maximum number of attempts
        delay: Initial delay between retries in seconds
        backoff_factor: Factor to multiply delay by after each attempt
        exceptions: Tuple of exception types to retry on
    """
    def decorator(func):
        def wrapper(*args, **kwargs):
            current_delay = delay

            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except exceptions:
                    if attempt >= max_attempts - 1:
                        raise
                    time.sleep(current_delay)
                    current_delay *= backoff_factor

        wrapper.__name__ = func.__name__
        wrapper.__doc__ = func.__doc__
        return wrapper
    return decorator
