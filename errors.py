from enum import Enum
from typing import Optional, Dict, Any
from fastapi import HTTPException, status

class ErrorCode(Enum):
    """
    Central registry of API error codes.
    Each code maps to an HTTP status and a default user-facing message.
    """
    # System Errors (1xxx)
    INTERNAL_SERVER_ERROR = ("SYS_1001", status.HTTP_500_INTERNAL_SERVER_ERROR, "An unexpected internal server error occurred.")
    VALIDATION_ERROR = ("SYS_1002", status.HTTP_400_BAD_REQUEST, "The request is invalid.")

    # Directory Errors (2xxx)
    DIRECTORY_USER_NOT_FOUND = ("DIR_2001", status.HTTP_404_NOT_FOUND, "User not found in the directory.")
    DIRECTORY_PERMISSION_DENIED = ("DIR_2002", status.HTTP_403_FORBIDDEN, "Permission denied by the directory.")
    DIRECTORY_UNAVAILABLE = ("DIR_2003", status.HTTP_502_BAD_GATEWAY, "The directory service request failed.")
    DIRECTORY_NOT_CONFIGURED = ("DIR_2004", status.HTTP_500_INTERNAL_SERVER_ERROR, "The directory integration is not configured.")

    # Entitlement Errors (3xxx)
    USER_NOT_FOUND = ("ENT_3001", status.HTTP_404_NOT_FOUND, "The requested user was not found.")
    USER_ALREADY_EXISTS = ("ENT_3002", status.HTTP_409_CONFLICT, "The user already has entitlements.")
    INVALID_ROLES = ("ENT_3003", status.HTTP_400_BAD_REQUEST, "One or more roles are invalid.")
    MIGRATION_FAILED = ("ENT_3004", status.HTTP_500_INTERNAL_SERVER_ERROR, "An error occurred while processing your request.")

    # Scheduler Errors (4xxx)
    SCHEDULER_UNAVAILABLE = ("SCHED_4001", status.HTTP_500_INTERNAL_SERVER_ERROR, "Scheduler service not available.")
    TASK_TRIGGER_FAILED = ("SCHED_4002", status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to trigger admin user sync.")

    # Database Errors (5xxx)
    DATABASE_CONNECTION_ERROR = ("DB_5001", status.HTTP_503_SERVICE_UNAVAILABLE, "Failed to connect to the database.")
    DATABASE_QUERY_ERROR = ("DB_5002", status.HTTP_500_INTERNAL_SERVER_ERROR, "A database query error occurred.")

    def __init__(self, code: str, status_code: int, message: str):
        self.code = code
        self.status_code = status_code
        self.message = message

def raise_api_error(error_code: ErrorCode, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
    """
    Raise a structured HTTPException using the centralized ErrorRegistry.
    """
    raise HTTPException(
        status_code=error_code.status_code,
        detail={
            "error_code": error_code.code,
            "message": message or error_code.message,
            "details": details
        }
    )

def raise_for_domain_error(exc: Exception) -> None:
    """
    Translate a service-layer exception into its structured API error.

    Exceptions with no registered mapping are re-raised unchanged so the
    global handler reports them as SYS_1001.
    """
    from database import ConnectionPoolError, DatabaseError
    from directory_client import (
        DirectoryConfigurationError,
        DirectoryError,
        DirectoryForbiddenError,
        DirectoryNotFoundError,
    )
    from entitlement_store import EntitlementAlreadyExistsError, EntitlementNotFoundError

    if isinstance(exc, EntitlementNotFoundError):
        raise_api_error(ErrorCode.USER_NOT_FOUND, str(exc), {"user_id": exc.user_id})
    if isinstance(exc, EntitlementAlreadyExistsError):
        raise_api_error(ErrorCode.USER_ALREADY_EXISTS, str(exc), {"user_id": exc.user_id})
    if isinstance(exc, DirectoryNotFoundError):
        raise_api_error(ErrorCode.DIRECTORY_USER_NOT_FOUND, str(exc))
    if isinstance(exc, DirectoryForbiddenError):
        raise_api_error(ErrorCode.DIRECTORY_PERMISSION_DENIED, str(exc))
    if isinstance(exc, DirectoryConfigurationError):
        raise_api_error(ErrorCode.DIRECTORY_NOT_CONFIGURED, str(exc))
    if isinstance(exc, DirectoryError):
        raise_api_error(ErrorCode.DIRECTORY_UNAVAILABLE, str(exc))
    if isinstance(exc, ConnectionPoolError):
        raise_api_error(ErrorCode.DATABASE_CONNECTION_ERROR)
    if isinstance(exc, DatabaseError):
        raise_api_error(ErrorCode.DATABASE_QUERY_ERROR)
    if isinstance(exc, ValueError):
        code = ErrorCode.INVALID_ROLES if str(exc).startswith("Invalid roles") else ErrorCode.VALIDATION_ERROR
        raise_api_error(code, str(exc))
    raise exc
