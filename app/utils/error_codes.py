from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Standard EarthX API error codes."""

    E001 = "E001"  # Resource: Not found
    E002 = "E002"  # Batch: Not eligible for the requested transition
    E003 = "E003"  # Collection: Weight outside allowed range
    E004 = "E004"  # Chain: Service not configured
    E005 = "E005"  # Auth: Invalid credentials
    E006 = "E006"  # Auth: Insufficient permissions
    E007 = "E007"  # Timeout: Operation timeout
    E008 = "E008"  # Conflict: State conflict
    E009 = "E009"  # Validation: Invalid input
    E010 = "E010"  # Internal: Internal error


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.E001: "Resource not found",
    ErrorCode.E002: "Batch not eligible",
    ErrorCode.E003: "Weight outside allowed range",
    ErrorCode.E004: "Blockchain service not configured",
    ErrorCode.E005: "Invalid credentials",
    ErrorCode.E006: "Insufficient permissions",
    ErrorCode.E007: "Operation timeout",
    ErrorCode.E008: "State conflict",
    ErrorCode.E009: "Validation error",
    ErrorCode.E010: "Internal server error",
}
