#!/usr/bin/env python3
"""
dbtransit Error Hierarchy
Canonical exception classes for locators, schema conversion, drivers and copies.
"""

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    UNKNOWN = "UNKNOWN_ERROR"
    LOCATOR_SYNTAX = "LOCATOR_SYNTAX_ERROR"
    CONVERSION = "CONVERSION_ERROR"
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
    CAPABILITY = "CAPABILITY_ERROR"
    SCHEMA_CONFLICT = "SCHEMA_CONFLICT"
    AUTHENTICATION = "AUTHENTICATION_ERROR"
    TRANSIENT_IO = "TRANSIENT_IO_ERROR"
    FATAL_IO = "FATAL_IO_ERROR"
    CANCELLED = "CANCELLED"


class TransitError(Exception):
    """Base class for all dbtransit exceptions"""
    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNKNOWN, details: dict = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __str__(self):
        return self.message


class LocatorSyntaxError(TransitError):
    """Raised when a locator string is outside the grammar"""
    def __init__(self, message: str, scheme: Optional[str] = None, segment: Optional[str] = None):
        details = {'scheme': scheme, 'segment': segment}
        super().__init__(message, ErrorCode.LOCATOR_SYNTAX, details)
        self.scheme = scheme
        self.segment = segment


class ConversionError(TransitError):
    """Raised when a schema cannot be converted between portable and native form"""
    def __init__(self, message: str, column: Optional[str] = None, details: dict = None,
                 code: ErrorCode = ErrorCode.CONVERSION):
        details = dict(details or {})
        details['column'] = column
        super().__init__(message, code, details)
        self.column = column


class UnsupportedTypeError(ConversionError):
    """Raised for a native or portable type that a system cannot represent"""
    def __init__(self, message: str, column: Optional[str] = None,
                 native_type: Optional[str] = None, system: Optional[str] = None):
        super().__init__(
            message, column,
            details={'native_type': native_type, 'system': system},
            code=ErrorCode.UNSUPPORTED_TYPE,
        )
        self.native_type = native_type
        self.system = system


class CapabilityError(TransitError):
    """Raised when a scheme does not support a requested operation"""
    def __init__(self, message: str, scheme: Optional[str] = None, capability: Optional[str] = None):
        details = {'scheme': scheme, 'capability': capability}
        super().__init__(message, ErrorCode.CAPABILITY, details)
        self.scheme = scheme
        self.capability = capability


class SchemaConflictError(TransitError):
    """Raised when the destination shape is incompatible with the If-Exists policy"""
    def __init__(self, message: str, locator: Optional[str] = None, details: dict = None):
        details = dict(details or {})
        details['locator'] = locator
        super().__init__(message, ErrorCode.SCHEMA_CONFLICT, details)
        self.locator = locator


class AuthenticationError(TransitError):
    """Raised when a driver has no usable credentials"""
    def __init__(self, message: str, scheme: Optional[str] = None):
        super().__init__(message, ErrorCode.AUTHENTICATION, {'scheme': scheme})
        self.scheme = scheme


class TransientIOError(TransitError):
    """Raised for retryable driver failures (rate limits, dropped connections)"""
    def __init__(self, message: str, locator: Optional[str] = None, stream: Optional[int] = None):
        super().__init__(message, ErrorCode.TRANSIENT_IO, {'locator': locator, 'stream': stream})
        self.locator = locator
        self.stream = stream


class FatalIOError(TransitError):
    """Raised for driver failures that must not be retried"""
    def __init__(self, message: str, locator: Optional[str] = None, stream: Optional[int] = None):
        super().__init__(message, ErrorCode.FATAL_IO, {'locator': locator, 'stream': stream})
        self.locator = locator
        self.stream = stream


class CancelledError(TransitError):
    """Raised when a copy is stopped by an external cancellation signal"""
    def __init__(self, message: str = "copy cancelled", details: dict = None):
        super().__init__(message, ErrorCode.CANCELLED, details)


# Distinct process exit status per error kind; 0 is success.
EXIT_CODES = {
    ErrorCode.UNKNOWN: 1,
    ErrorCode.LOCATOR_SYNTAX: 2,
    ErrorCode.CONVERSION: 3,
    ErrorCode.UNSUPPORTED_TYPE: 4,
    ErrorCode.CAPABILITY: 5,
    ErrorCode.SCHEMA_CONFLICT: 6,
    ErrorCode.AUTHENTICATION: 7,
    ErrorCode.TRANSIENT_IO: 8,
    ErrorCode.FATAL_IO: 9,
    ErrorCode.CANCELLED: 130,
}
