#!/usr/bin/env python3
"""
Command Portal Error Taxonomy
=============================
Every failure a route can produce maps to one of these classes. Client
actionable errors (validation, policy, not found) carry a specific message;
everything else is reduced to a generic operation-named message while the
full detail goes to the debug log under an error reference.

Usage:
    from command_portal.errors import ValidationError, safe_error_response

    raise ValidationError('Invalid hostname', reason='invalid_host', value=host)
"""

import random
import string
import time
from typing import Any, Dict, Optional, Tuple

from command_portal import debug_logger as log

# =============================================================================
# BASE
# =============================================================================

class PortalError(Exception):
    """Base class for errors that know their HTTP status and public message"""

    status = 500
    reason = 'internal_error'
    public = True

    def __init__(self, message: str, reason: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason
        self.details = details

    def to_response(self) -> Tuple[Dict[str, Any], int]:
        body = {'error': self.message}
        if self.reason:
            body['reason'] = self.reason
        return body, self.status


class ValidationError(PortalError):
    """Malformed or unsafe input, rejected before any command or query runs"""
    status = 400
    reason = 'invalid_input'


class PolicyDeniedError(PortalError):
    """Well-formed input that targets a protected resource"""
    status = 403
    reason = 'policy_denied'


class NotFoundError(PortalError):
    """Target process, table, trace, file or record does not exist"""
    status = 404
    reason = 'not_found'


class ConflictError(PortalError):
    """Request is valid but the target is in the wrong state (already running)"""
    status = 409
    reason = 'conflict'


# =============================================================================
# EXECUTOR FAILURES (never echoed to the client)
# =============================================================================

class CommandError(PortalError):
    public = False
    reason = 'command_failed'

    def __init__(self, message: str, command: Optional[list] = None, **details: Any):
        super().__init__(message, **details)
        self.command = list(command or [])


class CommandTimeoutError(CommandError):
    reason = 'timeout'

    def __init__(self, command: list, timeout: float):
        super().__init__(f"Command timed out after {timeout}s", command=command)
        self.timeout = timeout


class BufferExceededError(CommandError):
    reason = 'buffer_exceeded'

    def __init__(self, command: list, max_buffer: int):
        super().__init__(f"Command output exceeded {max_buffer} bytes", command=command)
        self.max_buffer = max_buffer


class CommandFailedError(CommandError):
    """Non-zero exit; stdout/stderr kept so callers can treat it as soft-empty"""

    def __init__(self, command: list, returncode: int, stdout: str = '', stderr: str = ''):
        super().__init__(f"Command exited with status {returncode}", command=command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class CommandNotFoundError(CommandFailedError):
    reason = 'command_not_found'

    def __init__(self, command: list):
        super().__init__(command, 127, '', f"{command[0] if command else '?'}: not found")


# =============================================================================
# UPSTREAM HTTP (Jaeger, Loki, Tabby, Docker)
# =============================================================================

class UpstreamError(PortalError):
    """External dependency returned a failure or was unreachable"""
    reason = 'upstream_error'

    def __init__(self, message: str, upstream_status: Optional[int] = None, **details: Any):
        super().__init__(message, **details)
        self.upstream_status = upstream_status
        # an upstream 404 is meaningful (unknown trace id) and passes through
        self.status = 404 if upstream_status == 404 else 500


# =============================================================================
# SAFE RESPONSES
# =============================================================================

def generate_error_ref() -> str:
    """ERR-<base36 millis>-<random> reference quoted to the user and logged"""
    millis = int(time.time() * 1000)
    digits = string.digits + string.ascii_lowercase
    encoded = ''
    while millis:
        millis, rem = divmod(millis, 36)
        encoded = digits[rem] + encoded
    suffix = ''.join(random.choices(digits, k=6))
    return f"ERR-{encoded or '0'}-{suffix}"


def safe_error_response(exc: BaseException, user_message: str,
                        operation: Optional[str] = None) -> Tuple[Dict[str, Any], int]:
    """
    Log full detail of an unexpected failure and return a body that only
    carries the generic message, the error reference and the request id.
    """
    error_ref = generate_error_ref()
    request_id = log.current_request_id()
    detail = {
        'errorRef': error_ref,
        'requestId': request_id,
        'operation': operation,
        'type': type(exc).__name__,
        'error': str(exc),
    }
    if isinstance(exc, CommandFailedError):
        detail['returncode'] = exc.returncode
        detail['stderr'] = exc.stderr[:500]
    if isinstance(exc, CommandError):
        detail['command'] = exc.command[:1]
    log.error('ERROR', user_message, detail, exc_info=True)

    body = {'error': user_message, 'errorRef': error_ref}
    if request_id:
        body['requestId'] = request_id
    status = exc.status if isinstance(exc, UpstreamError) else 500
    return body, status
