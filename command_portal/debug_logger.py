#!/usr/bin/env python3
"""
Command Portal Debug Logger
===========================
Single unified log for every portal operation: HTTP traffic, command
executions, security audit events and service lifecycle.

Output: <log_dir>/portal.log once initialize() has been called, plus an
in-memory ring buffer that is always on. WARN and above are echoed to stderr.
"""

import os
import sys
import json
import time
import uuid
import threading
import traceback
import functools
import inspect
import platform
from datetime import datetime
from pathlib import Path
from collections import deque

from flask import g, has_request_context, request as _request

# =============================================================================
# CONFIGURATION
# =============================================================================

DEBUG_LOG_PATH = None  # set by initialize()
MAX_LOG_SIZE_MB = 50  # Rotate after this size
MAX_LOG_LINES = 100000  # Keep last N lines on rotation
ENABLED = True
LOG_FUNCTION_ARGS = True
LOG_FUNCTION_RESULTS = True
LOG_HTTP_REQUESTS = True
LOG_HTTP_RESPONSES = True
MAX_DATA_LEN = 1000
MAX_AUDIT_INPUT_LEN = 100

LEVELS = {'TRACE': 0, 'DEBUG': 1, 'INFO': 2, 'WARN': 3, 'ERROR': 4, 'FATAL': 5}
_min_level = LEVELS['DEBUG']

_log_buffer = deque(maxlen=5000)
_security_buffer = deque(maxlen=1000)
_lock = threading.Lock()
_start_time = time.time()

REQUEST_ID_HEADER = 'X-Request-ID'

# =============================================================================
# CORE LOGGING
# =============================================================================

def _format_timestamp():
    """Format timestamp with milliseconds"""
    now = datetime.now()
    elapsed = time.time() - _start_time
    return f"{now.strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]} [+{elapsed:>10.3f}s]"

def _safe_repr(obj, max_len=None):
    """Safely convert object to string representation"""
    if max_len is None:
        max_len = MAX_DATA_LEN
    try:
        if obj is None:
            return 'None'
        if isinstance(obj, (str, int, float, bool)):
            s = repr(obj)
        elif isinstance(obj, bytes):
            s = f"<bytes len={len(obj)}>"
        elif isinstance(obj, dict):
            s = json.dumps(obj, default=str, ensure_ascii=False)
        elif isinstance(obj, (list, tuple)):
            s = json.dumps(list(obj)[:50], default=str) + (f"... ({len(obj)} items)" if len(obj) > 50 else "")
        else:
            s = repr(obj)

        if len(s) > max_len:
            s = s[:max_len] + f"... (truncated, {len(s)} chars)"
        return s
    except Exception as e:
        return f"<repr error: {e}>"

def _write_log(entry):
    """Write log entry to buffer and, once initialized, to the log file"""
    if not ENABLED:
        return

    with _lock:
        _log_buffer.append(entry)
        if DEBUG_LOG_PATH is None:
            return
        try:
            if DEBUG_LOG_PATH.exists() and DEBUG_LOG_PATH.stat().st_size > MAX_LOG_SIZE_MB * 1024 * 1024:
                _rotate_log()

            with open(DEBUG_LOG_PATH, 'a', encoding='utf-8') as f:
                f.write(entry + '\n')
        except OSError as e:
            print(f"[DEBUG_LOGGER ERROR] Failed to write log: {e}", file=sys.stderr)

def _rotate_log():
    """Rotate log file, keeping last N lines"""
    try:
        with open(DEBUG_LOG_PATH, 'r', encoding='utf-8', errors='ignore') as f:
            lines = f.readlines()

        lines = lines[-MAX_LOG_LINES:]

        with open(DEBUG_LOG_PATH, 'w', encoding='utf-8') as f:
            f.write(f"{'='*80}\n")
            f.write(f"LOG ROTATED AT {datetime.now().isoformat()}\n")
            f.write(f"Kept last {len(lines)} lines\n")
            f.write(f"{'='*80}\n\n")
            f.writelines(lines)
    except OSError as e:
        print(f"[DEBUG_LOGGER ERROR] Failed to rotate log: {e}", file=sys.stderr)

# =============================================================================
# PUBLIC LOGGING FUNCTIONS
# =============================================================================

def log(level, category, message, data=None, exc_info=False):
    """
    Main logging function

    Args:
        level: TRACE, DEBUG, INFO, WARN, ERROR, FATAL
        category: Component name (e.g., EXEC, HTTP_REQ, SECURITY, TABBY)
        message: Human-readable message
        data: Optional dict/object with additional data
        exc_info: Include exception traceback
    """
    if LEVELS.get(level, 2) < _min_level and category != 'SECURITY':
        return

    ts = _format_timestamp()
    parts = [ts, f"[{level:5s}]", f"[{category:12s}]"]

    request_id = current_request_id()
    if request_id:
        parts.append(f"[{request_id}]")
    parts.append(message)

    if data is not None:
        parts.append(f"| data={_safe_repr(data)}")

    if exc_info and sys.exc_info()[0] is not None:
        parts.append(f"\n{''.join(traceback.format_exc())}")

    entry = ' '.join(parts)
    _write_log(entry)

    if level in ('ERROR', 'FATAL', 'WARN'):
        print(entry, file=sys.stderr)

def trace(cat, msg, data=None): log('TRACE', cat, msg, data)
def debug(cat, msg, data=None): log('DEBUG', cat, msg, data)
def info(cat, msg, data=None): log('INFO', cat, msg, data)
def warn(cat, msg, data=None): log('WARN', cat, msg, data)
def error(cat, msg, data=None, exc_info=False): log('ERROR', cat, msg, data, exc_info)
def fatal(cat, msg, data=None, exc_info=True): log('FATAL', cat, msg, data, exc_info)

def set_level(level):
    """Set the minimum level written (SECURITY events are always written)"""
    global _min_level
    _min_level = LEVELS.get(str(level).upper(), LEVELS['DEBUG'])

# =============================================================================
# FUNCTION DECORATOR FOR AUTO-LOGGING
# =============================================================================

def logged(category=None):
    """
    Decorator to automatically log function calls, arguments, and results.

    Usage:
        @logged('TABBY')
        def pull_image(self, use_gpu=False):
            ...
    """
    def decorator(func):
        cat = category or func.__module__.split('.')[-1].upper()

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            func_name = func.__name__

            if LOG_FUNCTION_ARGS:
                sig = inspect.signature(func)
                bound = sig.bind(*args, **kwargs)
                bound.apply_defaults()
                arguments = {k: v for k, v in bound.arguments.items() if k != 'self'}
                args_str = _safe_repr(arguments, max_len=300)
            else:
                args_str = f"({len(args)} args, {len(kwargs)} kwargs)"

            trace(cat, f"→ {func_name}() called", {'args': args_str})
            start_time = time.perf_counter()

            try:
                result = func(*args, **kwargs)
                duration = (time.perf_counter() - start_time) * 1000

                if LOG_FUNCTION_RESULTS:
                    result_str = _safe_repr(result, max_len=200)
                else:
                    result_str = type(result).__name__

                trace(cat, f"← {func_name}() returned [{duration:.2f}ms]", {'result': result_str})
                return result

            except Exception as e:
                duration = (time.perf_counter() - start_time) * 1000
                error(cat, f"✗ {func_name}() FAILED [{duration:.2f}ms]", {
                    'error': str(e),
                    'type': type(e).__name__
                }, exc_info=True)
                raise

        return wrapper
    return decorator

# =============================================================================
# SECURITY AUDIT EVENTS
# =============================================================================

def truncate_input(value, max_len=MAX_AUDIT_INPUT_LEN):
    """Shorten offending input before it is written to the audit trail"""
    text = value if isinstance(value, str) else repr(value)
    if len(text) > max_len:
        return text[:max_len] + '...'
    return text

def log_security_event(event, **fields):
    """
    Record a security-relevant event (validation rejection, policy denial,
    rate limit hit, destructive action). Always written regardless of level.
    """
    if has_request_context():
        fields.setdefault('ip', _request.remote_addr)
        fields.setdefault('path', _request.path)
        fields.setdefault('method', _request.method)
    if 'input' in fields:
        fields['input'] = truncate_input(fields['input'])

    record = {'event': event, 'timestamp': datetime.now().isoformat(), **fields}
    with _lock:
        _security_buffer.append(record)
    log('WARN' if event.endswith(('exceeded', 'rejected', 'denied')) else 'INFO',
        'SECURITY', event, fields)

def get_security_events(count=100):
    """Recent security audit events, oldest first"""
    with _lock:
        return list(_security_buffer)[-count:]

# =============================================================================
# REQUEST CORRELATION
# =============================================================================

def current_request_id():
    """Correlation id of the request being served, or None outside a request"""
    if has_request_context():
        return g.get('request_id')
    return None

# =============================================================================
# HTTP REQUEST/RESPONSE LOGGING
# =============================================================================

def log_http_request(request):
    """Assign a correlation id and log the request - call from before_request"""
    incoming = request.headers.get(REQUEST_ID_HEADER, '')
    if incoming and len(incoming) <= 64 and incoming.replace('-', '').isalnum():
        g.request_id = incoming
    else:
        g.request_id = uuid.uuid4().hex[:16]
    g.request_started = time.time()

    if not LOG_HTTP_REQUESTS:
        return

    info('HTTP_REQ', f'{request.method} {request.path}', {
        'method': request.method,
        'path': request.path,
        'query': request.query_string.decode('utf-8', errors='ignore')[:200] if request.query_string else None,
        'remote_addr': request.remote_addr,
        'user_agent': request.headers.get('User-Agent', '')[:100],
        'content_type': request.content_type,
        'content_length': request.content_length,
    })

def log_http_response(response, request):
    """Log the response and echo the correlation id - call from after_request"""
    request_id = g.get('request_id')
    if request_id:
        response.headers[REQUEST_ID_HEADER] = request_id

    if not LOG_HTTP_RESPONSES:
        return response

    start_time = g.get('request_started')
    duration_ms = (time.time() - start_time) * 1000 if start_time else 0

    level = 'DEBUG' if response.status_code < 400 else 'WARN' if response.status_code < 500 else 'ERROR'
    log(level, 'HTTP_RES', f'{request.method} {request.path} → {response.status_code} [{duration_ms:.1f}ms]', {
        'status': response.status_code,
        'duration_ms': round(duration_ms, 2),
        'content_type': response.content_type,
        'content_length': response.content_length,
    })

    return response

def log_http_error(exc, request):
    """Log an unhandled exception - call from the Flask error handler"""
    start_time = g.get('request_started')
    duration_ms = (time.time() - start_time) * 1000 if start_time else 0

    error_code = getattr(exc, 'code', 500)
    error('HTTP_ERR', f'{request.method} {request.path} → {error_code} [{duration_ms:.1f}ms]', {
        'error_type': type(exc).__name__,
        'error_msg': str(exc),
        'duration_ms': round(duration_ms, 2),
        'path': request.path,
        'remote_addr': request.remote_addr
    }, exc_info=True)

# =============================================================================
# STARTUP
# =============================================================================

def initialize(log_dir=None, level='DEBUG', fresh_start=False):
    """Initialize file logging - call once at startup

    Args:
        log_dir: Directory for portal.log (None keeps logging in memory only)
        level: Minimum level to record
        fresh_start: If True, moves the previous log aside to portal.log.bak
    """
    global _start_time, DEBUG_LOG_PATH
    _start_time = time.time()
    set_level(level)

    if log_dir:
        log_path = Path(log_dir).expanduser()
        try:
            log_path.mkdir(exist_ok=True, parents=True)
            DEBUG_LOG_PATH = log_path / 'portal.log'
        except OSError as e:
            print(f"[DEBUG_LOGGER ERROR] Cannot create {log_path}: {e}", file=sys.stderr)
            DEBUG_LOG_PATH = None

    if fresh_start and DEBUG_LOG_PATH is not None and DEBUG_LOG_PATH.exists():
        with _lock:
            _log_buffer.clear()
            try:
                DEBUG_LOG_PATH.rename(DEBUG_LOG_PATH.with_suffix('.log.bak'))
            except OSError:
                DEBUG_LOG_PATH.unlink(missing_ok=True)

    header = f"""
{'='*80}
COMMAND PORTAL LOG
Started: {datetime.now().isoformat()}
PID: {os.getpid()}
Python: {sys.version.split()[0]}
Platform: {platform.platform()}
{'='*80}
"""
    _write_log(header)

    info('LOGGER', 'Debug logger initialized', {
        'log_path': str(DEBUG_LOG_PATH) if DEBUG_LOG_PATH else None,
        'level': level,
        'max_size_mb': MAX_LOG_SIZE_MB,
    })

def get_recent_logs(count=100):
    """Get recent log entries from memory buffer"""
    with _lock:
        return list(_log_buffer)[-count:]
