#!/usr/bin/env python3
"""
Input validators
================
Allow-list checks that gate every command invocation and raw query.

Each function is pure: it either returns the (normalized) value or raises
ValidationError / PolicyDeniedError. Nothing here rewrites input to make it
acceptable. Callers build argv lists only from values returned here.
"""

import ipaddress
import re
from pathlib import Path
from typing import Iterable, Optional, Union

from command_portal.errors import ValidationError

# =============================================================================
# PATTERNS
# =============================================================================

HOST_RE = re.compile(r'^[A-Za-z0-9.-]+$')
PACKAGE_RE = re.compile(r'^[A-Za-z0-9._+-]+$')
UNIT_RE = re.compile(r'^[A-Za-z0-9._@-]+$')
PID_RE = re.compile(r'^[0-9]+$')
CRON_FIELD_RE = re.compile(r'^[0-9*/,A-Za-z-]+$')
IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
JOURNAL_TIME_RE = re.compile(r'^[A-Za-z0-9 :+.-]+$')
SQL_WORD_RE = re.compile(r'[A-Za-z_][A-Za-z0-9_$]*')

VALID_SIGNALS = ('TERM', 'KILL', 'HUP', 'INT', 'QUIT', 'USR1', 'USR2')
DNS_TYPES = ('A', 'AAAA', 'MX', 'NS', 'TXT', 'CNAME', 'SOA')
JOURNAL_PRIORITIES = ('emerg', 'alert', 'crit', 'err', 'warning', 'notice', 'info', 'debug')

MAX_HOST_LEN = 253
MAX_SQL_LEN = 4096

SQL_DENY_KEYWORDS = frozenset({
    'DROP', 'DELETE', 'INSERT', 'UPDATE', 'CREATE', 'ALTER', 'TRUNCATE',
    'GRANT', 'REVOKE', 'EXEC', 'EXECUTE', 'UNION', 'REPLACE', 'ATTACH',
    'DETACH', 'PRAGMA', 'VACUUM', 'INTO', 'OUTFILE', 'LOAD_FILE', 'DUMPFILE',
    'BENCHMARK', 'SLEEP', 'WAITFOR', 'INFORMATION_SCHEMA',
})
SQL_DENY_PREFIXES = ('XP_', 'SP_')
SQL_COMMENT_MARKERS = ('--', '/*', '*/')


def _reject(message, reason, value):
    raise ValidationError(message, reason=reason, value=value)

# =============================================================================
# NETWORK
# =============================================================================

def is_valid_host(value) -> bool:
    return (isinstance(value, str) and 0 < len(value) <= MAX_HOST_LEN
            and HOST_RE.match(value) is not None)


def validate_host(value) -> str:
    if not is_valid_host(value):
        _reject('Invalid hostname', 'invalid_host', value)
    return value


def is_valid_ip(value) -> bool:
    if not isinstance(value, str):
        return False
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def validate_ip(value) -> str:
    if not is_valid_ip(value):
        _reject('Invalid IP address', 'invalid_ip', value)
    return value


def validate_port(value) -> int:
    try:
        port = int(str(value))
    except (TypeError, ValueError):
        port = 0
    if not 1 <= port <= 65535:
        _reject('Invalid port number', 'invalid_port', value)
    return port


def validate_dns_type(value) -> str:
    record_type = str(value or 'A').upper()
    if record_type not in DNS_TYPES:
        _reject('Invalid record type', 'invalid_dns_type', value)
    return record_type

# =============================================================================
# PROCESSES
# =============================================================================

def is_valid_pid(value) -> bool:
    return isinstance(value, (str, int)) and PID_RE.match(str(value)) is not None


def validate_pid(value) -> int:
    if isinstance(value, bool) or not is_valid_pid(value):
        _reject('Invalid PID', 'invalid_pid', value)
    return int(value)


def validate_signal(value) -> str:
    name = str(value or 'TERM').upper()
    if name.startswith('SIG'):
        name = name[3:]
    if name not in VALID_SIGNALS:
        _reject('Invalid signal', 'invalid_signal', value)
    return name

# =============================================================================
# PACKAGES / UNITS / CRON
# =============================================================================

def is_valid_package_name(value) -> bool:
    return isinstance(value, str) and PACKAGE_RE.match(value) is not None


def validate_package_name(value) -> str:
    if not is_valid_package_name(value):
        _reject('Invalid package name', 'invalid_package', value)
    return value


def validate_removable_package(value, policy) -> str:
    """Package name that also clears the critical-package prefix list"""
    name = validate_package_name(value)
    policy.check_package(name)
    return name


def is_valid_unit_name(value) -> bool:
    return isinstance(value, str) and UNIT_RE.match(value) is not None


def validate_unit_name(value) -> str:
    if not is_valid_unit_name(value):
        _reject('Invalid unit name', 'invalid_unit', value)
    return value


def validate_cron_schedule(value) -> str:
    """Exactly five fields; returns them joined by single spaces"""
    fields = value.split() if isinstance(value, str) else []
    if len(fields) != 5 or not all(CRON_FIELD_RE.match(f) for f in fields):
        _reject('Invalid cron schedule format', 'invalid_cron_schedule', value)
    return ' '.join(fields)


def validate_cron_command(value) -> str:
    if not isinstance(value, str) or not value.strip():
        _reject('Command is required', 'invalid_cron_command', value)
    if any(ch in value for ch in ('\n', '\r', '\x00')):
        _reject('Command must be a single line', 'invalid_cron_command', value)
    return value.strip()

# =============================================================================
# JOURNAL / LOKI
# =============================================================================

def validate_journal_priority(value) -> str:
    text = str(value).strip().lower()
    if text.isdigit() and 0 <= int(text) <= 7:
        return text
    if text in JOURNAL_PRIORITIES:
        return text
    _reject('Invalid priority', 'invalid_priority', value)


def validate_journal_time(value) -> str:
    if not isinstance(value, str) or not value or JOURNAL_TIME_RE.match(value) is None:
        _reject('Invalid time specification', 'invalid_time', value)
    return value


def validate_logql(value) -> str:
    if not isinstance(value, str) or not value.strip():
        _reject('Query is required', 'missing_query', value)
    query = value.strip()
    if not (query.startswith('{') or '|' in query):
        _reject('Invalid LogQL query format', 'invalid_logql', value)
    return query

# =============================================================================
# SQL (database browser raw query)
# =============================================================================

def validate_sql_query(value) -> str:
    """
    Accept a single read-only SELECT statement.

    Keywords are matched as whole tokens, so a column named `updated_at`
    passes while `UPDATE` anywhere in the text fails.
    """
    if not isinstance(value, str) or not value.strip():
        _reject('Query is required', 'missing_query', value)
    query = value.strip()
    if len(query) > MAX_SQL_LEN:
        _reject(f'Query exceeds {MAX_SQL_LEN} characters', 'query_too_long', query)
    if ';' in query:
        _reject('Multiple statements are not allowed', 'multiple_statements', query)
    for marker in SQL_COMMENT_MARKERS:
        if marker in query:
            _reject('SQL comments are not allowed', 'sql_comment', query)

    for word in SQL_WORD_RE.findall(query):
        upper = word.upper()
        if upper in SQL_DENY_KEYWORDS or upper.startswith(SQL_DENY_PREFIXES):
            _reject(f'Query contains forbidden keyword: {upper}', 'forbidden_keyword', query)

    if not re.match(r'SELECT\b', query, re.IGNORECASE):
        _reject('Only SELECT queries are allowed', 'not_select', query)
    return query


def is_valid_sql_query(value) -> bool:
    try:
        validate_sql_query(value)
    except ValidationError:
        return False
    return True


def validate_identifier(value) -> str:
    if not isinstance(value, str) or IDENTIFIER_RE.match(value) is None:
        _reject('Invalid identifier', 'invalid_identifier', value)
    return value

# =============================================================================
# PATHS / FILE NAMES
# =============================================================================

def validate_path(requested: Union[str, Path], allowed_roots: Iterable[Union[str, Path]],
                  base: Optional[Union[str, Path]] = None) -> Optional[Path]:
    """
    Resolve `requested` (following symlinks) and return it only when it is
    one of `allowed_roots` or lies beneath one. Relative paths resolve
    against `base`, else the first root. Returns None on rejection.
    """
    roots = [Path(r).expanduser().resolve() for r in allowed_roots]
    if not roots or requested is None:
        return None
    text = str(requested)
    if not text or '\x00' in text:
        return None

    candidate = Path(text).expanduser()
    if not candidate.is_absolute():
        anchor = Path(base).expanduser() if base is not None else roots[0]
        candidate = anchor / candidate
    try:
        resolved = candidate.resolve()
    except (OSError, RuntimeError):
        return None

    for root in roots:
        if resolved == root or root in resolved.parents:
            return resolved
    return None


def is_valid_name(value) -> bool:
    """A single path component: no separators, no '..', no NUL"""
    return (isinstance(value, str) and bool(value)
            and '/' not in value and '\\' not in value
            and '..' not in value and '\x00' not in value)


def validate_env_filename(value) -> str:
    if not is_valid_name(value) or not value.startswith('.env'):
        _reject('Invalid env filename', 'invalid_filename', value)
    return value

# =============================================================================
# NUMBERS
# =============================================================================

def clamp_int(value, default: int, minimum: int, maximum: int) -> int:
    """Integer query parameter with a default for garbage and clamping"""
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        number = default
    return max(minimum, min(maximum, number))
