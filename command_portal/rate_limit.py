#!/usr/bin/env python3
"""
Rate limiting
=============
Flask-Limiter with one shared fixed-window budget per endpoint class
(standard, auth, destructive, scan, database, network, file, cloudflare, ai),
counted per client address.

Counters live wherever `[rate_limits] storage` points: "memory" for a single
process, or a redis:// URL so several portal instances behind one proxy share
the same windows.

Usage:
    @bp.route('/packages/install', methods=['POST'])
    @rate_limited('destructive')
    def install_package():
        ...
"""

import functools
import math
import time
from typing import Dict, Optional, Tuple

from flask import current_app, jsonify, request
from flask_limiter import Limiter
from flask_limiter.constants import HeaderNames
from flask_limiter.util import get_remote_address

from command_portal import debug_logger as log

DEFAULT_LIMITS = {
    'standard': (100, 60),
    'auth': (10, 60),
    'destructive': (20, 60),
    'scan': (5, 300),
    'database': (30, 60),
    'network': (30, 60),
    'file': (50, 60),
    'cloudflare': (10, 60),
    'ai': (20, 60),
}

REDIS_SCHEMES = ('redis://', 'rediss://', 'redis+unix://', 'redis+sentinel://', 'redis+cluster://')

# Initialize Flask-Limiter; storage and on/off come from each app's config
limiter = Limiter(
    key_func=get_remote_address,
    strategy='fixed-window',
    headers_enabled=True,
    retry_after='delta-seconds',
    header_name_mapping={
        HeaderNames.LIMIT: 'RateLimit-Limit',
        HeaderNames.REMAINING: 'RateLimit-Remaining',
        HeaderNames.RESET: 'RateLimit-Reset',
        HeaderNames.RETRY_AFTER: 'Retry-After',
    },
)

# =============================================================================
# SETTINGS
# =============================================================================

class RateLimitSettings:
    """Per-class budgets, storage location and the on/off switch"""

    def __init__(self, limits: Optional[Dict[str, Tuple[int, float]]] = None,
                 storage_uri: str = 'memory://', enabled: bool = True):
        self.limits = dict(limits or DEFAULT_LIMITS)
        self.storage_uri = storage_uri
        self.enabled = enabled

    @classmethod
    def from_config(cls, config) -> 'RateLimitSettings':
        section = config.get_section('rate_limits')
        limits = dict(DEFAULT_LIMITS)
        for name in DEFAULT_LIMITS:
            value = section.get(name)
            if isinstance(value, (list, tuple)) and len(value) == 2:
                limits[name] = (int(value[0]), float(value[1]))

        storage = str(section.get('storage', 'memory'))
        if storage.startswith(REDIS_SCHEMES):
            log.info('RATELIMIT', 'Using Redis rate limit storage')
            storage_uri = storage
        else:
            storage_uri = 'memory://'
        return cls(limits, storage_uri, enabled=bool(section.get('enabled', True)))

    def names(self):
        return sorted(self.limits)

    def limit_string(self, name: str) -> str:
        """'100 per 60 seconds' style string understood by the limits parser"""
        max_requests, window = self.limits[name]
        return f"{int(max_requests)} per {int(math.ceil(window))} seconds"

    def to_dict(self):
        return {name: {'limit': int(count), 'window': window}
                for name, (count, window) in sorted(self.limits.items())}


def init_rate_limits(app, settings: RateLimitSettings):
    """Bind the shared limiter to `app` with this app's storage and switch"""
    app.config['RATELIMIT_ENABLED'] = settings.enabled
    app.config['RATELIMIT_STORAGE_URI'] = settings.storage_uri
    app.config['RATELIMIT_HEADERS_ENABLED'] = True
    limiter.init_app(app)
    app.register_error_handler(429, _handle_rate_limited)
    log.debug('RATELIMIT', 'Rate limits initialised', {
        'enabled': settings.enabled,
        'storage': settings.storage_uri.split('://', 1)[0],
    })

# =============================================================================
# 429 RESPONSES
# =============================================================================

def _too_many_requests(retry_after: Optional[int]):
    response = jsonify({
        'error': 'Too many requests',
        'message': 'Please slow down and try again later',
        'retryAfter': retry_after,
    })
    response.status_code = 429
    if retry_after:
        response.headers['Retry-After'] = str(retry_after)
    return response


def _on_breach(limit_class, request_limit):
    retry_after = max(1, int(math.ceil(request_limit.reset_at - time.time())))
    log.log_security_event('rate_limit_exceeded', type=limit_class, endpoint=request.path,
                           method=request.method, client=get_remote_address())
    return _too_many_requests(retry_after)


def _handle_rate_limited(exc):
    if getattr(exc, 'response', None) is not None:
        return exc.response
    return _too_many_requests(None)

# =============================================================================
# FLASK DECORATOR
# =============================================================================

def _current_limit(limit_class):
    return current_app.extensions['command_portal'].limiters.limit_string(limit_class)


def rate_limited(limit_class: str):
    """Count the call against the class's shared budget; 429 once it is spent"""
    if limit_class not in DEFAULT_LIMITS:
        raise KeyError(f"Unknown rate limit class: {limit_class}")
    return limiter.shared_limit(
        functools.partial(_current_limit, limit_class),
        scope=limit_class,
        on_breach=functools.partial(_on_breach, limit_class),
    )
