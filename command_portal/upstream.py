#!/usr/bin/env python3
"""
Outbound HTTP
=============
Small urllib client used for Jaeger, Loki, Promtail and Tabby, and for the
developer HTTP proxy. Transport failures become UpstreamError so routes
never leak socket errors to the browser.
"""

import json
import time
import urllib.error
import urllib.parse
import urllib.request
from http.client import responses as HTTP_REASONS
from typing import Any, Dict, Optional

from command_portal import PORTAL_VERSION
from command_portal import debug_logger as log
from command_portal.errors import UpstreamError

USER_AGENT = f'Command-Portal/{PORTAL_VERSION}'
PROXY_METHODS = ('GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD', 'OPTIONS')
MAX_PROXY_BODY = 5 * 1024 * 1024


def build_url(base: str, path: str = '', params: Optional[Dict[str, Any]] = None) -> str:
    url = base.rstrip('/') + path
    clean = {k: v for k, v in (params or {}).items() if v not in (None, '')}
    if clean:
        url += '?' + urllib.parse.urlencode(clean, doseq=True)
    return url


class UpstreamClient:

    def __init__(self, timeout: float = 10):
        self.timeout = timeout

    def _open(self, req, timeout):
        req.add_header('User-Agent', USER_AGENT)
        return urllib.request.urlopen(req, timeout=timeout or self.timeout)

    def get_json(self, url: str, service: str = 'upstream', timeout: Optional[float] = None) -> Any:
        return self._json_request(urllib.request.Request(url, method='GET'), service, timeout)

    def post_json(self, url: str, payload: Any, service: str = 'upstream',
                  timeout: Optional[float] = None) -> Any:
        req = urllib.request.Request(url, data=json.dumps(payload).encode('utf-8'), method='POST')
        req.add_header('Content-Type', 'application/json')
        return self._json_request(req, service, timeout)

    def _json_request(self, req, service, timeout):
        start = time.perf_counter()
        try:
            with self._open(req, timeout) as response:
                raw = response.read()
        except urllib.error.HTTPError as e:
            log.warn('UPSTREAM', f'{service} returned {e.code}', {'url': req.full_url})
            raise UpstreamError(f'{service} request failed', upstream_status=e.code, service=service)
        except (urllib.error.URLError, OSError) as e:
            log.warn('UPSTREAM', f'{service} unreachable: {e}', {'url': req.full_url})
            raise UpstreamError(f'{service} is unreachable', service=service)

        log.debug('UPSTREAM', f'{service} {req.get_method()} ok [{(time.perf_counter() - start) * 1000:.1f}ms]',
                  {'url': req.full_url})
        try:
            return json.loads(raw.decode('utf-8')) if raw else {}
        except ValueError:
            raise UpstreamError(f'{service} returned invalid JSON', service=service)

    def check(self, url: str, timeout: float = 3) -> Dict[str, Any]:
        """Health probe; a 4xx still counts as reachable"""
        start = time.perf_counter()
        try:
            with self._open(urllib.request.Request(url, method='GET'), timeout) as response:
                status = response.getcode()
            return {'healthy': status < 400, 'status': status,
                    'latency': round((time.perf_counter() - start) * 1000, 1), 'error': None}
        except urllib.error.HTTPError as e:
            return {'healthy': False, 'status': e.code, 'latency': None, 'error': str(e.reason)}
        except (urllib.error.URLError, OSError) as e:
            reason = getattr(e, 'reason', e)
            return {'healthy': False, 'status': 0, 'latency': None,
                    'error': 'Connection refused' if 'refused' in str(reason) else str(reason)}

    def relay(self, url: str, method: str = 'GET', headers: Optional[Dict[str, str]] = None,
              body: Any = None, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Forward one request and return {status, statusText, headers, body,
        duration}. HTTP error statuses are relayed, not raised.
        """
        data = None
        if body is not None and method not in ('GET', 'HEAD'):
            data = body.encode('utf-8') if isinstance(body, str) else json.dumps(body).encode('utf-8')
        req = urllib.request.Request(url, data=data, method=method)
        for name, value in (headers or {}).items():
            req.add_header(str(name), str(value))
        if data is not None and not req.has_header('Content-type'):
            req.add_header('Content-Type', 'application/json')

        start = time.perf_counter()
        try:
            response = self._open(req, timeout)
        except urllib.error.HTTPError as e:
            response = e
        except (urllib.error.URLError, OSError) as e:
            log.warn('PROXY', f'{method} {url} failed: {e}')
            raise UpstreamError('Proxy request failed', service='proxy')

        with response:
            raw = response.read(MAX_PROXY_BODY + 1)
            status = response.getcode() if hasattr(response, 'getcode') else response.code
            response_headers = dict(response.headers.items())
        duration = round((time.perf_counter() - start) * 1000, 1)

        text = raw[:MAX_PROXY_BODY].decode('utf-8', errors='replace')
        content_type = response_headers.get('Content-Type', '')
        parsed: Any = text
        if 'json' in content_type:
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = text
        return {
            'status': status,
            'statusText': HTTP_REASONS.get(status, ''),
            'headers': response_headers,
            'body': parsed,
            'truncated': len(raw) > MAX_PROXY_BODY,
            'duration': duration,
        }
