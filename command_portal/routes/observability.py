"""
Observability routes: lifecycle of the Jaeger/Loki/Promtail compose stack
and read-only proxies onto the Jaeger query API and the Loki HTTP API.
"""

import re
import time
from urllib.parse import quote

from flask import Blueprint, jsonify, request

from command_portal.errors import NotFoundError, UpstreamError, ValidationError
from command_portal.rate_limit import rate_limited
from command_portal.routes import operation
from command_portal.services import get_services
from command_portal.upstream import build_url
from command_portal.validators import clamp_int, validate_identifier, validate_logql

observability_bp = Blueprint('observability', __name__)

TRACE_ID_RE = re.compile(r'^[0-9a-fA-F]{1,32}$')
DURATION_RE = re.compile(r'^\d+(\.\d+)?(us|µs|ms|s|m|h)$')
TIMESTAMP_RE = re.compile(r'^[0-9A-Za-z:.+-]+$')
LOKI_DIRECTIONS = ('backward', 'forward')
STREAM_LOOKBACK_NS = 3600 * 10 ** 9


def _url(key):
    return get_services().config.get('observability', key)


def _service_name(value):
    if not isinstance(value, str) or not value or len(value) > 200 or '\x00' in value:
        raise ValidationError('Invalid service name', reason='invalid_service', value=value)
    return value


def _optional(pattern, name):
    value = request.args.get(name)
    if value in (None, ''):
        return None
    if not pattern.match(value):
        raise ValidationError(f'Invalid {name}', reason=f'invalid_{name.lower()}', value=value)
    return value

# =============================================================================
# STACK LIFECYCLE
# =============================================================================

@observability_bp.route('/stack/status')
@rate_limited('standard')
@operation('Failed to get observability stack status')
def stack_status():
    return jsonify(get_services().observability.get_status())


@observability_bp.route('/stack/<action>', methods=['POST'])
@rate_limited('destructive')
@operation('Observability stack action failed')
def stack_action(action):
    stack = get_services().observability
    handlers = {'start': stack.start, 'stop': stack.stop, 'restart': stack.restart}
    if action not in handlers:
        raise NotFoundError('Unknown stack action', value=action)
    return jsonify(handlers[action]())


@observability_bp.route('/endpoints')
@rate_limited('standard')
def endpoints():
    return jsonify({
        'jaeger': {'ui': _url('jaeger_url'), 'api': build_url(_url('jaeger_url'), '/api')},
        'loki': {'api': _url('loki_url')},
        'promtail': {'metrics': build_url(_url('promtail_url'), '/metrics')},
    })

# =============================================================================
# JAEGER
# =============================================================================

@observability_bp.route('/services')
@rate_limited('standard')
@operation('Failed to fetch services. Is Jaeger running?')
def jaeger_services():
    data = get_services().http.get_json(build_url(_url('jaeger_url'), '/api/services'), 'jaeger')
    return jsonify({'services': data.get('data') or []})


@observability_bp.route('/operations/<service>')
@rate_limited('standard')
@operation('Failed to fetch operations. Is Jaeger running?')
def jaeger_operations(service):
    service = _service_name(service)
    url = build_url(_url('jaeger_url'), f"/api/services/{quote(service, safe='')}/operations")
    data = get_services().http.get_json(url, 'jaeger')
    return jsonify({'operations': data.get('data') or []})


@observability_bp.route('/traces')
@rate_limited('standard')
@operation('Failed to fetch traces. Is Jaeger running?')
def jaeger_traces():
    args = request.args
    if not args.get('service'):
        raise ValidationError('Service parameter is required', reason='missing_service')
    params = {
        'service': _service_name(args['service']),
        'operation': _service_name(args['operation']) if args.get('operation') else None,
        'start': _optional(TIMESTAMP_RE, 'start'),
        'end': _optional(TIMESTAMP_RE, 'end'),
        'limit': clamp_int(args.get('limit'), 20, 1, 1000),
        'minDuration': _optional(DURATION_RE, 'minDuration'),
        'maxDuration': _optional(DURATION_RE, 'maxDuration'),
        'tags': args.get('tags') or None,
    }
    data = get_services().http.get_json(build_url(_url('jaeger_url'), '/api/traces', params), 'jaeger')
    traces = data.get('data') or []
    return jsonify({'traces': traces, 'total': len(traces)})


@observability_bp.route('/traces/<trace_id>')
@rate_limited('standard')
@operation('Failed to fetch trace. Is Jaeger running?')
def jaeger_trace(trace_id):
    if not TRACE_ID_RE.match(trace_id):
        raise ValidationError('Invalid trace id', reason='invalid_trace_id', value=trace_id)
    try:
        data = get_services().http.get_json(build_url(_url('jaeger_url'), f'/api/traces/{trace_id}'), 'jaeger')
    except UpstreamError as e:
        if e.upstream_status == 404:
            raise NotFoundError('Trace not found')
        raise
    traces = data.get('data') or []
    if not traces:
        raise NotFoundError('Trace not found')
    return jsonify({'trace': traces[0]})

# =============================================================================
# LOKI
# =============================================================================

@observability_bp.route('/loki/labels')
@rate_limited('standard')
@operation('Failed to fetch labels. Is Loki running?')
def loki_labels():
    data = get_services().http.get_json(build_url(_url('loki_url'), '/loki/api/v1/labels'), 'loki')
    return jsonify({'labels': data.get('data') or []})


@observability_bp.route('/loki/labels/<label>/values')
@rate_limited('standard')
@operation('Failed to fetch label values. Is Loki running?')
def loki_label_values(label):
    label = validate_identifier(label)
    url = build_url(_url('loki_url'), f'/loki/api/v1/label/{label}/values')
    data = get_services().http.get_json(url, 'loki')
    return jsonify({'label': label, 'values': data.get('data') or []})


@observability_bp.route('/loki/query')
@rate_limited('standard')
@operation('Failed to query logs. Is Loki running?')
def loki_query():
    args = request.args
    query = validate_logql(args.get('query'))
    direction = args.get('direction', 'backward')
    if direction not in LOKI_DIRECTIONS:
        raise ValidationError('Invalid direction', reason='invalid_direction', value=direction)
    params = {
        'query': query,
        'start': _optional(TIMESTAMP_RE, 'start'),
        'end': _optional(TIMESTAMP_RE, 'end'),
        'limit': clamp_int(args.get('limit'), 100, 1, 5000),
        'direction': direction,
    }
    data = get_services().http.get_json(
        build_url(_url('loki_url'), '/loki/api/v1/query_range', params), 'loki')
    result = data.get('data') or {}
    return jsonify({
        'status': data.get('status'),
        'resultType': result.get('resultType'),
        'result': result.get('result') or [],
        'stats': result.get('stats') or {},
    })


@observability_bp.route('/loki/streams')
@rate_limited('standard')
@operation('Failed to fetch log streams. Is Loki running?')
def loki_streams():
    """Label sets of every stream seen in the last hour"""
    end = time.time_ns()
    params = {'match[]': '{job=~".+"}', 'start': end - STREAM_LOOKBACK_NS, 'end': end}
    data = get_services().http.get_json(build_url(_url('loki_url'), '/loki/api/v1/series', params), 'loki')
    unique = {tuple(sorted(s.items())) for s in data.get('data') or [] if isinstance(s, dict)}
    streams = [dict(labels) for labels in sorted(unique)]
    return jsonify({'streams': streams, 'count': len(streams)})

# =============================================================================
# HEALTH
# =============================================================================

@observability_bp.route('/health')
@rate_limited('standard')
@operation('Failed to check observability health')
def health():
    services = get_services()
    timeout = services.config.get('observability', 'health_timeout', 3)
    checks = {
        'jaeger': services.http.check(build_url(_url('jaeger_url'), '/'), timeout),
        'loki': services.http.check(build_url(_url('loki_url'), '/ready'), timeout),
        'promtail': services.http.check(build_url(_url('promtail_url'), '/ready'), timeout),
    }
    healthy = sum(1 for c in checks.values() if c['healthy'])
    if healthy == len(checks):
        status = 'healthy'
    elif healthy:
        status = 'degraded'
    else:
        status = 'unhealthy'
    return jsonify({'status': status, 'services': checks})
