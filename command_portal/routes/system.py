"""
System routes: portal health, the protection policy table, parser
diagnostics, the security audit trail and host power actions.
"""

import time

import psutil
from flask import Blueprint, jsonify, request

from command_portal import PORTAL_VERSION
from command_portal import debug_logger as log
from command_portal.errors import ValidationError
from command_portal.rate_limit import rate_limited
from command_portal.routes import json_body, operation
from command_portal.services import get_services
from command_portal.validators import clamp_int

system_bp = Blueprint('system', __name__)

POWER_ACTIONS = ('reboot', 'shutdown')


@system_bp.route('/health')
@rate_limited('standard')
def health():
    """Liveness plus host load; never shells out"""
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage('/')
    return jsonify({
        'status': 'ok',
        'version': PORTAL_VERSION,
        'uptime': int(time.time() - psutil.boot_time()),
        'cpu': psutil.cpu_percent(interval=None),
        'memory': {'total': memory.total, 'used': memory.used, 'percent': memory.percent},
        'disk': {'total': disk.total, 'used': disk.used, 'percent': disk.percent},
        'rateLimits': get_services().limiters.to_dict(),
    })


@system_bp.route('/policy')
@rate_limited('standard')
def policy():
    return jsonify(get_services().policy.to_dict())


@system_bp.route('/diagnostics/parsers')
@rate_limited('standard')
def parser_diagnostics():
    return jsonify({'parsers': get_services().diagnostics.snapshot()})


@system_bp.route('/diagnostics/parsers', methods=['DELETE'])
@rate_limited('standard')
def reset_parser_diagnostics():
    get_services().diagnostics.reset()
    return jsonify({'success': True})


@system_bp.route('/security-events')
@rate_limited('standard')
def security_events():
    count = clamp_int(request.args.get('count'), 100, 1, 1000)
    return jsonify({'events': log.get_security_events(count)})


@system_bp.route('/<action>', methods=['POST'])
@rate_limited('destructive')
@operation('System power action failed')
def power_action(action):
    if action not in POWER_ACTIONS:
        raise ValidationError('Unknown system action', reason='invalid_action', value=action)
    if json_body().get('confirm') != action:
        raise ValidationError(f'Confirmation required: send {{"confirm": "{action}"}}',
                              reason='confirmation_required')

    services = get_services()
    argv = ['reboot'] if action == 'reboot' else ['poweroff']
    log.log_security_event(f'system_{action}')
    services.executor.run('systemctl', argv, timeout=services.timeout('default'), privileged=True)
    return jsonify({'success': True, 'action': action})
