"""
Infrastructure routes: packages, system logs, processes, network,
SSH/fail2ban security and scheduled jobs for the host the portal runs on.
"""

import socket
import time
from pathlib import Path

import psutil
from flask import Blueprint, jsonify, request

from command_portal import debug_logger as log
from command_portal import parsers
from command_portal.errors import NotFoundError, ValidationError
from command_portal.platform_compat import needs_sudo_for
from command_portal.rate_limit import rate_limited
from command_portal.routes import json_body, operation, paginate, pagination
from command_portal.services import get_services
from command_portal.validators import (
    clamp_int,
    is_valid_unit_name,
    validate_cron_command,
    validate_cron_schedule,
    validate_dns_type,
    validate_host,
    validate_ip,
    validate_journal_priority,
    validate_journal_time,
    validate_package_name,
    validate_pid,
    validate_port,
    validate_removable_package,
    validate_signal,
    validate_unit_name,
)

infra_bp = Blueprint('infrastructure', __name__)

PROCESS_SORT_KEYS = {
    'cpu': '-%cpu',
    'memory': '-%mem',
    'mem': '-%mem',
    'pid': 'pid',
    'name': 'comm',
}
OUTPUT_TAIL = 2000


def _tail(text, length=OUTPUT_TAIL):
    return text[-length:] if text else ''


def terminate_process(pid, signal_name=None):
    """
    Send a signal to a process after the critical PID and process-name
    checks. Shared by the process manager and the port manager.
    """
    services = get_services()
    pid = validate_pid(pid)
    services.policy.check_pid(pid)

    owner_info = parsers.parse_ps_owner(
        services.executor.run_text('ps', ['-p', pid, '-o', 'user,comm', '--no-headers']))
    if owner_info is None:
        raise NotFoundError('Process not found', value=pid)
    owner, name = owner_info
    services.policy.check_process_name(name)
    signal_name = validate_signal(signal_name)

    services.executor.run('kill', ['-s', signal_name, pid],
                          timeout=services.timeout('quick'),
                          privileged=needs_sudo_for(owner))
    log.log_security_event('process_killed', pid=pid, name=name, owner=owner, signal=signal_name)
    return {'success': True, 'pid': pid, 'name': name, 'signal': signal_name,
            'message': f'Sent SIG{signal_name} to {name} ({pid})'}

# =============================================================================
# PACKAGES
# =============================================================================

@infra_bp.route('/packages')
@rate_limited('standard')
@operation('Failed to list packages')
def list_packages():
    services = get_services()
    output = services.executor.run('dpkg-query', ['-W', f'-f={parsers.DPKG_FORMAT}'],
                                   max_buffer=services.max_buffer('large'))
    packages = parsers.parse_dpkg_packages(output.stdout)

    search = (request.args.get('search') or '').strip().lower()
    if search:
        packages = [p for p in packages
                    if search in p['name'].lower() or search in p['description'].lower()]

    page, page_size = pagination(default_size=50, max_size=500)
    result = paginate(packages, page, page_size)
    result['packages'] = result.pop('items')
    return jsonify(result)


@infra_bp.route('/packages/updates')
@rate_limited('standard')
@operation('Failed to check for updates')
def list_updates():
    services = get_services()
    services.executor.run('apt-get', ['update', '-qq'], timeout=services.timeout('install'),
                          privileged=True, check=False)
    output = services.executor.run_text('apt', ['list', '--upgradable'],
                                        max_buffer=services.max_buffer('large'))
    updates = parsers.parse_apt_upgradable(output)
    return jsonify({'updates': updates, 'count': len(updates)})


@infra_bp.route('/packages/upgrade', methods=['POST'])
@rate_limited('destructive')
@operation('Failed to upgrade packages')
def upgrade_packages():
    services = get_services()
    log.log_security_event('packages_upgrade')
    result = services.executor.run('apt-get', ['-y', 'upgrade'],
                                   timeout=services.timeout('upgrade'),
                                   max_buffer=services.max_buffer('large'),
                                   privileged=True)
    return jsonify({'success': True, 'output': _tail(result.stdout)})


@infra_bp.route('/packages/install', methods=['POST'])
@rate_limited('destructive')
@operation('Failed to install package')
def install_package():
    services = get_services()
    name = validate_package_name(json_body().get('packageName'))
    log.log_security_event('package_install', package=name)
    result = services.executor.run('apt-get', ['install', '-y', name],
                                   timeout=services.timeout('install'),
                                   max_buffer=services.max_buffer('large'),
                                   privileged=True)
    return jsonify({'success': True, 'package': name, 'output': _tail(result.stdout)})


@infra_bp.route('/packages/remove', methods=['POST'])
@rate_limited('destructive')
@operation('Failed to remove package')
def remove_package():
    services = get_services()
    data = json_body()
    name = validate_removable_package(data.get('packageName'), services.policy)
    action = 'purge' if data.get('purge') else 'remove'
    log.log_security_event('package_remove', package=name, purge=action == 'purge')
    result = services.executor.run('apt-get', [action, '-y', name],
                                   timeout=services.timeout('install'),
                                   max_buffer=services.max_buffer('large'),
                                   privileged=True)
    return jsonify({'success': True, 'package': name, 'output': _tail(result.stdout)})


@infra_bp.route('/packages/search')
@rate_limited('standard')
@operation('Failed to search packages')
def search_packages():
    query = (request.args.get('q') or '').strip()
    if len(query) < 2:
        raise ValidationError('Search query must be at least 2 characters', reason='query_too_short')
    validate_package_name(query)
    output = get_services().executor.run_text('apt-cache', ['search', '--', query])
    return jsonify({'results': parsers.parse_apt_search(output, limit=50)})

# =============================================================================
# SYSTEM LOGS (journalctl)
# =============================================================================

def _journal_args():
    args = request.args
    argv = ['-o', 'json', '--no-pager', '-n', clamp_int(args.get('lines'), 100, 1, 1000)]
    if args.get('unit'):
        argv += ['-u', validate_unit_name(args['unit'])]
    if args.get('priority'):
        argv += ['-p', validate_journal_priority(args['priority'])]
    if args.get('since'):
        argv += ['--since', validate_journal_time(args['since'])]
    if args.get('until'):
        argv += ['--until', validate_journal_time(args['until'])]
    if args.get('search'):
        search = args['search']
        if len(search) > 200 or '\x00' in search:
            raise ValidationError('Invalid search pattern', reason='invalid_search', value=search)
        argv.append(f'--grep={search}')
    boot = args.get('boot', '0')
    if boot != 'all':
        if not boot.lstrip('-').isdigit():
            raise ValidationError('Invalid boot id', reason='invalid_boot', value=boot)
        argv += ['-b', boot]
    return argv


@infra_bp.route('/logs')
@rate_limited('standard')
@operation('Failed to read system logs')
def system_logs():
    services = get_services()
    output = services.executor.run_text('journalctl', _journal_args(),
                                        max_buffer=services.max_buffer('large'))
    logs = parsers.parse_journal_json(output)
    return jsonify({'logs': logs, 'count': len(logs)})


@infra_bp.route('/logs/units')
@rate_limited('standard')
@operation('Failed to list log units')
def log_units():
    output = get_services().executor.run_text('journalctl', ['-F', '_SYSTEMD_UNIT'])
    return jsonify({'units': parsers.parse_journal_units(output)})


@infra_bp.route('/logs/disk-usage')
@rate_limited('standard')
@operation('Failed to get journal disk usage')
def log_disk_usage():
    output = get_services().executor.run_text('journalctl', ['--disk-usage'])
    return jsonify(parsers.parse_journal_disk_usage(output))

# =============================================================================
# PROCESSES
# =============================================================================

@infra_bp.route('/processes')
@rate_limited('standard')
@operation('Failed to list processes')
def list_processes():
    services = get_services()
    sort = PROCESS_SORT_KEYS.get(request.args.get('sort', 'cpu'), PROCESS_SORT_KEYS['cpu'])
    limit = clamp_int(request.args.get('limit'), 50, 1, 100)
    output = services.executor.run('ps', ['-eo', parsers.PS_LIST_FIELDS, f'--sort={sort}', '--no-headers'],
                                   max_buffer=services.max_buffer('large'))
    processes = parsers.parse_ps_list(output.stdout)
    return jsonify({'processes': processes[:limit], 'total': len(processes)})


def _process_extras(pid):
    """cmdline and open file count from psutil; None when not readable"""
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            return {'cmdline': proc.cmdline(), 'openFiles': proc.num_fds()}
    except (psutil.Error, AttributeError):
        return {'cmdline': None, 'openFiles': None}


@infra_bp.route('/processes/<pid>')
@rate_limited('standard')
@operation('Failed to get process details')
def process_detail(pid):
    services = get_services()
    pid = validate_pid(pid)
    output = services.executor.run_text('ps', ['-p', pid, '-o', parsers.PS_DETAIL_FIELDS, '--no-headers'])
    process = parsers.parse_ps_detail(output)
    if process is None:
        raise NotFoundError('Process not found', value=pid)
    process.update(_process_extras(pid))
    return jsonify({'process': process})


@infra_bp.route('/processes/<pid>/kill', methods=['POST'])
@rate_limited('destructive')
@operation('Failed to kill process')
def kill_process(pid):
    return jsonify(terminate_process(pid, json_body().get('signal')))

# =============================================================================
# NETWORK
# =============================================================================

@infra_bp.route('/network/interfaces')
@rate_limited('standard')
@operation('Failed to list network interfaces')
def network_interfaces():
    output = get_services().executor.run('ip', ['-j', 'addr', 'show'])
    return jsonify({'interfaces': parsers.parse_ip_addr_json(output.stdout)})


@infra_bp.route('/network/connections')
@rate_limited('standard')
@operation('Failed to list network connections')
def network_connections():
    flags = {'tcp': '-tln', 'udp': '-uln'}.get(request.args.get('protocol'), '-tuln')
    output = get_services().executor.run('ss', [flags, '--no-header'])
    connections = parsers.parse_ss_connections(output.stdout)
    return jsonify({'connections': connections, 'count': len(connections)})


@infra_bp.route('/network/ping', methods=['POST'])
@rate_limited('network')
@operation('Failed to ping host')
def ping_host():
    data = json_body()
    host = validate_host(data.get('host'))
    count = clamp_int(data.get('count'), 4, 1, 10)
    output = get_services().executor.run_text('ping', ['-c', count, '-W', 5, host],
                                              timeout=count * 5 + 5)
    stats = parsers.parse_ping(output)
    if not stats['received']:
        return jsonify({'success': False, 'host': host, 'error': 'Host unreachable', **stats})
    return jsonify({'success': True, 'host': host, **stats})


@infra_bp.route('/network/dns', methods=['POST'])
@rate_limited('network')
@operation('DNS lookup failed')
def dns_lookup():
    data = json_body()
    host = validate_host(data.get('host'))
    record_type = validate_dns_type(data.get('type', 'A'))
    output = get_services().executor.run_text('dig', ['+short', host, record_type],
                                              timeout=get_services().timeout('default'))
    return jsonify({'host': host, 'type': record_type, 'records': parsers.parse_dig_short(output)})


@infra_bp.route('/network/port-check', methods=['POST'])
@rate_limited('network')
@operation('Port check failed')
def port_check():
    data = json_body()
    host = validate_host(data.get('host'))
    port = validate_port(data.get('port'))
    start = time.perf_counter()
    try:
        with socket.create_connection((host, port), timeout=5):
            is_open = True
    except OSError:
        is_open = False
    elapsed = round((time.perf_counter() - start) * 1000, 1)
    return jsonify({'host': host, 'port': port, 'open': is_open, 'responseTime': elapsed})


@infra_bp.route('/network/hosts')
@rate_limited('standard')
@operation('Failed to read hosts file')
def hosts_file():
    path = Path(get_services().config.get('paths', 'hosts_file'))
    text = path.read_text(errors='replace') if path.exists() else ''
    return jsonify({'entries': parsers.parse_hosts_file(text)})

# =============================================================================
# SECURITY
# =============================================================================

@infra_bp.route('/security/ssh/sessions')
@rate_limited('standard')
@operation('Failed to list SSH sessions')
def ssh_sessions():
    output = get_services().executor.run_text('who')
    return jsonify({'sessions': parsers.parse_who(output)})


@infra_bp.route('/security/ssh/failed')
@rate_limited('standard')
@operation('Failed to read failed SSH logins')
def ssh_failed():
    services = get_services()
    limit = clamp_int(request.args.get('limit'), 50, 1, 500)
    auth_log = services.config.get('paths', 'auth_log')
    # grep exits 1 when nothing matched
    output = services.executor.run_text('grep', ['Failed password', auth_log],
                                        privileged=True, max_buffer=services.max_buffer('large'))
    attempts = parsers.parse_failed_ssh(output, limit=limit)
    return jsonify({'attempts': attempts, 'count': len(attempts)})


@infra_bp.route('/security/ssh/keys')
@rate_limited('standard')
@operation('Failed to read authorized keys')
def ssh_keys():
    services = get_services()
    path = Path(services.config.get('paths', 'authorized_keys')).expanduser()
    if not path.exists():
        return jsonify({'keys': []})

    def fingerprint(line):
        return parsers.parse_ssh_keygen_fingerprint(
            services.executor.run_text('ssh-keygen', ['-lf', '-'], input=line,
                                       timeout=services.timeout('quick')))

    return jsonify({'keys': parsers.parse_authorized_keys(path.read_text(errors='replace'), fingerprint)})


@infra_bp.route('/security/fail2ban/status')
@rate_limited('standard')
@operation('Failed to get fail2ban status')
def fail2ban_status():
    services = get_services()
    output = services.executor.run_text('fail2ban-client', ['status'], privileged=True)
    if not output.strip():
        return jsonify({'installed': False, 'jails': [], 'totalBanned': 0})

    jails = []
    for name in parsers.parse_fail2ban_jails(output):
        if not is_valid_unit_name(name):
            continue
        detail = services.executor.run_text('fail2ban-client', ['status', name], privileged=True)
        jails.append(parsers.parse_fail2ban_jail(detail, name))
    return jsonify({
        'installed': True,
        'jails': jails,
        'totalBanned': sum(j.get('currentlyBanned', 0) for j in jails),
    })


@infra_bp.route('/security/fail2ban/unban', methods=['POST'])
@rate_limited('destructive')
@operation('Failed to unban IP')
def fail2ban_unban():
    data = json_body()
    jail = validate_unit_name(data.get('jail'))
    ip = validate_ip(data.get('ip'))
    get_services().executor.run('fail2ban-client', ['set', jail, 'unbanip', ip], privileged=True)
    log.log_security_event('ip_unbanned', jail=jail, unbanned_ip=ip)
    return jsonify({'success': True, 'jail': jail, 'ip': ip})


@infra_bp.route('/security/ports')
@rate_limited('standard')
@operation('Failed to list listening ports')
def listening_ports():
    output = get_services().executor.run_text('ss', ['-tlnp'], privileged=True)
    return jsonify({'ports': parsers.parse_ss_listening_ports(output)})


@infra_bp.route('/security/last-logins')
@rate_limited('standard')
@operation('Failed to read login history')
def last_logins():
    limit = clamp_int(request.args.get('limit'), 20, 1, 100)
    output = get_services().executor.run_text('last', ['-n', limit, '-F'])
    return jsonify({'logins': parsers.parse_last(output)})

# =============================================================================
# SCHEDULED JOBS (cron, systemd timers)
# =============================================================================

def _read_user_crontab(services):
    """Current user crontab text; '' when the user has none"""
    result = services.executor.run('crontab', ['-l'], check=False)
    if result.returncode != 0:
        if 'no crontab' in result.stderr.lower():
            return ''
        result = services.executor.run('crontab', ['-l'])
    return result.stdout


def _install_crontab(services, text):
    services.executor.run('crontab', ['-'], input=text, timeout=services.timeout('quick'))


@infra_bp.route('/scheduled/cron')
@rate_limited('standard')
@operation('Failed to list cron jobs')
def list_cron():
    services = get_services()
    system_path = Path(services.config.get('paths', 'system_crontab'))
    system_text = system_path.read_text(errors='replace') if system_path.exists() else ''
    return jsonify({
        'userCron': parsers.parse_crontab(_read_user_crontab(services)),
        'systemCron': parsers.parse_system_crontab(system_text),
    })


@infra_bp.route('/scheduled/cron', methods=['POST'])
@rate_limited('destructive')
@operation('Failed to add cron job')
def add_cron():
    services = get_services()
    data = json_body()
    schedule = validate_cron_schedule(data.get('schedule'))
    command = validate_cron_command(data.get('command'))

    current = _read_user_crontab(services).rstrip('\n')
    line = f'{schedule} {command}'
    _install_crontab(services, f'{current}\n{line}\n' if current else f'{line}\n')
    log.log_security_event('cron_job_added', schedule=schedule, input=command)
    return jsonify({'success': True, 'job': {'schedule': schedule, 'command': command}})


@infra_bp.route('/scheduled/cron/<index>', methods=['DELETE'])
@rate_limited('destructive')
@operation('Failed to delete cron job')
def delete_cron(index):
    services = get_services()
    if not str(index).isdigit():
        raise ValidationError('Invalid job index', reason='invalid_index', value=index)
    target = int(index)

    lines = _read_user_crontab(services).splitlines()
    job_number = -1
    for position, line in enumerate(lines):
        if parsers.is_cron_job_line(line):
            job_number += 1
            if job_number == target:
                removed = lines.pop(position)
                break
    else:
        raise NotFoundError('Cron job not found', value=target)

    _install_crontab(services, '\n'.join(lines) + '\n' if lines else '')
    log.log_security_event('cron_job_deleted', index=target, input=removed)
    return jsonify({'success': True, 'removed': removed})


@infra_bp.route('/scheduled/timers')
@rate_limited('standard')
@operation('Failed to list timers')
def list_timers():
    output = get_services().executor.run_text(
        'systemctl', ['list-timers', '--all', '--output=json', '--no-pager'])
    return jsonify({'timers': parsers.parse_timers(output)})


@infra_bp.route('/scheduled/timers/<name>/toggle', methods=['POST'])
@rate_limited('destructive')
@operation('Failed to toggle timer')
def toggle_timer(name):
    services = get_services()
    unit = validate_unit_name(name)
    if not unit.endswith('.timer'):
        unit = f'{unit}.timer'
    services.policy.check_service(unit)

    enabled = json_body().get('enabled')
    if not isinstance(enabled, bool):
        raise ValidationError('enabled must be true or false', reason='invalid_enabled', value=enabled)
    action = 'enable' if enabled else 'disable'
    services.executor.run('systemctl', [action, '--now', unit],
                          timeout=services.timeout('default'), privileged=True)
    log.log_security_event('timer_toggled', unit=unit, enabled=enabled)
    return jsonify({'success': True, 'name': unit, 'enabled': enabled})
