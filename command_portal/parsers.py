#!/usr/bin/env python3
"""
CLI output parsers
==================
Turn the stdout of ps, ss, ip, dpkg-query, apt, journalctl, who, last, ping,
dig, fail2ban-client, crontab and systemctl into JSON-ready values.

Contract shared by every parser:
- input is the raw stdout text
- a line that does not have the expected shape is dropped
- the return value always has the documented type; an unexpected error
  inside a parser yields the empty value instead of an exception

Dropped lines are counted in DIAGNOSTICS so a parser that has fallen out of
step with a tool's output format shows up at /api/system/diagnostics/parsers
even though the returned data looks like an ordinary empty result.
"""

import functools
import json
import re
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from command_portal import debug_logger as log

# =============================================================================
# PARSE DIAGNOSTICS
# =============================================================================

class ParseDiagnostics:
    """Per-parser counters of runs, parsed items and dropped lines"""

    def __init__(self):
        self._lock = threading.Lock()
        self._stats: Dict[str, Dict[str, Any]] = {}

    def _entry(self, name):
        return self._stats.setdefault(name, {
            'runs': 0, 'parsed': 0, 'dropped': 0, 'failures': 0,
            'lastDropAt': None, 'lastDropSample': None,
        })

    def record_run(self, name: str, parsed: int) -> None:
        with self._lock:
            entry = self._entry(name)
            entry['runs'] += 1
            entry['parsed'] += parsed

    def record_drop(self, name: str, line: str) -> None:
        with self._lock:
            entry = self._entry(name)
            entry['dropped'] += 1
            entry['lastDropAt'] = time.time()
            entry['lastDropSample'] = line[:120]

    def record_failure(self, name: str) -> None:
        with self._lock:
            self._entry(name)['failures'] += 1

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: dict(entry) for name, entry in self._stats.items()}

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()


DIAGNOSTICS = ParseDiagnostics()


def _drop(name: str, line: str) -> None:
    DIAGNOSTICS.record_drop(name, line)


def parser(name: str, empty: Callable[[], Any] = list):
    """Register a parser: count its output and turn any crash into `empty()`"""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(text, *args, **kwargs):
            try:
                result = func(text or '', *args, **kwargs)
            except Exception as e:
                DIAGNOSTICS.record_failure(name)
                log.error('PARSER', f'{name} parser failed: {e}', exc_info=True)
                return empty()
            parsed = len(result) if isinstance(result, (list, dict)) else int(result is not None)
            DIAGNOSTICS.record_run(name, parsed)
            return result
        return wrapper
    return decorator


def _lines(text: str) -> List[str]:
    return [line for line in text.splitlines() if line.strip()]


def _to_int(value, default=0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _to_float(value, default=0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default

# =============================================================================
# PROCESSES (ps)
# =============================================================================

PS_LIST_FIELDS = 'user:15,pid,%cpu,%mem,vsz,rss,tty,stat,start,time,comm'
PS_DETAIL_FIELDS = 'pid,ppid,user,uid,gid,%cpu,%mem,vsz,rss,stat,start,time,command'


@parser('ps_list')
def parse_ps_list(text: str) -> List[Dict[str, Any]]:
    processes = []
    for line in _lines(text):
        parts = line.split(None, 10)
        if len(parts) < 11 or not parts[1].isdigit():
            _drop('ps_list', line)
            continue
        processes.append({
            'user': parts[0],
            'pid': int(parts[1]),
            'cpu': _to_float(parts[2]),
            'memory': _to_float(parts[3]),
            'vsz': _to_int(parts[4]),
            'rss': _to_int(parts[5]),
            'tty': parts[6],
            'stat': parts[7],
            'start': parts[8],
            'time': parts[9],
            'command': parts[10].strip(),
        })
    return processes


@parser('ps_detail', empty=lambda: None)
def parse_ps_detail(text: str) -> Optional[Dict[str, Any]]:
    for line in _lines(text):
        parts = line.split(None, 12)
        if len(parts) < 13 or not parts[0].isdigit():
            _drop('ps_detail', line)
            continue
        return {
            'pid': int(parts[0]),
            'ppid': _to_int(parts[1]),
            'user': parts[2],
            'uid': _to_int(parts[3]),
            'gid': _to_int(parts[4]),
            'cpu': _to_float(parts[5]),
            'memory': _to_float(parts[6]),
            'vsz': _to_int(parts[7]),
            'rss': _to_int(parts[8]),
            'stat': parts[9],
            'start': parts[10],
            'time': parts[11],
            'command': parts[12].strip(),
        }
    return None


@parser('ps_owner', empty=lambda: None)
def parse_ps_owner(text: str) -> Optional[Tuple[str, str]]:
    """`ps -p PID -o user,comm --no-headers` -> (owner, process name)"""
    for line in _lines(text):
        parts = line.split(None, 1)
        if len(parts) != 2:
            _drop('ps_owner', line)
            continue
        return parts[0], parts[1].strip()
    return None

# =============================================================================
# PACKAGES (dpkg-query, apt)
# =============================================================================

DPKG_FORMAT = '${Package}|${Version}|${Status}|${Installed-Size}|${binary:Summary}\n'
APT_UPGRADABLE_RE = re.compile(r'^([^/\s]+)/\S+\s+(\S+).*\[upgradable from: ([^\]]+)\]')


@parser('dpkg_packages')
def parse_dpkg_packages(text: str) -> List[Dict[str, Any]]:
    packages = []
    for line in _lines(text):
        parts = line.split('|', 4)
        if len(parts) != 5 or not parts[0]:
            _drop('dpkg_packages', line)
            continue
        name, version, status, size, description = parts
        if not status.endswith(' installed'):
            continue
        packages.append({
            'name': name,
            'version': version,
            'status': status,
            'size': _to_int(size),
            'description': description.strip(),
        })
    packages.sort(key=lambda p: p['name'])
    return packages


@parser('apt_upgradable')
def parse_apt_upgradable(text: str) -> List[Dict[str, str]]:
    updates = []
    for line in _lines(text):
        if line.startswith('Listing') or line.startswith('WARNING'):
            continue
        match = APT_UPGRADABLE_RE.match(line)
        if not match:
            _drop('apt_upgradable', line)
            continue
        updates.append({
            'name': match.group(1),
            'newVersion': match.group(2),
            'currentVersion': match.group(3),
        })
    return updates


@parser('apt_search')
def parse_apt_search(text: str, limit: int = 50) -> List[Dict[str, str]]:
    results = []
    for line in _lines(text):
        name, sep, description = line.partition(' - ')
        if not sep or not name.strip():
            _drop('apt_search', line)
            continue
        results.append({'name': name.strip(), 'description': description.strip()})
        if len(results) >= limit:
            break
    return results

# =============================================================================
# JOURNAL (journalctl)
# =============================================================================

JOURNAL_SIZE_RE = re.compile(r'(\d+(?:\.\d+)?\s*[KMGT]?i?B)')


def _journal_message(value) -> str:
    # binary messages are emitted as a list of byte values
    if isinstance(value, list):
        try:
            return bytes(value).decode('utf-8', errors='replace')
        except (TypeError, ValueError):
            return ''
    return '' if value is None else str(value)


@parser('journal_json')
def parse_journal_json(text: str) -> List[Dict[str, Any]]:
    """`journalctl -o json`, one object per line; returned newest first"""
    entries = []
    for line in _lines(text):
        try:
            record = json.loads(line)
        except ValueError:
            _drop('journal_json', line)
            continue
        if not isinstance(record, dict):
            _drop('journal_json', line)
            continue
        micros = _to_int(record.get('__REALTIME_TIMESTAMP'))
        timestamp = (datetime.fromtimestamp(micros / 1_000_000, tz=timezone.utc).isoformat()
                     if micros else None)
        entries.append({
            'timestamp': timestamp,
            'priority': _to_int(record.get('PRIORITY'), 6),
            'unit': record.get('_SYSTEMD_UNIT') or record.get('SYSLOG_IDENTIFIER') or 'system',
            'message': _journal_message(record.get('MESSAGE')),
            'pid': _to_int(record.get('_PID'), None),
            'uid': _to_int(record.get('_UID'), None),
            'hostname': record.get('_HOSTNAME'),
        })
    entries.reverse()
    return entries


@parser('journal_units')
def parse_journal_units(text: str) -> List[str]:
    return sorted({line.strip() for line in _lines(text)})


@parser('journal_disk_usage', empty=lambda: {'usage': None, 'raw': ''})
def parse_journal_disk_usage(text: str) -> Dict[str, Any]:
    match = JOURNAL_SIZE_RE.search(text)
    if not match and text.strip():
        _drop('journal_disk_usage', text.strip())
    return {'usage': match.group(1) if match else None, 'raw': text.strip()}

# =============================================================================
# NETWORK (ss, ip, ping, dig)
# =============================================================================

SS_PROCESS_RE = re.compile(r'users:\(\("([^"]+)",pid=(\d+)')
PING_STATS_RE = re.compile(r'(\d+) packets transmitted, (\d+) (?:packets )?received.*?(?:time (\d+)ms)?$', re.M)
PING_RTT_RE = re.compile(r'(?:rtt|round-trip) min/avg/max/(?:mdev|stddev) = ([\d.]+)/([\d.]+)/([\d.]+)/([\d.]+)')


def _split_address(address: str) -> Tuple[str, int]:
    host, sep, port = address.rpartition(':')
    if not sep or not port.isdigit():
        return address, 0
    return host.strip('[]'), int(port)


@parser('ss_connections')
def parse_ss_connections(text: str) -> List[Dict[str, Any]]:
    """`ss -tuln`: Netid State Recv-Q Send-Q Local Peer"""
    connections = []
    for line in _lines(text):
        if line.startswith('Netid') or line.startswith('State'):
            continue
        parts = line.split()
        if len(parts) < 6 or not parts[2].isdigit():
            _drop('ss_connections', line)
            continue
        connections.append({
            'protocol': parts[0],
            'state': parts[1],
            'recvQ': int(parts[2]),
            'sendQ': _to_int(parts[3]),
            'localAddress': parts[4],
            'peerAddress': parts[5],
        })
    return connections


@parser('ss_listening')
def parse_ss_listening_ports(text: str) -> List[Dict[str, Any]]:
    """`ss -tlnp`: State Recv-Q Send-Q Local Peer [Process]"""
    ports = []
    for line in _lines(text):
        if line.startswith('State') or line.startswith('Netid'):
            continue
        parts = line.split()
        if len(parts) < 5:
            _drop('ss_listening', line)
            continue
        ip, port = _split_address(parts[3])
        if not port:
            _drop('ss_listening', line)
            continue
        match = SS_PROCESS_RE.search(line)
        ports.append({
            'port': port,
            'ip': ip,
            'state': parts[0],
            'process': match.group(1) if match else None,
            'pid': int(match.group(2)) if match else None,
        })
    ports.sort(key=lambda p: p['port'])
    return ports


@parser('ip_addr')
def parse_ip_addr_json(text: str) -> List[Dict[str, Any]]:
    """`ip -j addr show`"""
    try:
        data = json.loads(text) if text.strip() else []
    except ValueError:
        _drop('ip_addr', text[:120])
        return []
    if not isinstance(data, list):
        return []

    interfaces = []
    for iface in data:
        if not isinstance(iface, dict) or 'ifname' not in iface:
            _drop('ip_addr', repr(iface))
            continue
        interfaces.append({
            'name': iface['ifname'],
            'state': iface.get('operstate', 'UNKNOWN'),
            'mac': iface.get('address'),
            'mtu': iface.get('mtu'),
            'addresses': [
                {
                    'family': addr.get('family'),
                    'address': addr.get('local'),
                    'prefixLength': addr.get('prefixlen'),
                }
                for addr in iface.get('addr_info', []) if isinstance(addr, dict)
            ],
        })
    return interfaces


@parser('ping', empty=lambda: {'transmitted': 0, 'received': 0, 'time': None, 'rtt': None})
def parse_ping(text: str) -> Dict[str, Any]:
    result = {'transmitted': 0, 'received': 0, 'time': None, 'rtt': None}
    stats = PING_STATS_RE.search(text)
    if stats:
        result['transmitted'] = int(stats.group(1))
        result['received'] = int(stats.group(2))
        result['time'] = int(stats.group(3)) if stats.group(3) else None
    rtt = PING_RTT_RE.search(text)
    if rtt:
        result['rtt'] = {
            'min': float(rtt.group(1)),
            'avg': float(rtt.group(2)),
            'max': float(rtt.group(3)),
            'mdev': float(rtt.group(4)),
        }
    return result


@parser('dig_short')
def parse_dig_short(text: str) -> List[str]:
    records = []
    for line in _lines(text):
        line = line.strip()
        if line.startswith(';'):
            _drop('dig_short', line)
            continue
        records.append(line)
    return records


@parser('hosts_file')
def parse_hosts_file(text: str) -> List[Dict[str, Any]]:
    entries = []
    for line in _lines(text):
        content = line.split('#', 1)[0].strip()
        if not content:
            continue
        parts = content.split()
        if len(parts) < 2:
            _drop('hosts_file', line)
            continue
        entries.append({'ip': parts[0], 'hostnames': parts[1:]})
    return entries

# =============================================================================
# LOGINS / SSH (who, last, auth.log, authorized_keys)
# =============================================================================

WHO_FROM_RE = re.compile(r'\(([^)]*)\)')
LAST_RE = re.compile(
    r'^(?P<user>\S+)\s+(?P<tty>\S+)\s+(?:(?P<host>\S+)\s+)?'
    r'(?P<login>[A-Z][a-z]{2} [A-Z][a-z]{2}\s+\d{1,2} \d{2}:\d{2}:\d{2} \d{4})(?P<rest>.*)$'
)
LAST_DURATION_RE = re.compile(r'\(([^)]+)\)\s*$')
FAILED_SSH_RE = re.compile(
    r'^(\w+\s+\d+\s+[\d:]+|\d{4}-\d{2}-\d{2}T\S+).*Failed password for (?:invalid user )?(\S+) from ([\d.a-fA-F:]+) port (\d+)'
)
SSH_KEY_TYPES = ('ssh-', 'ecdsa-', 'sk-')


@parser('who')
def parse_who(text: str) -> List[Dict[str, Any]]:
    sessions = []
    for line in _lines(text):
        parts = line.split()
        if len(parts) < 4:
            _drop('who', line)
            continue
        match = WHO_FROM_RE.search(line)
        sessions.append({
            'user': parts[0],
            'tty': parts[1],
            'date': parts[2],
            'time': parts[3],
            'from': match.group(1) if match else 'local',
        })
    return sessions


@parser('last')
def parse_last(text: str) -> List[Dict[str, Any]]:
    logins = []
    for line in _lines(text):
        if line.startswith('wtmp') or line.startswith('reboot') or line.startswith('btmp'):
            continue
        match = LAST_RE.match(line)
        if not match:
            _drop('last', line)
            continue
        rest = match.group('rest')
        duration = LAST_DURATION_RE.search(rest)
        if duration:
            duration_text = duration.group(1)
        elif 'still logged in' in rest:
            duration_text = 'still logged in'
        else:
            duration_text = None
        logins.append({
            'user': match.group('user'),
            'tty': match.group('tty'),
            'from': match.group('host') or 'local',
            'loginTime': match.group('login'),
            'duration': duration_text,
        })
    return logins


@parser('failed_ssh')
def parse_failed_ssh(text: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Failed password lines from auth.log, newest first"""
    attempts = []
    for line in _lines(text):
        if 'Failed password' not in line:
            continue
        match = FAILED_SSH_RE.search(line)
        if not match:
            _drop('failed_ssh', line)
            continue
        attempts.append({
            'timestamp': match.group(1),
            'user': match.group(2),
            'ip': match.group(3),
            'port': int(match.group(4)),
        })
    attempts.reverse()
    return attempts[:limit]


@parser('ssh_keygen_fingerprint', empty=str)
def parse_ssh_keygen_fingerprint(text: str) -> str:
    """`ssh-keygen -lf -` -> 'SHA256:...'"""
    parts = text.split()
    return parts[1] if len(parts) >= 2 else ''


@parser('authorized_keys')
def parse_authorized_keys(text: str,
                          fingerprint: Optional[Callable[[str], str]] = None) -> List[Dict[str, Any]]:
    """
    authorized_keys lines. `fingerprint` receives the full key line and
    returns its fingerprint; the key material itself is never returned.
    """
    keys = []
    for index, line in enumerate(text.splitlines()):
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue
        parts = stripped.split()
        type_index = next((i for i, p in enumerate(parts) if p.startswith(SSH_KEY_TYPES)), None)
        if type_index is None or type_index + 1 >= len(parts):
            _drop('authorized_keys', stripped)
            continue
        key = parts[type_index + 1]
        keys.append({
            'index': index,
            'type': parts[type_index],
            'comment': ' '.join(parts[type_index + 2:]),
            'keyPreview': f'{key[:20]}...{key[-20:]}' if len(key) > 40 else key,
            'fingerprint': fingerprint(stripped) if fingerprint else '',
        })
    return keys

# =============================================================================
# FAIL2BAN
# =============================================================================

JAIL_LIST_RE = re.compile(r'Jail list:\s*(.+)')
CURRENTLY_BANNED_RE = re.compile(r'Currently banned:\s*(\d+)')
TOTAL_BANNED_RE = re.compile(r'Total banned:\s*(\d+)')
BANNED_IPS_RE = re.compile(r'Banned IP list:[ \t]*(.*)')


@parser('fail2ban_jails')
def parse_fail2ban_jails(text: str) -> List[str]:
    match = JAIL_LIST_RE.search(text)
    if not match:
        return []
    return [jail.strip() for jail in match.group(1).split(',') if jail.strip()]


@parser('fail2ban_jail', empty=dict)
def parse_fail2ban_jail(text: str, name: str = '') -> Dict[str, Any]:
    current = CURRENTLY_BANNED_RE.search(text)
    total = TOTAL_BANNED_RE.search(text)
    banned = BANNED_IPS_RE.search(text)
    return {
        'name': name,
        'currentlyBanned': int(current.group(1)) if current else 0,
        'totalBanned': int(total.group(1)) if total else 0,
        'bannedIPs': banned.group(1).split() if banned else [],
    }

# =============================================================================
# SCHEDULED (crontab, systemd timers)
# =============================================================================

def is_cron_job_line(line: str) -> bool:
    """True for lines that define a job (not blank, comment or VAR=value)"""
    stripped = line.strip()
    if not stripped or stripped.startswith('#'):
        return False
    first = stripped.split(None, 1)[0]
    return '=' not in first


def _cron_fields(schedule_parts: List[str]) -> Dict[str, str]:
    if len(schedule_parts) == 1:
        return {'minute': None, 'hour': None, 'dayOfMonth': None, 'month': None, 'dayOfWeek': None}
    minute, hour, dom, month, dow = schedule_parts
    return {'minute': minute, 'hour': hour, 'dayOfMonth': dom, 'month': month, 'dayOfWeek': dow}


@parser('crontab')
def parse_crontab(text: str) -> List[Dict[str, Any]]:
    """User crontab; `id` is the job's position, used for deletion"""
    jobs = []
    for line in text.splitlines():
        if not is_cron_job_line(line):
            continue
        stripped = line.strip()
        if stripped.startswith('@'):
            parts = stripped.split(None, 1)
            schedule_parts = parts[:1]
        else:
            parts = stripped.split(None, 5)
            schedule_parts = parts[:5]
        if len(parts) != len(schedule_parts) + 1:
            _drop('crontab', stripped)
            jobs.append(None)  # keeps ids aligned with job lines
            continue
        jobs.append({
            'id': len(jobs),
            'type': 'user',
            'schedule': ' '.join(schedule_parts),
            'command': parts[-1],
            **_cron_fields(schedule_parts),
        })
    return [job for job in jobs if job is not None]


@parser('system_crontab')
def parse_system_crontab(text: str) -> List[Dict[str, Any]]:
    """/etc/crontab: five schedule fields, a user, then the command"""
    jobs = []
    for line in text.splitlines():
        if not is_cron_job_line(line):
            continue
        parts = line.strip().split(None, 6)
        if len(parts) < 7:
            _drop('system_crontab', line.strip())
            continue
        jobs.append({
            'id': f'system-{len(jobs)}',
            'type': 'system',
            'schedule': ' '.join(parts[:5]),
            'user': parts[5],
            'command': parts[6],
            **_cron_fields(parts[:5]),
        })
    return jobs


def _usec_to_iso(value) -> Optional[str]:
    micros = _to_int(value)
    if micros <= 0:
        return None
    return datetime.fromtimestamp(micros / 1_000_000, tz=timezone.utc).isoformat()


@parser('timers')
def parse_timers(text: str) -> List[Dict[str, Any]]:
    """`systemctl list-timers --all --output=json`, falling back to the table"""
    stripped = text.strip()
    if stripped.startswith('['):
        try:
            data = json.loads(stripped)
        except ValueError:
            data = None
        if isinstance(data, list):
            timers = []
            for item in data:
                if not isinstance(item, dict) or not item.get('unit'):
                    _drop('timers', repr(item))
                    continue
                timers.append({
                    'name': item['unit'],
                    'activates': item.get('activates'),
                    'next': _usec_to_iso(item.get('next')),
                    'left': item.get('left'),
                    'last': _usec_to_iso(item.get('last')),
                    'passed': item.get('passed'),
                })
            return timers

    timers = []
    for line in _lines(text):
        if line.startswith('NEXT') or 'timers listed' in line or line.startswith('Pass --all'):
            continue
        parts = re.split(r'\s{2,}', line.strip())
        if len(parts) < 2 or not parts[-2].endswith('.timer'):
            _drop('timers', line)
            continue
        padded = parts[:-2] + [None] * max(0, 4 - len(parts[:-2]))
        timers.append({
            'name': parts[-2],
            'activates': parts[-1],
            'next': padded[0],
            'left': padded[1],
            'last': padded[2],
            'passed': padded[3],
        })
    return timers

# =============================================================================
# PORTS (lsof)
# =============================================================================

@parser('lsof_listen', empty=lambda: None)
def parse_lsof_listen(text: str) -> Optional[Dict[str, Any]]:
    """First process line of `lsof -i :PORT -P -n`"""
    for line in _lines(text):
        if line.startswith('COMMAND'):
            continue
        parts = line.split()
        if len(parts) < 2 or not parts[1].isdigit():
            _drop('lsof_listen', line)
            continue
        return {'name': parts[0], 'pid': int(parts[1])}
    return None

# =============================================================================
# ENV FILES (.env, .env.local, ...)
# =============================================================================

ENV_KEY_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_.]*$')


@parser('env_file')
def parse_env_file(text: str) -> List[Dict[str, Any]]:
    """KEY=value lines; `export ` prefixes and matching outer quotes removed"""
    variables = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith('#'):
            continue
        if stripped.startswith('export '):
            stripped = stripped[len('export '):].lstrip()
        key, sep, value = stripped.partition('=')
        key = key.strip()
        if not sep or not ENV_KEY_RE.match(key):
            _drop('env_file', stripped)
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        variables.append({'key': key, 'value': value})
    return variables
