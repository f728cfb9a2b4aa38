"""
Developer tool routes: port manager, .env file editor, database browser and
HTTP request proxy.
"""

import json
import re
import time
from datetime import datetime
from pathlib import Path
from urllib.parse import urlparse

from flask import Blueprint, jsonify, request

from command_portal import debug_logger as log
from command_portal import parsers
from command_portal.errors import NotFoundError, ValidationError
from command_portal.rate_limit import rate_limited
from command_portal.routes import json_body, operation, pagination
from command_portal.routes.infrastructure import terminate_process
from command_portal.services import get_services
from command_portal.upstream import PROXY_METHODS
from command_portal.validators import (
    clamp_int,
    validate_env_filename,
    validate_identifier,
    validate_path,
    validate_port,
    validate_sql_query,
)

devtools_bp = Blueprint('devtools', __name__)

SELF_PATH = '__self__'
MAX_PORT_SCAN = 2000
MAX_QUERY_ROWS = 1000
SECRET_KEY_RE = re.compile(r'secret|password|passwd|token|api_?key|private|credential', re.IGNORECASE)
ISO_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2})?)?')

COMMON_PORTS = {
    3000: 'React / Node.js',
    3001: 'Command Portal',
    4200: 'Angular',
    5000: 'Flask',
    5173: 'Vite',
    5432: 'PostgreSQL',
    6379: 'Redis',
    8000: 'Django / FastAPI',
    8080: 'HTTP alternate',
    8888: 'Jupyter',
    9000: 'PHP-FPM / MinIO',
    27017: 'MongoDB',
}

# =============================================================================
# PORT MANAGER
# =============================================================================

def _listening_ports():
    """port -> listener dict, from `ss -tlnp`"""
    output = get_services().executor.run_text('ss', ['-tlnp'])
    return {entry['port']: entry for entry in parsers.parse_ss_listening_ports(output)}


def _port_info(port, listening):
    entry = listening.get(port)
    return {
        'port': port,
        'inUse': entry is not None,
        'process': entry['process'] if entry else None,
        'pid': entry['pid'] if entry else None,
    }


@devtools_bp.route('/ports/status')
@rate_limited('standard')
@operation('Failed to get port status')
def port_status():
    listening = _listening_ports()
    ports = [{**_port_info(port, listening), 'name': name} for port, name in COMMON_PORTS.items()]
    return jsonify({'ports': ports, 'inUse': sum(1 for p in ports if p['inUse'])})


@devtools_bp.route('/ports/check/<port>')
@rate_limited('standard')
@operation('Failed to check port')
def check_port(port):
    port = validate_port(port)
    info = _port_info(port, _listening_ports())
    if info['inUse'] and info['pid'] is None:
        # ss hides the owner of other users' sockets; lsof may still know it
        owner = parsers.parse_lsof_listen(
            get_services().executor.run_text('lsof', ['-i', f':{port}', '-P', '-n']))
        if owner:
            info.update(process=owner['name'], pid=owner['pid'])
    return jsonify(info)


@devtools_bp.route('/ports/scan')
@rate_limited('scan')
@operation('Port scan failed')
def scan_ports():
    start = validate_port(request.args.get('start', 3000))
    end = validate_port(request.args.get('end', 9000))
    if start > end:
        raise ValidationError('start must not exceed end', reason='invalid_range')
    if end - start + 1 > MAX_PORT_SCAN:
        raise ValidationError(f'Port range cannot exceed {MAX_PORT_SCAN} ports', reason='range_too_large')

    listening = _listening_ports()
    ports = [_port_info(port, listening) for port in sorted(listening) if start <= port <= end]
    return jsonify({'start': start, 'end': end, 'ports': ports, 'count': len(ports)})


@devtools_bp.route('/ports/suggest')
@rate_limited('standard')
@operation('Failed to suggest ports')
def suggest_ports():
    base = validate_port(request.args.get('base', 3000))
    count = clamp_int(request.args.get('count'), 5, 1, 20)
    listening = _listening_ports()
    suggestions = []
    port = base
    while port <= 65535 and len(suggestions) < count:
        if port not in listening:
            suggestions.append(port)
        port += 1
    return jsonify({'base': base, 'suggestions': suggestions})


@devtools_bp.route('/ports/kill/<pid>', methods=['POST'])
@rate_limited('destructive')
@operation('Failed to kill process')
def kill_port_process(pid):
    return jsonify(terminate_process(pid, json_body().get('signal')))

# =============================================================================
# ENV FILE EDITOR
# =============================================================================

def _project_dir(raw_path) -> Path:
    services = get_services()
    if raw_path == SELF_PATH:
        return services.self_dir
    resolved = validate_path(raw_path, services.allowed_roots, base=services.projects_dir)
    if resolved is None:
        log.log_security_event('path_rejected', input=raw_path)
        raise ValidationError('Path is outside the allowed project directories',
                              reason='path_not_allowed', value=raw_path)
    if not resolved.is_dir():
        raise NotFoundError('Project directory not found')
    return resolved


def _env_file(directory: Path, filename) -> Path:
    return directory / validate_env_filename(filename)


def _read_env(path: Path):
    if not path.is_file():
        raise NotFoundError(f'File not found: {path.name}')
    return parsers.parse_env_file(path.read_text(errors='replace'))


def _render_env(variables):
    lines = []
    for item in variables:
        value = str(item['value'])
        if any(ch in value for ch in (' ', '#', '"', "'")):
            value = json.dumps(value)
        lines.append(f"{item['key']}={value}")
    return '\n'.join(lines) + '\n'


def _clean_variables(raw):
    if not isinstance(raw, list):
        raise ValidationError('variables must be a list', reason='invalid_variables')
    variables = []
    for item in raw:
        key = item.get('key') if isinstance(item, dict) else None
        value = item.get('value', '') if isinstance(item, dict) else None
        if not isinstance(key, str) or not parsers.ENV_KEY_RE.match(key):
            raise ValidationError('Invalid variable name', reason='invalid_variable', value=key)
        if value is None:
            value = ''
        if any(ch in str(value) for ch in ('\n', '\r', '\x00')):
            raise ValidationError(f'Value for {key} must be a single line', reason='invalid_variable')
        variables.append({'key': key, 'value': value})
    return variables


@devtools_bp.route('/env/files')
@rate_limited('file')
@operation('Failed to list env files')
def env_files():
    directory = _project_dir(request.args.get('path'))
    files = []
    for entry in sorted(directory.iterdir()):
        if not entry.name.startswith('.env') or not entry.is_file():
            continue
        stat = entry.stat()
        files.append({
            'name': entry.name,
            'size': stat.st_size,
            'modified': datetime.fromtimestamp(stat.st_mtime).isoformat(),
            'variableCount': len(parsers.parse_env_file(entry.read_text(errors='replace'))),
        })
    return jsonify({'path': str(directory), 'files': files})


@devtools_bp.route('/env/variables')
@rate_limited('file')
@operation('Failed to read env file')
def env_variables():
    directory = _project_dir(request.args.get('path'))
    path = _env_file(directory, request.args.get('filename', '.env'))
    return jsonify({'filename': path.name, 'variables': _read_env(path)})


@devtools_bp.route('/env/save', methods=['POST'])
@rate_limited('file')
@operation('Failed to save env file')
def env_save():
    data = json_body()
    directory = _project_dir(data.get('path'))
    path = _env_file(directory, data.get('filename', '.env'))
    variables = _clean_variables(data.get('variables'))
    path.write_text(_render_env(variables))
    log.log_security_event('env_file_saved', file=str(path), variables=len(variables))
    return jsonify({'success': True, 'filename': path.name, 'variables': len(variables)})


@devtools_bp.route('/env/compare')
@rate_limited('file')
@operation('Failed to compare env files')
def env_compare():
    directory = _project_dir(request.args.get('path'))
    source = {v['key']: v['value'] for v in _read_env(_env_file(directory, request.args.get('source')))}
    target = {v['key']: v['value'] for v in _read_env(_env_file(directory, request.args.get('target')))}
    changed = [
        {'key': key, 'sourceValue': source[key], 'targetValue': target[key]}
        for key in sorted(source.keys() & target.keys()) if source[key] != target[key]
    ]
    return jsonify({
        'added': sorted(target.keys() - source.keys()),
        'removed': sorted(source.keys() - target.keys()),
        'changed': changed,
        'identical': sorted(k for k in source.keys() & target.keys() if source[k] == target[k]),
    })


@devtools_bp.route('/env/sync', methods=['POST'])
@rate_limited('file')
@operation('Failed to sync env files')
def env_sync():
    """Copy keys missing from `target` over from `source`; existing values stay"""
    data = json_body()
    directory = _project_dir(data.get('path'))
    source = _read_env(_env_file(directory, data.get('source')))
    target_path = _env_file(directory, data.get('target'))
    target = _read_env(target_path) if target_path.exists() else []

    present = {v['key'] for v in target}
    added = [v for v in source if v['key'] not in present]
    target_path.write_text(_render_env(target + added))
    log.log_security_event('env_file_synced', file=str(target_path), added=len(added))
    return jsonify({'success': True, 'added': [v['key'] for v in added]})


@devtools_bp.route('/env/generate-example', methods=['POST'])
@rate_limited('file')
@operation('Failed to generate example env file')
def env_generate_example():
    data = json_body()
    directory = _project_dir(data.get('path'))
    source = _read_env(_env_file(directory, data.get('source', '.env')))
    example = [
        {'key': v['key'],
         'value': f"your_{v['key'].lower()}_here" if SECRET_KEY_RE.search(v['key']) else v['value']}
        for v in source
    ]
    path = directory / '.env.example'
    path.write_text(_render_env(example))
    return jsonify({'success': True, 'filename': path.name, 'variables': len(example)})

# =============================================================================
# DATABASE BROWSER
# =============================================================================

def infer_type(value):
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'boolean'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        if ISO_DATE_RE.match(value):
            return 'date'
        if value[:1] in ('{', '['):
            try:
                json.loads(value)
                return 'json'
            except ValueError:
                pass
    return 'string'


def _record_id(data):
    record_id = data.get('id')
    if record_id is None or isinstance(record_id, (dict, list, bool)):
        raise ValidationError('Record id is required', reason='missing_id')
    return record_id


@devtools_bp.route('/db/tables')
@rate_limited('database')
@operation('Failed to list tables')
def db_tables():
    repositories = get_services().repositories
    tables = [{'name': name, 'rowCount': repositories.get(name).count()} for name in repositories.names()]
    return jsonify({'tables': tables})


@devtools_bp.route('/db/tables/<table>/data')
@rate_limited('database')
@operation('Failed to load table data')
def db_table_data(table):
    repository = get_services().repositories.get(validate_identifier(table))
    page, page_size = pagination(default_size=25, max_size=100)
    sort_column = request.args.get('sortColumn') or None
    if sort_column:
        validate_identifier(sort_column)
    direction = 'desc' if request.args.get('sortDirection', 'asc').lower() == 'desc' else 'asc'

    rows = repository.list(page, page_size, sort_column, direction)
    total = repository.count()
    columns = []
    for name in repository.columns:
        sample = next((row[name] for row in rows if row.get(name) is not None), None)
        declared = repository.column_types[name].lower()
        columns.append({'name': name, 'type': infer_type(sample) if sample is not None else declared})
    return jsonify({
        'table': table,
        'columns': columns,
        'rows': rows,
        'total': total,
        'page': page,
        'pageSize': page_size,
        'totalPages': (total + page_size - 1) // page_size if total else 0,
    })


@devtools_bp.route('/db/tables/<table>/update', methods=['PUT'])
@rate_limited('database')
@operation('Failed to update record')
def db_update(table):
    repository = get_services().repositories.get(validate_identifier(table))
    data = json_body()
    record_id = _record_id(data)
    fields = data.get('data') if isinstance(data.get('data'), dict) else {
        k: v for k, v in data.items() if k != 'id'}
    record = repository.update(record_id, fields)
    log.log_security_event('db_record_updated', table=table, id=record_id)
    return jsonify({'success': True, 'record': record})


@devtools_bp.route('/db/tables/<table>/delete', methods=['DELETE'])
@rate_limited('destructive')
@operation('Failed to delete record')
def db_delete(table):
    repository = get_services().repositories.get(validate_identifier(table))
    record_id = _record_id(json_body())
    repository.delete(record_id)
    log.log_security_event('db_record_deleted', table=table, id=record_id)
    return jsonify({'success': True})


@devtools_bp.route('/db/query', methods=['POST'])
@rate_limited('database')
@operation('Query execution failed')
def db_query():
    services = get_services()
    query = json_body().get('query')
    log.log_security_event('db_query_attempt', input=query if isinstance(query, str) else repr(query))
    query = validate_sql_query(query)

    start = time.perf_counter()
    columns, rows, truncated = services.db.query_raw(
        query, timeout=services.config.get('database', 'query_timeout', 30), max_rows=MAX_QUERY_ROWS)
    elapsed = round((time.perf_counter() - start) * 1000, 2)
    return jsonify({
        'columns': columns,
        'rows': rows,
        'rowCount': len(rows),
        'truncated': truncated,
        'executionTime': elapsed,
    })

# =============================================================================
# HTTP PROXY
# =============================================================================

@devtools_bp.route('/proxy', methods=['POST'])
@rate_limited('standard')
@operation('Proxy request failed')
def proxy_request():
    data = json_body()
    url = data.get('url')
    parsed = urlparse(url) if isinstance(url, str) else None
    if parsed is None or parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValidationError('Only http and https URLs are allowed', reason='invalid_url', value=url)

    method = str(data.get('method', 'GET')).upper()
    if method not in PROXY_METHODS:
        raise ValidationError('Unsupported HTTP method', reason='invalid_method', value=method)
    headers = data.get('headers') or {}
    if not isinstance(headers, dict):
        raise ValidationError('headers must be an object', reason='invalid_headers')

    log.info('PROXY', f'{method} {parsed.scheme}://{parsed.netloc}{parsed.path}')
    return jsonify(get_services().http.relay(url, method, headers, data.get('body')))
