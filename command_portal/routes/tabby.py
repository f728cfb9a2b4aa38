"""
Tabby routes: container lifecycle, model selection, completion test, the
persisted configuration and editor integration snippets.
"""

from pathlib import Path

from flask import Blueprint, jsonify, request

from command_portal import debug_logger as log
from command_portal.errors import ValidationError
from command_portal.rate_limit import rate_limited
from command_portal.routes import json_body, operation
from command_portal.services import get_services
from command_portal.tabby_manager import validate_model
from command_portal.validators import clamp_int, validate_path, validate_port

tabby_bp = Blueprint('tabby', __name__)

MAX_TEST_CODE = 2000


def _data_dir(raw):
    """A Tabby data directory must live under the home or configured data dir"""
    services = get_services()
    roots = [Path.home(), Path(services.config.get('tabby', 'data_dir')).expanduser()]
    resolved = validate_path(raw, roots)
    if resolved is None:
        log.log_security_event('path_rejected', input=raw)
        raise ValidationError('Data directory is outside the allowed locations',
                              reason='path_not_allowed', value=raw)
    return str(resolved)


def _launch_options(data):
    options = {}
    if data.get('model') is not None:
        options['model'] = validate_model(data['model'])
    if data.get('useGpu') is not None:
        options['use_gpu'] = bool(data['useGpu'])
    if data.get('port') is not None:
        options['port'] = validate_port(data['port'])
    if data.get('dataDir'):
        options['data_dir'] = _data_dir(data['dataDir'])
    return options


def _persist(status=None, container_id=None, **extra):
    services = get_services()
    config = services.tabby.config
    if container_id is not None:
        extra['container_id'] = container_id
    services.db.upsert_tabby_config(
        model=config['model'],
        use_gpu=int(config['useGpu']),
        port=config['port'],
        data_dir=config['dataDir'],
        status=status or services.tabby.status,
        **extra,
    )


@tabby_bp.route('/status')
@rate_limited('standard')
@operation('Failed to get Tabby status')
def status():
    return jsonify(get_services().tabby.get_status())


@tabby_bp.route('/models')
@rate_limited('standard')
def models():
    tabby = get_services().tabby
    return jsonify({'models': tabby.get_models(), 'current': tabby.config['model']})


@tabby_bp.route('/start', methods=['POST'])
@rate_limited('destructive')
@operation('Failed to start Tabby')
def start():
    tabby = get_services().tabby
    result = tabby.start(**_launch_options(json_body()))
    _persist(status='running', container_id=result.get('containerId'))
    log.log_security_event('tabby_started', model=tabby.config['model'])
    return jsonify(result)


@tabby_bp.route('/stop', methods=['POST'])
@rate_limited('destructive')
@operation('Failed to stop Tabby')
def stop():
    result = get_services().tabby.stop()
    _persist(status='stopped')
    log.log_security_event('tabby_stopped')
    return jsonify(result)


@tabby_bp.route('/restart', methods=['POST'])
@rate_limited('destructive')
@operation('Failed to restart Tabby')
def restart():
    result = get_services().tabby.restart()
    _persist(status='running', container_id=result.get('containerId'))
    return jsonify(result)


@tabby_bp.route('/pull', methods=['POST'])
@rate_limited('destructive')
@operation('Failed to pull Tabby image')
def pull():
    return jsonify(get_services().tabby.pull_image(bool(json_body().get('useGpu'))))


@tabby_bp.route('/logs')
@rate_limited('standard')
@operation('Failed to get Tabby logs')
def logs():
    tail = clamp_int(request.args.get('tail'), 100, 1, 1000)
    return jsonify({'logs': get_services().tabby.get_logs(tail)})


@tabby_bp.route('/model', methods=['PUT'])
@rate_limited('destructive')
@operation('Failed to update model')
def update_model():
    tabby = get_services().tabby
    result = tabby.update_model(validate_model(json_body().get('model')))
    _persist()
    return jsonify(result)


@tabby_bp.route('/test', methods=['POST'])
@rate_limited('ai')
@operation('Completion test failed. Is Tabby running?')
def test_completion():
    code = json_body().get('code') or 'def hello_world():'
    if not isinstance(code, str) or len(code) > MAX_TEST_CODE:
        raise ValidationError(f'code must be a string of at most {MAX_TEST_CODE} characters',
                              reason='invalid_code')
    return jsonify(get_services().tabby.test_completion(code))


@tabby_bp.route('/config')
@rate_limited('standard')
@operation('Failed to load Tabby configuration')
def get_config():
    services = get_services()
    stored = services.db.get_tabby_config()
    return jsonify({
        'config': dict(services.tabby.config),
        'autoStart': bool(stored and stored.get('auto_start')),
        'saved': stored,
    })


@tabby_bp.route('/config', methods=['PUT'])
@rate_limited('standard')
@operation('Failed to save Tabby configuration')
def put_config():
    services = get_services()
    data = json_body()
    options = _launch_options(data)
    tabby_config = services.tabby.config
    for key, field in (('model', 'model'), ('use_gpu', 'useGpu'), ('port', 'port'), ('data_dir', 'dataDir')):
        if key in options:
            tabby_config[field] = options[key]

    extra = {}
    if 'autoStart' in data:
        extra['auto_start'] = int(bool(data['autoStart']))
    _persist(**extra)
    return jsonify({'success': True, 'config': dict(tabby_config)})


@tabby_bp.route('/ide-config')
@rate_limited('standard')
def ide_config():
    """Snippets that point common editors at this Tabby server"""
    port = get_services().tabby.config['port']
    endpoint = f'http://localhost:{port}'
    return jsonify({
        'endpoint': endpoint,
        'vscode': {
            'extension': 'TabbyML.vscode-tabby',
            'settings': {'tabby.api.endpoint': endpoint},
        },
        'jetbrains': {
            'plugin': 'Tabby',
            'settings': {'Server endpoint': endpoint},
        },
        'vim': {
            'plugin': 'TabbyML/vim-tabby',
            'config': f'let g:tabby_server_url = "{endpoint}"',
        },
        'agentConfig': {
            'path': '~/.tabby-client/agent/config.toml',
            'content': f'[server]\nendpoint = "{endpoint}"\n',
        },
    })
