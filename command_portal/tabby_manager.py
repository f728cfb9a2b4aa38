#!/usr/bin/env python3
"""
Tabby Manager
=============
Docker lifecycle for the Tabby code-completion server: pull the image,
start/stop/restart the container, watch its health endpoint and relay
status changes over Socket.IO (tabby:status, tabby:health, tabby:error,
tabby:pull-progress).
"""

import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import docker

from command_portal import debug_logger as log
from command_portal.errors import CommandError, ConflictError, UpstreamError, ValidationError
from command_portal.upstream import UpstreamClient

HEALTH_ENDPOINT = '/health'
COMPLETIONS_ENDPOINT = '/v1/completions'
CONTAINER_PORT = '8080/tcp'

TABBY_MODELS = {
    'StarCoder-1B': {'id': 'TabbyML/StarCoder-1B', 'size': '1B', 'type': 'completion',
                     'memory': '4GB', 'description': 'Fast and lightweight'},
    'StarCoder-3B': {'id': 'TabbyML/StarCoder-3B', 'size': '3B', 'type': 'completion',
                     'memory': '8GB', 'description': 'Balanced performance'},
    'StarCoder-7B': {'id': 'TabbyML/StarCoder-7B', 'size': '7B', 'type': 'completion',
                     'memory': '16GB', 'description': 'Best quality, needs GPU'},
    'CodeLlama-7B': {'id': 'TabbyML/CodeLlama-7B', 'size': '7B', 'type': 'completion',
                     'memory': '16GB', 'description': 'Meta CodeLlama'},
    'DeepseekCoder-1.3B': {'id': 'TabbyML/DeepseekCoder-1.3B', 'size': '1.3B', 'type': 'completion',
                           'memory': '4GB', 'description': 'Efficient coding model'},
    'DeepseekCoder-6.7B': {'id': 'TabbyML/DeepseekCoder-6.7B', 'size': '6.7B', 'type': 'completion',
                           'memory': '16GB', 'description': 'High-quality Deepseek'},
}


def validate_model(model) -> str:
    if model not in TABBY_MODELS:
        raise ValidationError(f'Unknown model: {model}', reason='invalid_model', value=model)
    return model


class TabbyManager:

    def __init__(self, settings: Dict[str, Any], docker_client=None,
                 http: Optional[UpstreamClient] = None, executor=None,
                 emit: Optional[Callable[[str, Any], None]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.image = settings.get('image', 'tabbyml/tabby:latest')
        self.gpu_image = settings.get('gpu_image', 'tabbyml/tabby:gpu')
        self.container_name = settings.get('container_name', 'command-portal-tabby')
        self.ready_timeout = settings.get('ready_timeout', 120)
        self.health_interval = settings.get('health_interval', 30)

        self._docker = docker_client
        self.http = http or UpstreamClient(timeout=5)
        self.executor = executor
        self._emit = emit
        self._sleep = sleep
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._health_stop = threading.Event()
        self._health_thread = None

        self.status = 'stopped'
        self.config = {
            'model': settings.get('default_model', 'StarCoder-1B'),
            'useGpu': False,
            'port': int(settings.get('port', 8080)),
            'dataDir': str(Path(settings.get('data_dir', '~/.tabby')).expanduser()),
        }
        self.stats = {'requests': 0, 'completions': 0, 'errors': 0,
                      'avgLatency': 0, 'lastRequest': None}

    # =========================================================================
    # DOCKER PLUMBING
    # =========================================================================

    @property
    def client(self):
        if self._docker is None:
            try:
                self._docker = docker.from_env()
            except docker.errors.DockerException as e:
                log.warn('TABBY', f'Docker unavailable: {e}')
                raise UpstreamError('Docker is not available', service='docker')
        return self._docker

    def emit(self, event: str, data: Any) -> None:
        if self._emit is not None:
            self._emit(f'tabby:{event}', data)

    def _set_status(self, status: str) -> None:
        self.status = status
        self.emit('status', status)
        log.info('TABBY', f'Status → {status}')

    def _get_container(self):
        try:
            return self.client.containers.get(self.container_name)
        except docker.errors.NotFound:
            return None

    def _base_url(self) -> str:
        return f"http://localhost:{self.config['port']}"

    def check_docker(self) -> Dict[str, Any]:
        try:
            self.client.ping()
            return {'available': True}
        except (UpstreamError, docker.errors.DockerException) as e:
            return {'available': False, 'error': str(e)}

    def check_image(self) -> Dict[str, Any]:
        try:
            images = self.client.images.list(name='tabbyml/tabby')
        except (UpstreamError, docker.errors.DockerException) as e:
            return {'exists': False, 'error': str(e)}
        return {
            'exists': bool(images),
            'images': [
                {'id': image.short_id.replace('sha256:', ''),
                 'tags': image.tags,
                 'size': f"{round(image.attrs.get('Size', 0) / 1024 / 1024)}MB"}
                for image in images
            ],
        }

    def check_gpu(self) -> Dict[str, Any]:
        try:
            runtimes = self.client.info().get('Runtimes') or {}
        except (UpstreamError, docker.errors.DockerException) as e:
            return {'available': False, 'error': str(e)}
        if self.executor is None:
            return {'available': False, 'reason': 'nvidia-smi not checked'}
        try:
            self.executor.run('nvidia-smi', ['-L'], timeout=5)
        except CommandError:
            return {'available': False, 'reason': 'nvidia-smi not found'}
        return {'available': True, 'runtime': 'nvidia' if 'nvidia' in runtimes else 'host'}

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @log.logged('TABBY')
    def pull_image(self, use_gpu: bool = False) -> Dict[str, Any]:
        image = self.gpu_image if use_gpu else self.image
        repository, _, tag = image.partition(':')
        try:
            for event in self.client.api.pull(repository, tag=tag or 'latest', stream=True, decode=True):
                self.emit('pull-progress', event)
        except docker.errors.APIError as e:
            self.emit('error', str(e))
            raise UpstreamError('Failed to pull Tabby image', service='docker')
        return {'success': True, 'image': image}

    @log.logged('TABBY')
    def start(self, model: Optional[str] = None, use_gpu: Optional[bool] = None,
              port: Optional[int] = None, data_dir: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            if self.status == 'running':
                raise ConflictError('Tabby is already running', reason='already_running')

            config = {
                'model': validate_model(model or self.config['model']),
                'useGpu': self.config['useGpu'] if use_gpu is None else bool(use_gpu),
                'port': int(port or self.config['port']),
                'dataDir': data_dir or self.config['dataDir'],
            }
            self.config = config

            existing = self._get_container()
            if existing is not None:
                if existing.status == 'running':
                    self._set_status('running')
                    self.start_health_check()
                    return {'success': True, 'message': 'Attached to existing container'}
                existing.remove()

            model_info = TABBY_MODELS[config['model']]
            device_requests = None
            if config['useGpu']:
                device_requests = [docker.types.DeviceRequest(count=-1, capabilities=[['gpu']])]

            self._set_status('starting')
            try:
                container = self.client.containers.run(
                    self.gpu_image if config['useGpu'] else self.image,
                    command=['serve', '--model', model_info['id'],
                             '--device', 'cuda' if config['useGpu'] else 'cpu'],
                    name=self.container_name,
                    detach=True,
                    ports={CONTAINER_PORT: config['port']},
                    volumes={config['dataDir']: {'bind': '/data', 'mode': 'rw'}},
                    restart_policy={'Name': 'unless-stopped'},
                    labels={'command-portal': 'true', 'tabby-model': config['model']},
                    device_requests=device_requests,
                )
                self.wait_for_ready()
            except (docker.errors.DockerException, UpstreamError) as e:
                self._set_status('error')
                self.emit('error', str(e))
                raise UpstreamError('Failed to start Tabby', service='docker')

            self._set_status('running')
            self.start_health_check()
            return {
                'success': True,
                'containerId': container.id[:12],
                'model': config['model'],
                'port': config['port'],
                'url': self._base_url(),
            }

    def wait_for_ready(self, timeout: Optional[float] = None) -> bool:
        deadline = time.monotonic() + (timeout or self.ready_timeout)
        url = self._base_url() + HEALTH_ENDPOINT
        while time.monotonic() < deadline:
            if self.http.check(url, timeout=5)['healthy']:
                return True
            self._sleep(2)
        raise UpstreamError('Tabby failed to start within timeout', service='tabby')

    @log.logged('TABBY')
    def stop(self) -> Dict[str, Any]:
        self.stop_health_check()
        container = self._get_container()
        if container is None:
            self.status = 'stopped'
            return {'success': True, 'message': 'No container running'}
        try:
            container.stop(timeout=10)
            container.remove()
        except docker.errors.APIError as e:
            self.emit('error', str(e))
            raise UpstreamError('Failed to stop Tabby', service='docker')
        self._set_status('stopped')
        return {'success': True}

    def restart(self) -> Dict[str, Any]:
        self.stop()
        self._sleep(1)
        return self.start(self.config['model'], self.config['useGpu'],
                          self.config['port'], self.config['dataDir'])

    def update_model(self, model: str) -> Dict[str, Any]:
        self.config['model'] = validate_model(model)
        if self.status == 'running':
            return self.restart()
        return {'success': True, 'model': model, 'message': 'Model updated, start Tabby to apply'}

    # =========================================================================
    # STATUS / LOGS / COMPLETION TEST
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return dict(self.stats)

    def get_models(self) -> Dict[str, Dict[str, str]]:
        return TABBY_MODELS

    def get_status(self) -> Dict[str, Any]:
        status = {'status': self.status, 'config': dict(self.config), 'container': None,
                  'health': None, 'stats': self.get_stats()}
        try:
            container = self._get_container()
        except UpstreamError:
            container = None
        if container is not None:
            container.reload()
            state = container.attrs.get('State', {})
            status['container'] = {
                'id': container.id[:12],
                'name': container.name,
                'state': state.get('Status'),
                'running': state.get('Running', False),
                'created': container.attrs.get('Created'),
                'started': state.get('StartedAt'),
            }
            if state.get('Running') and self.status == 'stopped':
                self.status = status['status'] = 'running'
        if self.status == 'running':
            healthy = self.http.check(self._base_url() + HEALTH_ENDPOINT, timeout=3)['healthy']
            status['health'] = 'healthy' if healthy else 'unhealthy'
        return status

    def get_logs(self, tail: int = 100):
        container = self._get_container()
        if container is None:
            return []
        raw = container.logs(tail=tail, timestamps=True).decode('utf-8', errors='ignore')
        return [line for line in raw.split('\n') if line]

    def test_completion(self, code: str = 'def hello_world():') -> Dict[str, Any]:
        if self.status != 'running':
            raise ConflictError('Tabby is not running', reason='not_running')
        start = time.perf_counter()
        try:
            data = self.http.post_json(self._base_url() + COMPLETIONS_ENDPOINT,
                                       {'language': 'python', 'segments': {'prefix': code}},
                                       service='Tabby', timeout=30)
        except UpstreamError:
            with self._stats_lock:
                self.stats['requests'] += 1
                self.stats['errors'] += 1
            raise
        latency = int((time.perf_counter() - start) * 1000)

        with self._stats_lock:
            self.stats['requests'] += 1
            self.stats['completions'] += 1
            self.stats['lastRequest'] = datetime.now().isoformat()
            self.stats['avgLatency'] = round(
                (self.stats['avgLatency'] * (self.stats['requests'] - 1) + latency) / self.stats['requests'])

        choices = data.get('choices') or [{}] if isinstance(data, dict) else [{}]
        return {'success': True, 'completion': choices[0].get('text', ''), 'latency': f'{latency}ms'}

    # =========================================================================
    # HEALTH MONITOR
    # =========================================================================

    def start_health_check(self) -> None:
        self.stop_health_check()
        self._health_stop = threading.Event()
        self._health_thread = threading.Thread(target=self._health_loop, args=(self._health_stop,),
                                               daemon=True, name='Tabby-Health')
        self._health_thread.start()

    def stop_health_check(self) -> None:
        self._health_stop.set()
        self._health_thread = None

    def _health_loop(self, stop_event: threading.Event) -> None:
        url = self._base_url() + HEALTH_ENDPOINT
        while not stop_event.wait(self.health_interval):
            result = self.http.check(url, timeout=5)
            if result['healthy']:
                self.emit('health', 'healthy')
            elif self.status == 'running':
                self.emit('health', 'degraded' if result['status'] else 'unhealthy')
