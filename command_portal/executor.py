#!/usr/bin/env python3
"""
Command executor
================
The single path by which routes run OS commands. Arguments arrive as an
argv list that has already passed the validators; nothing is interpolated
into a shell string and nothing is sanitized here.

Routes never import subprocess themselves. They call the executor held by
the app's PortalServices, so tests can drop in a fake that returns fixture
stdout without spawning processes.
"""

import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from command_portal import debug_logger as log
from command_portal.errors import (
    BufferExceededError, CommandFailedError, CommandNotFoundError, CommandTimeoutError,
)
from command_portal.platform_compat import privileged_argv

DEFAULT_TIMEOUT = 30
DEFAULT_MAX_BUFFER = 1024 * 1024
READ_CHUNK = 64 * 1024
READER_GRACE = 5  # seconds to wait for pipes to drain once the child is gone


@dataclass
class CommandResult:
    stdout: str
    stderr: str = ''
    returncode: int = 0

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class _BoundedCapture:
    """
    Drains a child's stdout/stderr on reader threads and kills the child the
    moment either stream passes `max_buffer` bytes.
    """

    def __init__(self, proc: subprocess.Popen, max_buffer: int):
        self.proc = proc
        self.max_buffer = max_buffer
        self.overflowed = False
        self._chunks = {'stdout': [], 'stderr': []}
        self._threads = []

    def start(self, stdin_data: Optional[bytes]):
        for name in ('stdout', 'stderr'):
            stream = getattr(self.proc, name)
            thread = threading.Thread(target=self._drain, args=(stream, name), daemon=True)
            thread.start()
            self._threads.append(thread)
        if stdin_data is not None:
            thread = threading.Thread(target=self._feed, args=(stdin_data,), daemon=True)
            thread.start()
            self._threads.append(thread)

    def _feed(self, data: bytes):
        try:
            self.proc.stdin.write(data)
        except (BrokenPipeError, ValueError):
            pass  # child exited or was killed before reading stdin
        finally:
            try:
                self.proc.stdin.close()
            except BrokenPipeError:
                pass

    def _drain(self, stream, name: str):
        total = 0
        chunks = self._chunks[name]
        try:
            while True:
                chunk = stream.read1(READ_CHUNK)
                if not chunk:
                    break
                total += len(chunk)
                if total > self.max_buffer:
                    self.overflowed = True
                    self.proc.kill()
                    break
                chunks.append(chunk)
        finally:
            stream.close()

    def join(self, timeout: float):
        for thread in self._threads:
            thread.join(timeout)

    def output(self):
        return b''.join(self._chunks['stdout']), b''.join(self._chunks['stderr'])


class CommandExecutor:
    """Runs one external command per call with a timeout and an output cap"""

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT,
                 default_max_buffer: int = DEFAULT_MAX_BUFFER):
        self.default_timeout = default_timeout
        self.default_max_buffer = default_max_buffer

    @classmethod
    def from_config(cls, config) -> 'CommandExecutor':
        return cls(
            default_timeout=config.get('executor', 'default_timeout', DEFAULT_TIMEOUT),
            default_max_buffer=config.get('executor', 'default_max_buffer', DEFAULT_MAX_BUFFER),
        )

    def run(self, command: str, args: Sequence[str] = (), timeout: Optional[float] = None,
            max_buffer: Optional[int] = None, input: Optional[str] = None,
            check: bool = True, privileged: bool = False,
            cwd: Optional[str] = None) -> CommandResult:
        """
        Run `command args...` and return its captured output.

        Raises:
            CommandTimeoutError: the child ran past `timeout` and was killed
            BufferExceededError: stdout or stderr passed `max_buffer` bytes;
                the child is killed as soon as the cap is crossed
            CommandNotFoundError: the binary is not installed
            CommandFailedError: non-zero exit while `check` is True
        """
        timeout = self.default_timeout if timeout is None else timeout
        max_buffer = self.default_max_buffer if max_buffer is None else max_buffer
        argv = [command] + [str(a) for a in args]
        if privileged:
            argv = privileged_argv(argv)

        start = time.perf_counter()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
            )
        except FileNotFoundError:
            log.warn('EXEC', f'{argv[0]} not found')
            raise CommandNotFoundError(argv)

        capture = _BoundedCapture(proc, max_buffer)
        capture.start(input.encode('utf-8') if input is not None else None)
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            capture.join(READER_GRACE)
            if not capture.overflowed:
                log.warn('EXEC', f'{command} timed out after {timeout}s', {'args': argv[1:6]})
                raise CommandTimeoutError(argv, timeout)
        capture.join(READER_GRACE)

        duration = (time.perf_counter() - start) * 1000
        if capture.overflowed:
            log.warn('EXEC', f'{command} output passed {max_buffer} bytes, killed', {
                'args': argv[1:6],
                'duration_ms': round(duration, 1),
            })
            raise BufferExceededError(argv, max_buffer)

        stdout, stderr = capture.output()
        log.debug('EXEC', f'{command} exited {proc.returncode} [{duration:.1f}ms]', {
            'args': argv[1:6],
            'stdout_bytes': len(stdout),
        })

        result = CommandResult(
            stdout=stdout.decode('utf-8', errors='replace'),
            stderr=stderr.decode('utf-8', errors='replace'),
            returncode=proc.returncode,
        )
        if check and proc.returncode != 0:
            raise CommandFailedError(argv, proc.returncode, result.stdout, result.stderr)
        return result

    def run_text(self, command: str, args: Sequence[str] = (), **kwargs) -> str:
        """stdout of the command, or '' when it fails (soft-empty callers)"""
        kwargs.setdefault('check', False)
        try:
            return self.run(command, args, **kwargs).stdout
        except CommandNotFoundError:
            return ''
