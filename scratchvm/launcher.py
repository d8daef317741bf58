"""Launch the VM process and track it through a small state file.

The launcher runs ``qemu-system-x86_64`` directly with user-mode networking,
so port forwards are plain ``hostfwd`` entries and no host bridge is needed.
A JSON state file next to the instance lets later invocations re-attach to a
running process instead of launching a second one.
"""

from __future__ import annotations

import errno
import json
import os
import signal
import socket
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from .errors import LaunchError
from .host import HostEnvironment, kvm_available
from .image import InstanceDisk
from .seed import SeedArtifact, instance_id_for
from .util import ensure_dir, shell_join

log = logger

QEMU_BIN = 'qemu-system-x86_64'
VNC_BASE_PORT = 5900
STATE_FILE = 'instance.json'
CONSOLE_LOG = 'console.log'


@dataclass(frozen=True)
class Resources:
    cpus: int = 2
    ram_mb: int = 2048


@dataclass(frozen=True)
class DisplaySpec:
    enabled: bool = True
    vnc_display: int = 0

    @property
    def port(self) -> int:
        return VNC_BASE_PORT + self.vnc_display

    @property
    def endpoint(self) -> str:
        return f'localhost:{self.port}'


def port_in_use(port: int, host: str = '') -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as ex:
            if ex.errno in (errno.EADDRINUSE, errno.EACCES):
                return True
            raise
    return False


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class VMInstance:
    """Handle to one launched VM process."""

    def __init__(
        self,
        name: str,
        *,
        disk_path: Path,
        seed_path: Path,
        forwards: dict[int, int],
        resources: Resources,
        display: str = '',
        pid: int | None = None,
        state_dir: Path | None = None,
        proc: subprocess.Popen | None = None,
        settle_s: float = 0.0,
    ) -> None:
        self.name = name
        self.disk_path = Path(disk_path)
        self.seed_path = Path(seed_path)
        self.forwards = dict(forwards)
        self.resources = resources
        self.display = display
        self.pid = pid if pid is not None else (proc.pid if proc else None)
        self.state_dir = state_dir
        self._proc = proc
        self._settle_s = settle_s
        self._started_at = time.monotonic()
        self._stopped = False

    def state(self) -> str:
        if self.pid is None:
            return 'starting'
        if self._proc is not None:
            code = self._proc.poll()
            if code is not None:
                return 'stopped' if self._stopped or code == 0 else 'failed'
        elif not _pid_alive(self.pid):
            return 'stopped'
        if time.monotonic() - self._started_at < self._settle_s:
            return 'starting'
        return 'running'

    def forwarded_ports(self) -> dict[int, str]:
        return {
            guest: f'localhost:{host}' for host, guest in self.forwards.items()
        }

    def stop(self, timeout: float = 10.0) -> None:
        if self.pid is None or self.state() in ('stopped', 'failed'):
            self._remove_state()
            return
        log.info('Stopping VM {} (pid={})', self.name, self.pid)
        self._stopped = True
        try:
            os.kill(self.pid, signal.SIGTERM)
        except ProcessLookupError:
            self._remove_state()
            return
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self._proc is not None:
                if self._proc.poll() is not None:
                    break
            elif not _pid_alive(self.pid):
                break
            time.sleep(0.2)
        else:
            log.warning('VM {} ignored SIGTERM; killing', self.name)
            try:
                os.kill(self.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        self._remove_state()

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'pid': self.pid,
            'disk_path': str(self.disk_path),
            'seed_path': str(self.seed_path),
            'forwards': [[h, g] for h, g in self.forwards.items()],
            'cpus': self.resources.cpus,
            'ram_mb': self.resources.ram_mb,
            'display': self.display,
        }

    def save_state(self) -> Path | None:
        if self.state_dir is None:
            return None
        ensure_dir(self.state_dir)
        path = self.state_dir / STATE_FILE
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding='utf-8')
        return path

    def _remove_state(self) -> None:
        if self.state_dir is not None:
            (self.state_dir / STATE_FILE).unlink(missing_ok=True)


def build_command(
    name: str,
    disk_path: Path,
    seed_path: Path,
    forwards: dict[int, int],
    resources: Resources,
    display: DisplaySpec | None,
    *,
    kvm: bool | None = None,
) -> list[str]:
    kvm = kvm_available() if kvm is None else kvm
    netdev = 'user,id=net0' + ''.join(
        f',hostfwd=tcp::{host}-:{guest}' for host, guest in forwards.items()
    )
    cmd = [QEMU_BIN, '-name', name]
    if kvm:
        cmd += ['-enable-kvm', '-cpu', 'host']
    cmd += [
        '-smp',
        str(resources.cpus),
        '-m',
        str(resources.ram_mb),
        '-drive',
        f'file={disk_path},if=virtio,format=qcow2',
        '-drive',
        f'file={seed_path},if=virtio,format=raw,readonly=on',
        '-netdev',
        netdev,
        '-device',
        'virtio-net-pci,netdev=net0',
    ]
    if display is not None and display.enabled:
        cmd += ['-vnc', f'localhost:{display.vnc_display}']
    else:
        cmd += ['-display', 'none']
    return cmd


def launch(
    disk: InstanceDisk,
    seed: SeedArtifact,
    forwards: dict[int, int],
    resources: Resources,
    display: DisplaySpec | None,
    host: HostEnvironment,
    name: str,
    *,
    settle_s: float = 0.5,
) -> VMInstance:
    """Start the VM process. Does not wait for the guest OS to boot."""
    if not disk.path.exists():
        raise LaunchError(f'Instance disk does not exist: {disk.path}')
    if not seed.path.exists():
        raise LaunchError(f'Seed image does not exist: {seed.path}')
    if seed.instance_id != instance_id_for(name):
        raise LaunchError(
            f'Seed {seed.path} belongs to {seed.instance_id}, not {name}'
        )
    if resources.cpus < 1 or resources.ram_mb < 128:
        raise LaunchError(
            f'Invalid resources: cpus={resources.cpus} ram_mb={resources.ram_mb}'
        )
    busy = [p for p in forwards if port_in_use(p)]
    if busy:
        raise LaunchError(
            'Host ports already bound: ' + ', '.join(str(p) for p in busy)
        )
    if display is not None and display.enabled and port_in_use(
        display.port, '127.0.0.1'
    ):
        log.warning(
            'VNC port {} is busy; launching without a display', display.port
        )
        display = None

    cmd = build_command(name, disk.path, seed.path, forwards, resources, display)
    state_dir = host.instance_state_dir(name)
    ensure_dir(state_dir)
    console = state_dir / CONSOLE_LOG
    log.info('Launching VM {}', name)
    log.debug('RUN: {}', shell_join(cmd))
    with open(console, 'ab') as logf:
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=logf,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as ex:
            raise LaunchError(f'Cannot start {QEMU_BIN}: {ex}') from ex
    if settle_s:
        time.sleep(settle_s)
    code = proc.poll()
    if code is not None:
        tail = console.read_text(encoding='utf-8', errors='replace')[-2000:]
        raise LaunchError(
            f'{QEMU_BIN} exited prematurely (code {code}): {tail.strip()}'
        )
    endpoint = ''
    if display is not None and display.enabled:
        endpoint = display.endpoint
    inst = VMInstance(
        name,
        disk_path=disk.path,
        seed_path=seed.path,
        forwards=forwards,
        resources=resources,
        display=endpoint,
        state_dir=state_dir,
        proc=proc,
    )
    inst.save_state()
    log.info('VM {} started (pid={})', name, inst.pid)
    return inst


def load_instance(host: HostEnvironment, name: str) -> VMInstance | None:
    """Re-attach to a VM launched by an earlier invocation, if still alive."""
    state_dir = host.instance_state_dir(name)
    path = state_dir / STATE_FILE
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
        pid = int(data['pid'])
    except (ValueError, KeyError, TypeError) as ex:
        log.warning('Ignoring unreadable state file {}: {}', path, ex)
        path.unlink(missing_ok=True)
        return None
    if not _pid_alive(pid):
        log.info('Removing stale state for {} (pid {} is gone)', name, pid)
        path.unlink(missing_ok=True)
        return None
    return VMInstance(
        name,
        disk_path=Path(data['disk_path']),
        seed_path=Path(data['seed_path']),
        forwards={int(h): int(g) for h, g in data.get('forwards', [])},
        resources=Resources(
            cpus=int(data.get('cpus', 2)), ram_mb=int(data.get('ram_mb', 2048))
        ),
        display=str(data.get('display', '')),
        pid=pid,
        state_dir=state_dir,
    )
