from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from scratchvm.config import ScratchVMConfig
from scratchvm.errors import ValidationError
from scratchvm.host import HostEnvironment
from scratchvm.launcher import STATE_FILE
from scratchvm.orchestrator import RULES_PATH, Orchestrator, read_ssh_keys
from scratchvm.results import Stage
from scratchvm.util import CmdError, CmdResult

URL = 'https://example.invalid/images/debian-12-generic-amd64.qcow2'
KEY = 'ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIGx6 dev@laptop'
GiB = 1024**3


class FakeHostTools:
    """Stands in for curl, qemu-img and cloud-localds."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.info: dict[str, dict] = {}
        self.fail_create = False
        self.locked: set[str] = set()

    def __call__(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        if cmd[0] == 'curl':
            Path(cmd[cmd.index('-o') + 1]).write_bytes(b'QFI\xfb' + b'\0' * 60)
            return CmdResult(0, '', '')
        if cmd[:2] == ['qemu-img', 'info']:
            if cmd[-1] in self.locked and '-U' not in cmd:
                raise CmdError(
                    cmd, CmdResult(1, '', 'Failed to get shared "write" lock')
                )
            info = self.info.get(
                cmd[-1], {'format': 'qcow2', 'virtual-size': 2 * GiB}
            )
            return CmdResult(0, json.dumps(info), '')
        if cmd[:2] == ['qemu-img', 'create']:
            if self.fail_create:
                raise CmdError(cmd, CmdResult(1, '', 'No space left on device'))
            Path(cmd[-2]).write_bytes(b'QFI\xfb overlay')
            backing = cmd[cmd.index('-b') + 1]
            self.info[cmd[-2]] = {
                'format': 'qcow2',
                'virtual-size': 20 * GiB,
                'full-backing-filename': backing,
            }
            return CmdResult(0, '', '')
        if cmd[0] == 'cloud-localds':
            Path(cmd[3]).write_bytes(b'SEED')
            return CmdResult(0, '', '')
        raise AssertionError(f'unexpected command {cmd}')

    def count(self, *prefix: str) -> int:
        return sum(1 for c in self.calls if c[: len(prefix)] == list(prefix))


class FakeProc:
    def __init__(self, cmd, pid):
        self.args = cmd
        self.pid = pid
        self.returncode = None

    def poll(self):
        return self.returncode


@pytest.fixture
def tools(monkeypatch):
    fake = FakeHostTools()
    monkeypatch.setattr('scratchvm.image.run_cmd', fake)
    monkeypatch.setattr('scratchvm.seed.run_cmd', fake)
    return fake


@pytest.fixture
def procs(monkeypatch):
    started = []

    def fake_popen(cmd, **kwargs):
        # Our own pid, so a later run finds it alive and re-attaches.
        proc = FakeProc(cmd, os.getpid())
        started.append(proc)
        return proc

    monkeypatch.setattr('scratchvm.launcher.subprocess.Popen', fake_popen)
    monkeypatch.setattr(
        'scratchvm.launcher.port_in_use', lambda port, host='': False
    )
    return started


def _cfg(tmp_path: Path, *, with_key: bool = True) -> ScratchVMConfig:
    cfg = ScratchVMConfig()
    cfg.vm.name = 'box'
    cfg.vm.disk_size = '20G'
    cfg.vm.ram_mb = 2048
    cfg.vm.cpus = 2
    cfg.network.forwards = ['2222:22']
    cfg.image.url = URL
    cfg.paths.cache_dir = str(tmp_path / 'cache')
    cfg.paths.base_dir = str(tmp_path / 'base')
    cfg.paths.state_dir = str(tmp_path / 'state')
    if with_key:
        key = tmp_path / 'id_ed25519.pub'
        key.write_text(KEY + '\n', encoding='utf-8')
        cfg.vm.ssh_pubkey_path = str(key)
    return cfg


def test_provision_reaches_running(tools, procs, tmp_path) -> None:
    orch = Orchestrator(_cfg(tmp_path), settle_s=0)
    result = orch.provision()
    assert result.ok, result.failure
    assert result.history == [
        Stage.INIT,
        Stage.IMAGE_READY,
        Stage.DISK_READY,
        Stage.BUNDLE_READY,
        Stage.LAUNCHED,
        Stage.RUNNING,
    ]
    assert result.forwarded_ports == {22: 'localhost:2222'}
    assert result.disk_path == tmp_path / 'base' / 'box' / 'box.qcow2'
    assert result.seed_path.exists()
    cmd = procs[0].args
    assert cmd[cmd.index('-m') + 1] == '2048'
    assert cmd[cmd.index('-smp') + 1] == '2'
    create = [c for c in tools.calls if c[:2] == ['qemu-img', 'create']][0]
    assert create[-1] == '20G'


def test_missing_key_fails_before_side_effects(tools, procs, tmp_path) -> None:
    orch = Orchestrator(_cfg(tmp_path, with_key=False), settle_s=0)
    result = orch.provision()
    assert not result.ok
    assert result.state == Stage.FAILED
    assert result.failure.stage == Stage.BUNDLE_READY
    assert result.failure.error_type == 'ValidationError'
    assert result.failure.describe().startswith(
        'FAILED stage=BundleReady error=ValidationError'
    )
    assert tools.calls == []
    assert procs == []
    assert not (tmp_path / 'base').exists()
    assert not (tmp_path / 'cache').exists()


def test_bad_forward_fails_at_launch_stage(tools, procs, tmp_path) -> None:
    cfg = _cfg(tmp_path)
    cfg.network.forwards = ['2222:22', '2222:80']
    result = Orchestrator(cfg, settle_s=0).provision()
    assert result.failure.stage == Stage.LAUNCHED
    assert tools.calls == []


def test_bad_disk_size_fails_at_disk_stage(tools, procs, tmp_path) -> None:
    cfg = _cfg(tmp_path)
    cfg.vm.disk_size = 'lots'
    orch = Orchestrator(cfg, settle_s=0)
    with pytest.raises(ValidationError):
        orch.plan()
    result = orch.provision()
    assert result.failure.stage == Stage.DISK_READY
    assert tools.calls == []


def test_rerun_is_idempotent(tools, procs, tmp_path) -> None:
    cfg = _cfg(tmp_path)
    host = HostEnvironment.from_config(cfg)
    first = Orchestrator(cfg, host, settle_s=0).provision()
    seed_bytes = first.seed_path.read_bytes()
    second = Orchestrator(cfg, host, settle_s=0).provision()
    assert first.ok and second.ok
    assert tools.count('curl') == 1
    assert tools.count('qemu-img', 'create') == 1
    assert tools.count('cloud-localds') == 1
    assert len(procs) == 1
    assert second.seed_path.read_bytes() == seed_bytes
    assert second.forwarded_ports == first.forwarded_ports


def test_rerun_against_running_vm_reattaches(tools, procs, tmp_path) -> None:
    cfg = _cfg(tmp_path)
    host = HostEnvironment.from_config(cfg)
    orch = Orchestrator(cfg, host, settle_s=0)
    assert orch.provision().ok
    # qemu now holds the overlay open read-write
    tools.locked.add(str(orch.disk_path()))
    again = Orchestrator(cfg, host, settle_s=0).provision()
    assert again.ok, again.failure
    assert again.history[-1] == Stage.RUNNING
    assert len(procs) == 1
    base = orch.store.cache_path(URL)
    assert host.image_refcount(base) == 1


def test_disk_failure_keeps_base_image(tools, procs, tmp_path) -> None:
    tools.fail_create = True
    orch = Orchestrator(_cfg(tmp_path), settle_s=0)
    result = orch.provision()
    assert result.failure.stage == Stage.DISK_READY
    assert result.failure.error_type == 'DiskError'
    assert result.history[-2:] == [Stage.IMAGE_READY, Stage.FAILED]
    assert orch.store.cache_path(URL).exists()
    assert not orch.disk_path().exists()
    assert procs == []


def test_bundle_contents(tmp_path) -> None:
    plan = Orchestrator(_cfg(tmp_path)).plan()
    bundle = plan.bundle
    assert bundle.instance_id == 'iid-box'
    assert bundle.identity.ssh_authorized_keys == (KEY,)
    assert 'iptables' in bundle.packages
    assert 'docker.io' in bundle.packages
    assert [f.path for f in bundle.files] == [
        RULES_PATH,
        '/etc/systemd/system/workload.service',
    ]
    cmds = list(bundle.run_commands)
    restore = cmds.index(f'iptables-restore -w 5 --noflush {RULES_PATH}')
    docker = cmds.index('systemctl enable --now docker')
    workload = cmds.index('systemctl enable --now workload.service')
    assert restore < docker < workload
    assert cmds.index('mkdir -p /srv/workload') < workload


def test_bundle_without_firewall_or_service(tmp_path) -> None:
    cfg = _cfg(tmp_path)
    cfg.firewall.enabled = False
    cfg.service.enabled = False
    cfg.vm.install_docker = False
    cfg.vm.run_commands = ['echo done']
    plan = Orchestrator(cfg).plan()
    assert plan.policy is None
    assert plan.unit is None
    assert plan.bundle.files == ()
    assert plan.bundle.run_commands == ('echo done',)
    assert 'iptables' not in plan.bundle.packages


def test_destroy_keeps_base_image(monkeypatch, tools, procs, tmp_path) -> None:
    cfg = _cfg(tmp_path)
    orch = Orchestrator(cfg, settle_s=0)
    assert orch.provision().ok
    alive = {os.getpid()}
    sent = []

    def fake_kill(pid, sig):
        sent.append(sig)
        alive.discard(pid)

    monkeypatch.setattr('scratchvm.launcher._pid_alive', lambda pid: pid in alive)
    monkeypatch.setattr('scratchvm.launcher.os.kill', fake_kill)
    orch.destroy()
    assert len(sent) == 1
    assert not orch.disk_path().exists()
    assert not orch.seed_dir().exists()
    assert not (tmp_path / 'base' / 'box').exists()
    assert not (tmp_path / 'state' / 'box' / STATE_FILE).exists()
    assert orch.store.cache_path(URL).exists()


def test_read_ssh_keys(tmp_path) -> None:
    assert read_ssh_keys('') == ()
    path = tmp_path / 'keys.pub'
    path.write_text(f'# comment\n{KEY}\n\n', encoding='utf-8')
    assert read_ssh_keys(str(path)) == (KEY,)
    with pytest.raises(ValidationError, match='not found'):
        read_ssh_keys(str(tmp_path / 'missing.pub'))


def test_result_as_dict(tools, procs, tmp_path) -> None:
    cfg = _cfg(tmp_path, with_key=False)
    data = Orchestrator(cfg, settle_s=0).provision().as_dict()
    assert data['state'] == 'Failed'
    assert data['history'] == ['Init', 'Failed']
    assert data['failure']['stage'] == 'BundleReady'
    assert data['failure']['error_type'] == 'ValidationError'
    assert data['disk_path'] is None
