"""Provisioning state machine: image, disk, bundle, launch.

Everything that can be validated is validated before the first side effect,
so a malformed request leaves nothing behind. Once side effects start, a
failure stops the pipeline at that stage and leaves created artifacts in
place; every stage reuses what an earlier run produced, so re-running
converges instead of duplicating work.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from . import firewall, launcher, seed, service
from .config import ScratchVMConfig
from .errors import LaunchError, ScratchVMError, ValidationError
from .host import HostEnvironment
from .image import BaseImage, ImageStore, InstanceDisk
from .results import ProvisionResult, Stage
from .util import parse_size

log = logger

RULES_PATH = '/etc/scratchvm/bridge.rules'
DOCKER_PACKAGE = 'docker.io'


class _PlanFailure(Exception):
    def __init__(self, stage: Stage, error: ValidationError) -> None:
        super().__init__(str(error))
        self.stage = stage
        self.error = error


@dataclass(frozen=True)
class ProvisionPlan:
    """Everything derived from config before touching the host."""

    name: str
    bundle: seed.ConfigBundle
    unit: service.ServiceUnit | None
    policy: firewall.FirewallPolicy | None
    forwards: dict[int, int]
    resources: launcher.Resources
    display: launcher.DisplaySpec
    disk_path: Path
    seed_dir: Path


def read_ssh_keys(path: str) -> tuple[str, ...]:
    if not path:
        return ()
    p = Path(path)
    if not p.is_file():
        raise ValidationError(f'SSH public key not found: {p}')
    keys = [
        line.strip()
        for line in p.read_text(encoding='utf-8').splitlines()
        if line.strip() and not line.lstrip().startswith('#')
    ]
    return tuple(keys)


class Orchestrator:
    def __init__(
        self,
        cfg: ScratchVMConfig,
        host: HostEnvironment | None = None,
        *,
        store: ImageStore | None = None,
        settle_s: float = 0.5,
    ) -> None:
        self.cfg = cfg.expanded_paths()
        self.host = host or HostEnvironment.from_config(self.cfg)
        self.store = store or ImageStore(
            self.host, min_bytes=self.cfg.image.min_bytes
        )
        self.settle_s = settle_s

    @property
    def name(self) -> str:
        return self.cfg.vm.name

    def disk_path(self) -> Path:
        return self.host.instance_dir(self.name) / f'{self.name}.qcow2'

    def seed_dir(self) -> Path:
        return self.host.instance_dir(self.name) / 'seed'

    def build_policy(self) -> firewall.FirewallPolicy | None:
        if not self.cfg.firewall.enabled:
            return None
        return firewall.policy_from_config(self.cfg.firewall)

    def build_unit(self) -> service.ServiceUnit | None:
        if not self.cfg.service.enabled:
            return None
        return service.unit_from_config(self.cfg.service)

    def build_bundle(
        self,
        policy: firewall.FirewallPolicy | None,
        unit: service.ServiceUnit | None,
    ) -> seed.ConfigBundle:
        vm = self.cfg.vm
        net = self.cfg.network
        identity = seed.Identity(
            hostname=vm.name,
            user=vm.user,
            ssh_authorized_keys=read_ssh_keys(vm.ssh_pubkey_path),
        )
        packages = list(vm.packages)
        commands: list[str] = []
        files: list[seed.WriteFile] = []
        if policy is not None:
            packages.append('iptables')
            files.append(
                seed.WriteFile(
                    RULES_PATH, firewall.render_restore(policy), '0600'
                )
            )
            commands += firewall.restore_commands(policy, RULES_PATH)
        if vm.install_docker:
            packages.append(DOCKER_PACKAGE)
            commands.append('systemctl enable --now docker')
        if unit is not None:
            files.append(seed.WriteFile(unit.path, service.render_unit(unit)))
            commands.append(f'mkdir -p {unit.working_directory}')
            commands += service.activation_commands(unit)
        commands += list(vm.run_commands)
        return seed.build_bundle(
            identity,
            packages,
            seed.NetworkSpec(
                interface=net.interface,
                dhcp=net.dhcp,
                address=net.address,
                gateway=net.gateway,
                nameservers=tuple(net.nameservers),
            ),
            commands,
            instance_id=seed.instance_id_for(vm.name),
            files=files,
        )

    def plan(self) -> ProvisionPlan:
        """Validate the whole request. Raises ValidationError; no side effects."""
        try:
            return self._plan()
        except _PlanFailure as ex:
            raise ex.error

    def _plan(self) -> ProvisionPlan:
        vm = self.cfg.vm
        stage = Stage.DISK_READY
        try:
            try:
                parse_size(vm.disk_size)
            except ValueError as ex:
                raise ValidationError(str(ex)) from ex
            stage = Stage.BUNDLE_READY
            policy = self.build_policy()
            unit = self.build_unit()
            bundle = self.build_bundle(policy, unit)
            stage = Stage.LAUNCHED
            forwards = self.cfg.port_forwards()
            if vm.cpus < 1 or vm.ram_mb < 128:
                raise ValidationError(
                    f'Invalid resources: cpus={vm.cpus} ram_mb={vm.ram_mb}'
                )
        except ValidationError as ex:
            raise _PlanFailure(stage, ex) from ex
        return ProvisionPlan(
            name=self.name,
            bundle=bundle,
            unit=unit,
            policy=policy,
            forwards=forwards,
            resources=launcher.Resources(cpus=vm.cpus, ram_mb=vm.ram_mb),
            display=launcher.DisplaySpec(
                enabled=self.cfg.display.enabled,
                vnc_display=self.cfg.display.vnc_display,
            ),
            disk_path=self.disk_path(),
            seed_dir=self.seed_dir(),
        )

    def provision(self) -> ProvisionResult:
        result = ProvisionResult(self.name)
        result.advance(Stage.INIT)
        log.info('Provisioning {}', self.name)
        try:
            plan = self._plan()
        except _PlanFailure as ex:
            result.fail(ex.stage, ex.error)
            log.error(result.failure.describe())
            return result

        stage = Stage.IMAGE_READY
        try:
            base = self.store.acquire(
                self.cfg.image.url,
                sha256=self.cfg.image.sha256,
                cache_name=self.cfg.image.cache_name,
            )
            result.advance(Stage.IMAGE_READY)
            log.info('Stage {}: {}', Stage.IMAGE_READY, base.path)

            stage = Stage.DISK_READY
            disk = self.store.derive_instance_disk(
                base, self.cfg.vm.disk_size, plan.disk_path
            )
            result.disk_path = disk.path
            result.advance(Stage.DISK_READY)
            log.info('Stage {}: {}', Stage.DISK_READY, disk.path)

            stage = Stage.BUNDLE_READY
            artifact = seed.serialize(
                plan.bundle, plan.seed_dir, use_sudo=self.host.use_sudo
            )
            result.seed_path = artifact.path
            result.advance(Stage.BUNDLE_READY)
            log.info('Stage {}: {}', Stage.BUNDLE_READY, artifact.path)

            stage = Stage.LAUNCHED
            inst = launcher.load_instance(self.host, self.name)
            if inst is not None:
                log.info(
                    'VM {} already running (pid={}); not relaunching',
                    self.name,
                    inst.pid,
                )
            else:
                inst = launcher.launch(
                    disk,
                    artifact,
                    plan.forwards,
                    plan.resources,
                    plan.display,
                    self.host,
                    self.name,
                    settle_s=self.settle_s,
                )
            result.advance(Stage.LAUNCHED)

            stage = Stage.RUNNING
            state = inst.state()
            if state not in ('starting', 'running'):
                raise LaunchError(
                    f'VM {self.name} is {state} right after launch'
                )
            result.forwarded_ports = inst.forwarded_ports()
            result.display = inst.display
            result.advance(Stage.RUNNING)
            log.info('Stage {}: pid={}', Stage.RUNNING, inst.pid)
        except (ScratchVMError, OSError) as ex:
            result.fail(stage, ex)
            log.error(result.failure.describe())
        return result

    def destroy(self) -> None:
        """Stop the VM and delete its disk and seed; the base image stays."""
        inst = launcher.load_instance(self.host, self.name)
        if inst is not None:
            inst.stop()
        disk_path = self.disk_path()
        if disk_path.exists():
            base_path = self.store.cache_path(
                self.cfg.image.url, self.cfg.image.cache_name
            )
            self.store.destroy_instance_disk(
                InstanceDisk(
                    disk_path,
                    BaseImage(self.cfg.image.url, base_path),
                    self.cfg.vm.disk_size,
                )
            )
        seed_dir = self.seed_dir()
        for name in (*seed.DOCUMENT_NAMES, 'seed.img', 'seed.img.sha256'):
            (seed_dir / name).unlink(missing_ok=True)
        for d in (seed_dir, self.host.instance_dir(self.name)):
            if d.is_dir() and not any(d.iterdir()):
                d.rmdir()
        log.info('Destroyed instance {}', self.name)
