"""CLI commands for the VM lifecycle: provision, destroy, status, image."""

from __future__ import annotations

import sys

import scriptconfig as scfg

from ..config import ScratchVMConfig
from ..host import HostEnvironment
from ..image import ImageStore
from ..launcher import build_command, load_instance
from ..orchestrator import Orchestrator
from ..results import ProvisionResult
from ..seed import render_documents
from ..util import shell_join
from ._common import _BaseCommand, _load_cfg, log


class _VMCommand(_BaseCommand):
    vm = scfg.Value('', alias=['name'], help='VM name override.')


def _apply_overrides(cfg: ScratchVMConfig, args) -> ScratchVMConfig:
    if args.vm:
        cfg.vm.name = str(args.vm)
    if getattr(args, 'cpus', None) is not None:
        cfg.vm.cpus = int(args.cpus)
    if getattr(args, 'memory', None) is not None:
        cfg.vm.ram_mb = int(args.memory)
    if getattr(args, 'disk_size', None):
        cfg.vm.disk_size = str(args.disk_size)
    if getattr(args, 'ssh_key', None):
        cfg.vm.ssh_pubkey_path = str(args.ssh_key)
    forward = getattr(args, 'forward', None)
    if forward:
        # scriptconfig may already have split a comma list
        if isinstance(forward, str):
            forward = forward.split(',')
        cfg.network.forwards = [
            str(f).strip() for f in forward if str(f).strip()
        ]
    return cfg.expanded_paths()


def connection_instructions(
    cfg: ScratchVMConfig, result: ProvisionResult
) -> str:
    lines = [f"VM '{result.name}' is running."]
    for guest, addr in sorted(result.forwarded_ports.items()):
        host, port = addr.rsplit(':', 1)
        if guest == 22:
            lines.append(f'  ssh -p {port} {cfg.vm.user}@{host}')
        else:
            lines.append(f'  guest port {guest} -> {addr}')
    if result.display:
        lines.append(f'  VNC: {result.display}')
    lines.append(
        '  First boot installs packages; services may take a few minutes.'
    )
    return '\n'.join(lines)


class ProvisionCLI(_VMCommand):
    """Fetch the image, build disk and seed, and launch the VM."""

    cpus = scfg.Value(None, type=int, help='vCPU count.')
    memory = scfg.Value(None, type=int, help='Memory in MiB.')
    disk_size = scfg.Value(None, help='Overlay size cap, e.g. 20G.')
    ssh_key = scfg.Value(None, help='Path to the SSH public key to install.')
    forward = scfg.Value(
        None,
        help='Comma-separated host:guest TCP forwards, e.g. 2222:22,8080:80.',
    )
    dry_run = scfg.Value(
        False, isflag=True, help='Validate and print the plan without running.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _apply_overrides(_load_cfg(args.config), args)
        orch = Orchestrator(cfg)
        if args.dry_run:
            plan = orch.plan()
            docs = render_documents(plan.bundle)
            log.info('DRYRUN: fetch {}', cfg.image.url)
            log.info(
                'DRYRUN: qemu-img create overlay {} ({})',
                plan.disk_path,
                cfg.vm.disk_size,
            )
            log.info('DRYRUN: cloud-localds {}/seed.img', plan.seed_dir)
            cmd = build_command(
                plan.name,
                plan.disk_path,
                plan.seed_dir / 'seed.img',
                plan.forwards,
                plan.resources,
                plan.display,
            )
            log.info('DRYRUN: {}', shell_join(cmd))
            print(docs['user-data'], end='')
            return 0
        result = orch.provision()
        if not result.ok:
            print(result.failure.describe(), file=sys.stderr)
            return 2
        print(connection_instructions(cfg, result))
        return 0


class DestroyCLI(_VMCommand):
    """Stop the VM and delete its disk and seed (the base image is kept)."""

    dry_run = scfg.Value(
        False, isflag=True, help='Print actions without running.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _apply_overrides(_load_cfg(args.config), args)
        orch = Orchestrator(cfg)
        if args.dry_run:
            log.info('DRYRUN: stop VM {}', cfg.vm.name)
            log.info('DRYRUN: remove {}', orch.disk_path())
            log.info('DRYRUN: remove {}', orch.seed_dir())
            return 0
        orch.destroy()
        print(f"Destroyed VM '{cfg.vm.name}'.")
        return 0


class StatusCLI(_VMCommand):
    """Print the VM process state and forwarded ports."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _apply_overrides(_load_cfg(args.config), args)
        host = HostEnvironment.from_config(cfg)
        inst = load_instance(host, cfg.vm.name)
        if inst is None:
            print(f'{cfg.vm.name}: stopped')
            return 1
        print(f'{cfg.vm.name}: {inst.state()} (pid={inst.pid})')
        for guest, addr in sorted(inst.forwarded_ports().items()):
            print(f'  guest {guest} -> {addr}')
        if inst.display:
            print(f'  VNC: {inst.display}')
        return 0


class ImageFetchCLI(_BaseCommand):
    """Download and cache the base image only."""

    dry_run = scfg.Value(
        False, isflag=True, help='Print actions without running.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        host = HostEnvironment.from_config(cfg)
        store = ImageStore(host, min_bytes=cfg.image.min_bytes)
        dest = store.cache_path(cfg.image.url, cfg.image.cache_name)
        if args.dry_run:
            log.info('DRYRUN: fetch {} -> {}', cfg.image.url, dest)
            return 0
        base = store.acquire(
            cfg.image.url,
            sha256=cfg.image.sha256,
            cache_name=cfg.image.cache_name,
        )
        print(f'{base.path} ({base.format})')
        return 0


class ImageModalCLI(scfg.ModalCLI):
    """Base image subcommands."""

    fetch = ImageFetchCLI
