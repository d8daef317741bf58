"""Config dataclasses plus TOML load/save for scratchvm instances."""

from __future__ import annotations

import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path

import ubelt as ub

from .errors import ValidationError
from .util import expand

DEFAULT_DEBIAN_IMG_URL = (
    'https://cloud.debian.org/images/cloud/bookworm/latest/'
    'debian-12-generic-amd64.qcow2'
)

SECTIONS = (
    'vm',
    'image',
    'network',
    'firewall',
    'service',
    'display',
    'paths',
)


@dataclass
class VMConfig:
    name: str = 'scratchvm'
    user: str = 'dev'
    cpus: int = 2
    ram_mb: int = 2048
    disk_size: str = '20G'
    ssh_pubkey_path: str = ''
    install_docker: bool = True
    packages: list[str] = field(
        default_factory=lambda: [
            'curl',
            'wget',
            'sudo',
            'unzip',
            'git',
            'build-essential',
            'ca-certificates',
            'lsb-release',
            'gnupg',
        ]
    )
    run_commands: list[str] = field(default_factory=list)


@dataclass
class ImageConfig:
    url: str = DEFAULT_DEBIAN_IMG_URL
    sha256: str = ''
    cache_name: str = ''
    min_bytes: int = 1


@dataclass
class NetworkConfig:
    forwards: list[str] = field(default_factory=lambda: ['2222:22'])
    interface: str = 'en*'
    dhcp: bool = True
    address: str = ''
    gateway: str = ''
    nameservers: list[str] = field(default_factory=list)


@dataclass
class FirewallConfig:
    enabled: bool = True
    bridge: str = 'docker0'
    subnet_cidr: str = '172.17.0.0/16'
    chain_prefix: str = 'DOCKER'


@dataclass
class ServiceConfig:
    enabled: bool = True
    name: str = 'workload'
    command: str = '/usr/bin/docker compose up'
    working_directory: str = '/srv/workload'
    requires: list[str] = field(default_factory=lambda: ['docker.service'])
    restart_delay_s: int = 5
    max_restarts: int = 3
    window_s: int = 60
    nofile: int = 65536


@dataclass
class DisplayConfig:
    enabled: bool = True
    vnc_display: int = 0


@dataclass
class PathsConfig:
    cache_dir: str = ''
    base_dir: str = '~/.local/share/scratchvm'
    state_dir: str = '~/.cache/scratchvm'


@dataclass
class ScratchVMConfig:
    vm: VMConfig = field(default_factory=VMConfig)
    image: ImageConfig = field(default_factory=ImageConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    firewall: FirewallConfig = field(default_factory=FirewallConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    verbosity: int = 1

    def expanded_paths(self) -> 'ScratchVMConfig':
        if not self.paths.cache_dir:
            self.paths.cache_dir = str(
                ub.Path.appdir('scratchvm', 'images', type='cache')
            )
        self.paths.cache_dir = expand(self.paths.cache_dir)
        self.paths.base_dir = expand(self.paths.base_dir)
        self.paths.state_dir = expand(self.paths.state_dir)
        self.vm.ssh_pubkey_path = (
            expand(self.vm.ssh_pubkey_path) if self.vm.ssh_pubkey_path else ''
        )
        return self

    def port_forwards(self) -> dict[int, int]:
        """Parse ``network.forwards`` into an ordered host -> guest map."""
        return parse_forwards(self.network.forwards)


def parse_forwards(entries: list[str]) -> dict[int, int]:
    out: dict[int, int] = {}
    guests: set[int] = set()
    for entry in entries or []:
        entry = str(entry).strip()
        if not entry:
            continue
        parts = entry.split(':')
        if len(parts) != 2:
            raise ValidationError(
                f'Invalid forward {entry!r}: expected host_port:guest_port'
            )
        try:
            host_port, guest_port = int(parts[0]), int(parts[1])
        except ValueError as ex:
            raise ValidationError(
                f'Invalid forward {entry!r}: ports must be integers'
            ) from ex
        for p in (host_port, guest_port):
            if p < 1 or p > 65535:
                raise ValidationError(
                    f'Invalid forward {entry!r}: port {p} out of range (1-65535)'
                )
        if host_port in out:
            raise ValidationError(
                f'Host port {host_port} is forwarded more than once'
            )
        if guest_port in guests:
            raise ValidationError(
                f'Guest port {guest_port} is forwarded more than once'
            )
        out[host_port] = guest_port
        guests.add(guest_port)
    return out


def _toml_escape(s: str) -> str:
    return s.replace('\\', '\\\\').replace('"', '\\"')


def dump_toml(cfg: ScratchVMConfig) -> str:
    d = asdict(cfg)
    lines: list[str] = []
    # Top-level keys must precede the first table header.
    if d.get('verbosity', 1) != 1:
        lines.append(f'verbosity = {d["verbosity"]}')
        lines.append('')
    for section, body in d.items():
        if isinstance(body, dict):
            lines.append(f'[{section}]')
            for k, v in body.items():
                if isinstance(v, bool):
                    lines.append(f"{k} = {'true' if v else 'false'}")
                elif isinstance(v, int):
                    lines.append(f'{k} = {v}')
                elif isinstance(v, list):
                    parts = [f'"{_toml_escape(str(item))}"' for item in v]
                    lines.append(f"{k} = [{', '.join(parts)}]")
                else:
                    lines.append(f'{k} = "{_toml_escape(str(v))}"')
            lines.append('')
    return '\n'.join(lines).rstrip() + '\n'


def loads(text: str) -> ScratchVMConfig:
    raw = tomllib.loads(text)
    cfg = ScratchVMConfig()
    for section in SECTIONS:
        if section in raw and isinstance(raw[section], dict):
            obj = getattr(cfg, section)
            for k, v in raw[section].items():
                if hasattr(obj, k):
                    setattr(obj, k, v)
    if 'verbosity' in raw:
        cfg.verbosity = raw['verbosity']
    return cfg


def load(path: Path) -> ScratchVMConfig:
    return loads(path.read_text(encoding='utf-8'))


def save(path: Path, cfg: ScratchVMConfig) -> None:
    path.write_text(dump_toml(cfg), encoding='utf-8')
