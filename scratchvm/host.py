"""Host context shared by every component, plus host tool checks.

A :class:`HostEnvironment` owns the only process-wide mutable state the
provisioning pipeline has: one lock per firewall bridge name and a reference
count per cached base image. It is created once by the caller and passed to
each component explicitly.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from loguru import logger

from .util import expand, which

log = logger

REQUIRED_CMDS = [
    'qemu-img',
    'qemu-system-x86_64',
    'cloud-localds',
    'curl',
]
OPTIONAL_CMDS = ['iptables-restore', 'iptables-save', 'systemctl']


def check_commands() -> tuple[list[str], list[str]]:
    missing = [c for c in REQUIRED_CMDS if which(c) is None]
    missing_opt = [c for c in OPTIONAL_CMDS if which(c) is None]
    return missing, missing_opt


def kvm_available() -> bool:
    return Path('/dev/kvm').exists()


def detect_ssh_pubkey() -> str:
    ssh_dir = Path(expand('~/.ssh'))
    for name in ('id_ed25519.pub', 'id_ecdsa.pub', 'id_rsa.pub'):
        p = ssh_dir / name
        if p.is_file():
            log.debug('Detected SSH public key {}', p)
            return str(p)
    return ''


@dataclass
class HostEnvironment:
    cache_dir: Path
    base_dir: Path
    state_dir: Path
    use_sudo: bool = False
    _bridge_locks: dict[str, threading.Lock] = field(
        default_factory=dict, repr=False
    )
    _image_refs: dict[str, set[str]] = field(default_factory=dict, repr=False)
    _guard: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def from_config(cls, cfg) -> 'HostEnvironment':
        cfg = cfg.expanded_paths()
        return cls(
            cache_dir=Path(cfg.paths.cache_dir),
            base_dir=Path(cfg.paths.base_dir),
            state_dir=Path(cfg.paths.state_dir),
        )

    def instance_dir(self, name: str) -> Path:
        return self.base_dir / name

    def instance_state_dir(self, name: str) -> Path:
        return self.state_dir / name

    @contextmanager
    def bridge_lock(self, bridge: str) -> Iterator[None]:
        with self._guard:
            lock = self._bridge_locks.setdefault(bridge, threading.Lock())
        log.debug('Waiting for firewall lock on bridge {}', bridge)
        with lock:
            yield

    def retain_image(self, path: Path, holder: Path) -> int:
        """Record that overlay ``holder`` is backed by ``path``; repeats are no-ops."""
        key = str(Path(path))
        with self._guard:
            refs = self._image_refs.setdefault(key, set())
            refs.add(str(Path(holder)))
            return len(refs)

    def release_image(self, path: Path, holder: Path) -> int:
        key = str(Path(path))
        with self._guard:
            refs = self._image_refs.get(key, set())
            refs.discard(str(Path(holder)))
            if not refs:
                self._image_refs.pop(key, None)
            return len(refs)

    def image_refcount(self, path: Path) -> int:
        with self._guard:
            return len(self._image_refs.get(str(Path(path)), ()))
