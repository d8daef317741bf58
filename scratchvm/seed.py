"""First-boot configuration bundle and its NoCloud seed image.

A :class:`ConfigBundle` holds the identity, package set, network spec and
ordered run commands for one instance. :func:`render_documents` turns it into
the three NoCloud documents (``meta-data``, ``user-data``,
``network-config``) and :func:`serialize` packs them into a seed image with
``cloud-localds``.

Rendering is deterministic: key order is fixed and nothing time-dependent is
emitted. The seed image is rebuilt only when the rendered documents change
(tracked by a digest written next to the image), and ``cloud-localds`` runs
with a pinned ``SOURCE_DATE_EPOCH``, so re-serializing the same bundle leaves
a byte-identical artifact.
"""

from __future__ import annotations

import hashlib
import ipaddress
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from loguru import logger

from .errors import DiskError, ValidationError
from .util import CmdError, ensure_dir, run_cmd

log = logger

DOCUMENT_NAMES = ('meta-data', 'user-data', 'network-config')
SOURCE_DATE_EPOCH = '0'

_HOSTNAME_RE = re.compile(r'^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$')
_USER_RE = re.compile(r'^[a-z_][a-z0-9_-]{0,31}$')
_SSH_KEY_PREFIXES = ('ssh-', 'ecdsa-', 'sk-')


@dataclass(frozen=True)
class Identity:
    hostname: str
    user: str
    ssh_authorized_keys: tuple[str, ...] = ()
    password_hash: str = ''

    @property
    def has_auth(self) -> bool:
        return bool(self.ssh_authorized_keys or self.password_hash)


@dataclass(frozen=True)
class NetworkSpec:
    interface: str = 'en*'
    dhcp: bool = True
    address: str = ''
    gateway: str = ''
    nameservers: tuple[str, ...] = ()


@dataclass(frozen=True)
class WriteFile:
    path: str
    content: str
    permissions: str = '0644'


@dataclass(frozen=True)
class ConfigBundle:
    instance_id: str
    identity: Identity
    packages: tuple[str, ...]
    network: NetworkSpec
    run_commands: tuple[str, ...]
    files: tuple[WriteFile, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SeedArtifact:
    path: Path
    instance_id: str
    digest: str


def instance_id_for(name: str) -> str:
    return f'iid-{name}'


def _validate_identity(identity: Identity) -> None:
    if not identity.has_auth:
        raise ValidationError(
            f'Identity for {identity.user!r}@{identity.hostname!r} has no '
            'authentication method; supply an SSH public key.'
        )
    if not _HOSTNAME_RE.match(identity.hostname or ''):
        raise ValidationError(f'Invalid hostname: {identity.hostname!r}')
    if not _USER_RE.match(identity.user or ''):
        raise ValidationError(f'Invalid login user: {identity.user!r}')
    for key in identity.ssh_authorized_keys:
        key = key.strip()
        if '\n' in key or not key.startswith(_SSH_KEY_PREFIXES):
            raise ValidationError(
                f'Not an SSH public key: {key[:40]!r}'
            )


def _validate_network(network: NetworkSpec) -> None:
    if not network.interface:
        raise ValidationError('Network interface name must not be empty.')
    if network.dhcp:
        return
    if not network.address:
        raise ValidationError(
            'Static networking requires an address in CIDR form.'
        )
    try:
        iface = ipaddress.ip_interface(network.address)
        gw = ipaddress.ip_address(network.gateway) if network.gateway else None
        for ns in network.nameservers:
            ipaddress.ip_address(ns)
    except ValueError as ex:
        raise ValidationError(f'Invalid static network spec: {ex}') from ex
    if gw is not None and gw not in iface.network:
        raise ValidationError(f'Gateway {gw} is outside {iface.network}')


def build_bundle(
    identity: Identity,
    packages,
    network: NetworkSpec,
    run_commands,
    *,
    instance_id: str = '',
    files=(),
) -> ConfigBundle:
    """Validate inputs and assemble a bundle. No side effects."""
    _validate_identity(identity)
    _validate_network(network)
    pkgs: list[str] = []
    for pkg in packages or []:
        pkg = str(pkg).strip()
        if not pkg:
            raise ValidationError('Package names must not be empty.')
        if pkg not in pkgs:
            pkgs.append(pkg)
    cmds: list[str] = []
    for cmd in run_commands or []:
        if not str(cmd).strip():
            raise ValidationError('Run commands must not be empty.')
        cmds.append(str(cmd))
    for wf in files:
        if not wf.path.startswith('/'):
            raise ValidationError(f'File path must be absolute: {wf.path!r}')
    return ConfigBundle(
        instance_id=instance_id or instance_id_for(identity.hostname),
        identity=identity,
        packages=tuple(pkgs),
        network=network,
        run_commands=tuple(cmds),
        files=tuple(files),
    )


def _dump(data: dict) -> str:
    return yaml.safe_dump(
        data, sort_keys=False, default_flow_style=False, width=4096
    )


def _user_data(bundle: ConfigBundle) -> str:
    ident = bundle.identity
    user: dict[str, object] = {
        'name': ident.user,
        'groups': ['sudo'],
        'shell': '/bin/bash',
        'sudo': 'ALL=(ALL) NOPASSWD:ALL',
        'lock_passwd': not bool(ident.password_hash),
    }
    if ident.password_hash:
        user['passwd'] = ident.password_hash
    if ident.ssh_authorized_keys:
        user['ssh_authorized_keys'] = [
            k.strip() for k in ident.ssh_authorized_keys
        ]
    cloud: dict[str, object] = {
        'hostname': ident.hostname,
        'users': [user],
        'ssh_pwauth': bool(ident.password_hash),
        'disable_root': True,
        'package_update': True,
        'packages': list(bundle.packages),
    }
    if bundle.files:
        cloud['write_files'] = [
            {
                'path': wf.path,
                'permissions': wf.permissions,
                'content': wf.content,
            }
            for wf in bundle.files
        ]
    if bundle.run_commands:
        cloud['runcmd'] = list(bundle.run_commands)
    return '#cloud-config\n' + _dump(cloud)


def _network_config(network: NetworkSpec) -> str:
    eth: dict[str, object] = {'match': {'name': network.interface}}
    if network.dhcp:
        eth['dhcp4'] = True
    else:
        eth['dhcp4'] = False
        eth['addresses'] = [network.address]
        if network.gateway:
            eth['routes'] = [{'to': 'default', 'via': network.gateway}]
        if network.nameservers:
            eth['nameservers'] = {'addresses': list(network.nameservers)}
    return _dump({'version': 2, 'ethernets': {'primary': eth}})


def render_documents(bundle: ConfigBundle) -> dict[str, str]:
    meta = _dump(
        {
            'instance-id': bundle.instance_id,
            'local-hostname': bundle.identity.hostname,
        }
    )
    return {
        'meta-data': meta,
        'user-data': _user_data(bundle),
        'network-config': _network_config(bundle.network),
    }


def documents_digest(docs: dict[str, str]) -> str:
    h = hashlib.sha256()
    for name in DOCUMENT_NAMES:
        h.update(name.encode('utf-8') + b'\0')
        h.update(docs[name].encode('utf-8') + b'\0')
    return h.hexdigest()


def serialize(
    bundle: ConfigBundle, out_dir: Path, *, use_sudo: bool = False
) -> SeedArtifact:
    docs = render_documents(bundle)
    digest = documents_digest(docs)
    seed = out_dir / 'seed.img'
    stamp = out_dir / 'seed.img.sha256'
    if (
        seed.exists()
        and stamp.exists()
        and stamp.read_text(encoding='utf-8').strip() == digest
    ):
        log.info('Seed image up to date: {}', seed)
        return SeedArtifact(seed, bundle.instance_id, digest)

    ensure_dir(out_dir)
    for name in DOCUMENT_NAMES:
        (out_dir / name).write_text(docs[name], encoding='utf-8')
    seed.unlink(missing_ok=True)
    env = dict(os.environ)
    env['SOURCE_DATE_EPOCH'] = SOURCE_DATE_EPOCH
    cmd = [
        'cloud-localds',
        '-N',
        str(out_dir / 'network-config'),
        str(seed),
        str(out_dir / 'user-data'),
        str(out_dir / 'meta-data'),
    ]
    if use_sudo:
        # sudo resets the environment
        cmd = ['env', f'SOURCE_DATE_EPOCH={SOURCE_DATE_EPOCH}'] + cmd
    try:
        run_cmd(
            cmd,
            sudo=use_sudo,
            check=True,
            capture=True,
            env=env,
        )
    except CmdError as ex:
        raise DiskError(f'Failed to build seed image {seed}: {ex}') from ex
    stamp.write_text(digest + '\n', encoding='utf-8')
    log.info('Seed image written: {} (instance-id={})', seed, bundle.instance_id)
    return SeedArtifact(seed, bundle.instance_id, digest)
