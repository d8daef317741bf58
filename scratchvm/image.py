"""Base image cache and copy-on-write instance disks."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from loguru import logger

from .errors import DiskError, FetchError
from .host import HostEnvironment
from .util import CmdError, ensure_dir, parse_size, run_cmd

log = logger

BACKING_FORMATS = {'qcow2', 'raw'}


@dataclass(frozen=True)
class BaseImage:
    url: str
    path: Path
    format: str = 'qcow2'


@dataclass(frozen=True)
class InstanceDisk:
    path: Path
    base: BaseImage
    size: str


def cache_name_for(url: str) -> str:
    """Stable per-URL file name: short digest plus the sanitized basename."""
    digest = hashlib.sha256(url.encode('utf-8')).hexdigest()[:12]
    filename = Path(urlparse(url).path or '').name or 'base.img'
    safe = re.sub(r'[^A-Za-z0-9._-]', '_', filename) or 'base.img'
    return f'{digest}-{safe}'


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b''):
            h.update(chunk)
    return h.hexdigest()


class ImageStore:
    """Fetches base images once and derives qcow2 overlays from them."""

    def __init__(self, host: HostEnvironment, *, min_bytes: int = 1) -> None:
        self.host = host
        self.min_bytes = max(1, int(min_bytes))

    def cache_path(self, url: str, cache_name: str = '') -> Path:
        return self.host.cache_dir / (cache_name or cache_name_for(url))

    def acquire(
        self, url: str, *, sha256: str = '', cache_name: str = ''
    ) -> BaseImage:
        if not url:
            raise FetchError('No base image URL configured.')
        path = self.cache_path(url, cache_name)
        if path.exists() and path.stat().st_size >= self.min_bytes:
            log.info('Base image cached: {}', path)
            return BaseImage(
                url=url, path=path, format=self._detect_format(path)
            )
        if path.exists():
            log.warning(
                'Cached base image {} is truncated ({} bytes); fetching again',
                path,
                path.stat().st_size,
            )
            path.unlink()

        ensure_dir(path.parent)
        tmp = Path(str(path) + '.part')
        tmp.unlink(missing_ok=True)
        log.info('Downloading base image to {} (showing progress)', path)
        try:
            run_cmd(
                ['curl', '-L', '--fail', '--progress-bar', '-o', str(tmp), url],
                sudo=self.host.use_sudo,
                check=True,
                capture=False,
            )
        except CmdError as ex:
            tmp.unlink(missing_ok=True)
            raise FetchError(f'Failed to download {url}: {ex}') from ex

        size = tmp.stat().st_size if tmp.exists() else 0
        if size < self.min_bytes:
            tmp.unlink(missing_ok=True)
            raise FetchError(
                f'Downloaded image from {url} is too small ({size} bytes < {self.min_bytes}).'
            )
        if sha256:
            actual = _sha256_file(tmp)
            if actual.lower() != sha256.strip().lower():
                tmp.unlink(missing_ok=True)
                raise FetchError(
                    f'Checksum mismatch for {url}: expected {sha256}, got {actual}'
                )
        tmp.replace(path)
        log.info('Downloaded base image: {}', path)
        return BaseImage(
            url=url, path=path, format=self._detect_format(path)
        )

    def derive_instance_disk(
        self, base: BaseImage, size_cap: str, target: Path
    ) -> InstanceDisk:
        try:
            cap_bytes = parse_size(size_cap)
        except ValueError as ex:
            raise DiskError(str(ex)) from ex
        if base.format not in BACKING_FORMATS:
            raise DiskError(
                f'Base image {base.path} has format {base.format!r}; '
                f'supported backing formats: {", ".join(sorted(BACKING_FORMATS))}'
            )
        if not base.path.exists():
            raise DiskError(f'Backing file missing: {base.path}')

        if target.exists() and target.stat().st_size > 0:
            info = self._info(target)
            backing = info.get('full-backing-filename') or info.get(
                'backing-filename', ''
            )
            if backing and Path(backing) == base.path:
                log.info('Instance disk exists: {}', target)
                self.host.retain_image(base.path, target)
                return InstanceDisk(path=target, base=base, size=size_cap)
            raise DiskError(
                f'Refusing to overwrite {target}: it exists and is not an overlay of {base.path}'
            )
        target.unlink(missing_ok=True)

        base_info = self._info(base.path)
        virtual_size = int(base_info.get('virtual-size', 0) or 0)
        if virtual_size and cap_bytes < virtual_size:
            raise DiskError(
                f'Requested disk size {size_cap} is smaller than the base image '
                f'({virtual_size} bytes); overlays can only grow.'
            )

        ensure_dir(target.parent)
        try:
            run_cmd(
                [
                    'qemu-img',
                    'create',
                    '-f',
                    'qcow2',
                    '-F',
                    base.format,
                    '-b',
                    str(base.path),
                    str(target),
                    size_cap,
                ],
                sudo=self.host.use_sudo,
                check=True,
                capture=True,
            )
        except CmdError as ex:
            raise DiskError(f'Failed to create overlay {target}: {ex}') from ex
        self.host.retain_image(base.path, target)
        log.info('Created instance disk {} (backing={})', target, base.path)
        return InstanceDisk(path=target, base=base, size=size_cap)

    def destroy_instance_disk(self, disk: InstanceDisk) -> None:
        disk.path.unlink(missing_ok=True)
        remaining = self.host.release_image(disk.base.path, disk.path)
        log.info(
            'Removed instance disk {} (base refs remaining={})',
            disk.path,
            remaining,
        )

    def _info(self, path: Path) -> dict:
        try:
            # -U: a running VM holds a write lock on its overlay
            res = run_cmd(
                ['qemu-img', 'info', '-U', '--output=json', str(path)],
                sudo=self.host.use_sudo,
                check=True,
                capture=True,
            )
        except CmdError as ex:
            raise DiskError(f'Cannot inspect disk image {path}: {ex}') from ex
        try:
            return json.loads(res.stdout or '{}')
        except json.JSONDecodeError as ex:
            raise DiskError(f'Unreadable qemu-img info for {path}') from ex

    def _detect_format(self, path: Path) -> str:
        try:
            return self._format(path)
        except DiskError as ex:
            raise FetchError(f'{path} is not a readable disk image: {ex}') from ex

    def _format(self, path: Path) -> str:
        fmt = str(self._info(path).get('format', '')).strip()
        return fmt or 'raw'
