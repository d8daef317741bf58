from __future__ import annotations

import os
import sys
from pathlib import Path

import scriptconfig as scfg
from loguru import logger

from ..config import ScratchVMConfig, load

log = logger


class _BaseCommand(scfg.DataConfig):
    """Base options shared by all commands."""

    config = scfg.Value(
        None, help='Path to config TOML (default: .scratchvm.toml).'
    )
    verbose = scfg.Value(
        0,
        short_alias=['v'],
        isflag='counter',
        help='Increase verbosity (-v, -vv).',
    )
    yes = scfg.Value(
        False,
        isflag=True,
        help='Auto-approve privileged host operations (sudo).',
    )


def _cfg_path(p: str | None) -> Path:
    return Path(p or '.scratchvm.toml').resolve()


def _load_cfg(config_path: str | None) -> ScratchVMConfig:
    """Load the config; without an explicit path a missing file means defaults."""
    path = _cfg_path(config_path)
    if not path.exists():
        if config_path is not None:
            raise FileNotFoundError(
                f'Config not found: {path}. '
                f'Run: scratchvm config init --config {path}'
            )
        log.debug('No config at {}; using defaults', path)
        return ScratchVMConfig().expanded_paths()
    log.debug('Loading config from {}', path)
    return load(path).expanded_paths()


def _confirm_sudo_block(*, yes: bool, purpose: str) -> None:
    if yes or os.geteuid() == 0:
        return
    if not sys.stdin.isatty():
        raise RuntimeError(
            'Privileged host operations require confirmation, but stdin is not interactive. '
            'Re-run with --yes.'
        )
    print('About to run privileged host operations via sudo:')
    print(f'  {purpose}')
    ans = input('Continue? [y/N]: ').strip().lower()
    if ans not in {'y', 'yes'}:
        raise RuntimeError('Aborted by user.')
