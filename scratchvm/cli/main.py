"""Top-level modal CLI wiring, argv normalization, and logging setup."""

from __future__ import annotations

import os
import sys

import scriptconfig as scfg
from loguru import logger

from ._common import _cfg_path, _load_cfg, log
from .config import ConfigModalCLI
from .firewall import FirewallModalCLI
from .host import DoctorCLI
from .service import ServiceModalCLI
from .vm import DestroyCLI, ImageModalCLI, ProvisionCLI, StatusCLI


class ScratchVMModalCLI(scfg.ModalCLI):
    """Disposable qemu dev VM with a container runtime and bridge isolation."""

    provision = ProvisionCLI
    destroy = DestroyCLI
    status = StatusCLI
    image = ImageModalCLI
    fw = FirewallModalCLI
    service = ServiceModalCLI
    config = ConfigModalCLI
    doctor = DoctorCLI


def main(argv: list[str] | None = None) -> None:
    verbosity = 1
    config_value = None
    if argv is None:
        argv = sys.argv[1:]
    argv = _normalize_argv(argv)
    if '--config' in argv:
        try:
            config_value = argv[argv.index('--config') + 1]
        except IndexError:
            pass
    try:
        if config_value is not None or _cfg_path(None).exists():
            verbosity = _load_cfg(config_value).verbosity
    except Exception:
        verbosity = 1

    explicit_verbose = _count_verbose(argv)
    _setup_logging(explicit_verbose, verbosity)

    try:
        rc = ScratchVMModalCLI.main(argv=argv, _noexit=True)
    except Exception as ex:
        print(f'ERROR: {ex}', file=sys.stderr)
        log.error('Unhandled scratchvm error: {}', ex)
        sys.exit(2)

    if any(flag in argv for flag in ('-h', '--help')):
        sys.exit(0)
    if isinstance(rc, int):
        sys.exit(rc)
    sys.exit(0)


def _setup_logging(args_verbose: int, cfg_verbosity: int) -> None:
    logger.remove()
    effective_verbosity = args_verbose if args_verbose > 0 else cfg_verbosity
    level = 'WARNING'
    if effective_verbosity == 1:
        level = 'INFO'
    elif effective_verbosity >= 2:
        level = 'DEBUG'
    colorize = sys.stderr.isatty() and os.getenv('NO_COLOR') is None
    logger.add(
        sys.stderr,
        level=level,
        colorize=colorize,
        format='<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>',
    )
    log.debug(
        'Logging configured at {} (effective_verbosity={}, colorize={})',
        level,
        effective_verbosity,
        colorize,
    )


_OPTION_SPELLINGS = {
    '--disk-size': '--disk_size',
    '--ssh-key': '--ssh_key',
    '--dry-run': '--dry_run',
    '--memory-mb': '--memory',
}


def _normalize_argv(argv: list[str]) -> list[str]:
    """Normalize accepted hyphenated spellings to scriptconfig names."""
    out = []
    for item in argv:
        key, sep, value = item.partition('=')
        if key in _OPTION_SPELLINGS:
            item = _OPTION_SPELLINGS[key] + sep + value
        out.append(item)
    if len(out) >= 1 and out[0] == 'init':
        return ['config', 'init', *out[1:]]
    if len(out) >= 1 and out[0] == 'up':
        return ['provision', *out[1:]]
    return out


def _count_verbose(argv: list[str]) -> int:
    count = 0
    for item in argv:
        if item == '--verbose':
            count += 1
        elif item.startswith('-') and not item.startswith('--'):
            short = item[1:]
            if short and set(short) <= {'v'}:
                count += len(short)
    return count
