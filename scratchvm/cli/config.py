from __future__ import annotations

import sys

import scriptconfig as scfg

from ..config import ScratchVMConfig, dump_toml, save
from ..host import detect_ssh_pubkey
from ._common import _BaseCommand, _cfg_path, _load_cfg


class InitCLI(_BaseCommand):
    """Write a default config file."""

    force = scfg.Value(
        False, isflag=True, help='Overwrite an existing config file.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        if path.exists() and not args.force:
            print(f'Config already exists: {path}', file=sys.stderr)
            print('Use --force to overwrite it.', file=sys.stderr)
            return 2
        cfg = ScratchVMConfig()
        cfg.vm.ssh_pubkey_path = detect_ssh_pubkey()
        if not cfg.vm.ssh_pubkey_path:
            print(
                'No SSH public key found in ~/.ssh; set vm.ssh_pubkey_path '
                'before provisioning.',
                file=sys.stderr,
            )
        path.parent.mkdir(parents=True, exist_ok=True)
        save(path, cfg)
        print(f'Wrote config: {path}')
        return 0


class ConfigShowCLI(_BaseCommand):
    """Print the effective config as TOML."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        path = _cfg_path(args.config)
        cfg = _load_cfg(args.config)
        print(f'# Config: {path}{"" if path.exists() else " (defaults)"}')
        print(dump_toml(cfg), end='')
        return 0


class ConfigModalCLI(scfg.ModalCLI):
    """Config file commands."""

    init = InitCLI
    show = ConfigShowCLI
