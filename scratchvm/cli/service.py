"""CLI commands for the guest workload service unit."""

from __future__ import annotations

import scriptconfig as scfg

from ..service import (
    detect_supervisor,
    install_unit,
    render_unit,
    unit_from_config,
)
from ._common import _BaseCommand, _confirm_sudo_block, _load_cfg


class ServiceRenderCLI(_BaseCommand):
    """Print the generated systemd unit file."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        unit = unit_from_config(_load_cfg(args.config).service)
        print(render_unit(unit), end='')
        return 0


class ServiceInstallCLI(_BaseCommand):
    """Install and start the unit on this machine (run inside the guest)."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        unit = unit_from_config(_load_cfg(args.config).service)
        _confirm_sudo_block(
            yes=bool(args.yes), purpose=f'Install {unit.unit_name}.'
        )
        started = install_unit(unit, detect_supervisor())
        print(f'{unit.unit_name}: {"started" if started else "installed"}')
        return 0


class ServiceModalCLI(scfg.ModalCLI):
    """Service unit subcommands."""

    render = ServiceRenderCLI
    install = ServiceInstallCLI
