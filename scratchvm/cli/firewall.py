"""CLI commands for rendering, applying, and dumping bridge isolation rules."""

from __future__ import annotations

import scriptconfig as scfg

from ..firewall import (
    apply_policy,
    dump_policy,
    policy_from_config,
    render_restore,
    render_rules,
)
from ..host import HostEnvironment
from ._common import _BaseCommand, _confirm_sudo_block, _load_cfg


class FirewallRenderCLI(_BaseCommand):
    """Print the bridge isolation policy."""

    full = scfg.Value(
        False,
        isflag=True,
        help='Print iptables-save form instead of the --noflush restore form.',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        policy = policy_from_config(_load_cfg(args.config).firewall)
        text = render_rules(policy) if args.full else render_restore(policy)
        print(text, end='')
        return 0


class FirewallApplyCLI(_BaseCommand):
    """Apply the bridge isolation policy on this host."""

    sudo = scfg.Value(
        False, isflag=True, help='Run iptables commands through sudo.'
    )
    dry_run = scfg.Value(
        False, isflag=True, help='Print actions without running.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        host = HostEnvironment.from_config(cfg)
        host.use_sudo = bool(args.sudo)
        if host.use_sudo and not args.dry_run:
            _confirm_sudo_block(
                yes=bool(args.yes), purpose='Apply iptables isolation rules.'
            )
        policy = policy_from_config(cfg.firewall)
        apply_policy(policy, host, dry_run=bool(args.dry_run))
        return 0


class FirewallDumpCLI(_BaseCommand):
    """Print the live contents of the managed chains."""

    sudo = scfg.Value(
        False, isflag=True, help='Run iptables-save through sudo.'
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        host = HostEnvironment.from_config(cfg)
        host.use_sudo = bool(args.sudo)
        if host.use_sudo:
            _confirm_sudo_block(
                yes=bool(args.yes), purpose='Read iptables rules.'
            )
        live = dump_policy(policy_from_config(cfg.firewall), host)
        print(render_rules(live), end='')
        return 0


class FirewallModalCLI(scfg.ModalCLI):
    """Firewall subcommands."""

    render = FirewallRenderCLI
    apply = FirewallApplyCLI
    dump = FirewallDumpCLI
