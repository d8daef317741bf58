"""Bridge isolation rule sets in iptables-restore form, and their lifecycle.

The generated topology mirrors what a container runtime installs for its
bridge networks::

    filter/FORWARD (policy DROP)
      -j <P>-USER                        operator rules, never flushed
      -j <P>-ISOLATION-STAGE-1
      per bridge:
        -o br -m conntrack --ctstate RELATED,ESTABLISHED -j ACCEPT
        -o br -j <P>
        -i br ! -o br -j ACCEPT
        -i br -o br -j ACCEPT
    filter/<P>-ISOLATION-STAGE-1: -i br ! -o br -j <P>-ISOLATION-STAGE-2 ... -j RETURN
    filter/<P>-ISOLATION-STAGE-2: -o br -j DROP ... -j RETURN
    nat/PREROUTING:  -m addrtype --dst-type LOCAL -j <P>
    nat/OUTPUT:      ! -d 127.0.0.0/8 -m addrtype --dst-type LOCAL -j <P>
    nat/POSTROUTING: -s subnet ! -o br -j MASQUERADE
    nat/<P>:         -i br -j RETURN

where ``<P>`` is the chain prefix (``DOCKER`` by default).
"""

from __future__ import annotations

import ipaddress
import shlex
from contextlib import ExitStack
from dataclasses import dataclass, field

from loguru import logger

from .errors import PolicyApplyError, ValidationError
from .host import HostEnvironment
from .util import CmdError, run_cmd

log = logger

TERMINAL_TARGETS = {'ACCEPT', 'DROP', 'RETURN', 'MASQUERADE'}
BUILTIN_CHAINS = {
    'filter': ('INPUT', 'FORWARD', 'OUTPUT'),
    'nat': ('PREROUTING', 'INPUT', 'OUTPUT', 'POSTROUTING'),
}
TABLE_ORDER = ('filter', 'nat')


@dataclass(frozen=True)
class Match:
    source: str = ''
    source_negate: bool = False
    dest: str = ''
    dest_negate: bool = False
    in_iface: str = ''
    in_negate: bool = False
    out_iface: str = ''
    out_negate: bool = False
    dst_type: str = ''
    ctstate: tuple[str, ...] = ()
    extra: tuple[str, ...] = ()

    def args(self) -> list[str]:
        out: list[str] = []
        for negate, opt, value in (
            (self.source_negate, '-s', self.source),
            (self.dest_negate, '-d', self.dest),
            (self.in_negate, '-i', self.in_iface),
            (self.out_negate, '-o', self.out_iface),
        ):
            if value:
                out += (['!'] if negate else []) + [opt, value]
        if self.dst_type:
            out += ['-m', 'addrtype', '--dst-type', self.dst_type]
        if self.ctstate:
            out += ['-m', 'conntrack', '--ctstate', ','.join(self.ctstate)]
        out += list(self.extra)
        return out


@dataclass(frozen=True)
class Rule:
    target: str
    match: Match = field(default_factory=Match)
    target_args: tuple[str, ...] = ()

    def args(self) -> list[str]:
        return [*self.match.args(), '-j', self.target, *self.target_args]

    def render(self, chain: str) -> str:
        return ' '.join(['-A', chain, *self.args()])


@dataclass
class Chain:
    name: str
    policy: str = 'RETURN'
    rules: list[Rule] = field(default_factory=list)
    # Operator-owned chain: created when missing, contents never replaced.
    preserve: bool = False

    @property
    def builtin(self) -> bool:
        return self.policy != 'RETURN'


@dataclass
class Table:
    name: str
    chains: list[Chain] = field(default_factory=list)

    def chain(self, name: str) -> Chain | None:
        for c in self.chains:
            if c.name == name:
                return c
        return None


@dataclass
class FirewallPolicy:
    tables: list[Table] = field(default_factory=list)
    bridges: tuple[str, ...] = ()

    def table(self, name: str) -> Table | None:
        for t in self.tables:
            if t.name == name:
                return t
        return None

    def chain(self, table: str, name: str) -> Chain | None:
        t = self.table(table)
        return t.chain(name) if t is not None else None


@dataclass(frozen=True)
class BridgeNetwork:
    bridge: str
    subnet_cidr: str


@dataclass(frozen=True)
class Packet:
    """Minimal packet description understood by :func:`evaluate`."""

    in_iface: str = ''
    out_iface: str = ''
    src: str = '0.0.0.0'
    dst: str = '0.0.0.0'
    ctstate: str = 'NEW'
    dst_type: str = 'UNICAST'


def _normalize_subnet(raw: str) -> str:
    try:
        return str(ipaddress.ip_network(raw.strip(), strict=False))
    except ValueError as ex:
        raise ValidationError(f'Invalid bridge subnet {raw!r}: {ex}') from ex


def _check_bridge_name(name: str) -> str:
    name = (name or '').strip()
    # Linux interface names are at most 15 bytes.
    if not name or len(name) > 15 or any(c in name for c in ' /!'):
        raise ValidationError(f'Invalid bridge name: {name!r}')
    return name


def isolation_policy(
    networks: list[BridgeNetwork], *, prefix: str = 'DOCKER'
) -> FirewallPolicy:
    if not networks:
        raise ValidationError('At least one bridge network is required.')
    nets = [
        BridgeNetwork(
            _check_bridge_name(n.bridge), _normalize_subnet(n.subnet_cidr)
        )
        for n in networks
    ]
    bridges = [n.bridge for n in nets]
    if len(set(bridges)) != len(bridges):
        raise ValidationError(f'Duplicate bridge names: {bridges}')

    service = prefix
    user = f'{prefix}-USER'
    stage1 = f'{prefix}-ISOLATION-STAGE-1'
    stage2 = f'{prefix}-ISOLATION-STAGE-2'

    forward = [Rule(user), Rule(stage1)]
    for br in bridges:
        forward += [
            Rule(
                'ACCEPT',
                Match(out_iface=br, ctstate=('RELATED', 'ESTABLISHED')),
            ),
            Rule(service, Match(out_iface=br)),
            Rule('ACCEPT', Match(in_iface=br, out_iface=br, out_negate=True)),
            Rule('ACCEPT', Match(in_iface=br, out_iface=br)),
        ]
    stage1_rules = [
        Rule(stage2, Match(in_iface=br, out_iface=br, out_negate=True))
        for br in bridges
    ] + [Rule('RETURN')]
    stage2_rules = [
        Rule('DROP', Match(out_iface=br)) for br in bridges
    ] + [Rule('RETURN')]

    filter_table = Table(
        'filter',
        [
            Chain('FORWARD', 'DROP', forward),
            Chain(service),
            Chain(stage1, rules=stage1_rules),
            Chain(stage2, rules=stage2_rules),
            Chain(user, preserve=True),
        ],
    )
    nat_table = Table(
        'nat',
        [
            Chain(
                'PREROUTING',
                'ACCEPT',
                [Rule(service, Match(dst_type='LOCAL'))],
            ),
            Chain(
                'OUTPUT',
                'ACCEPT',
                [
                    Rule(
                        service,
                        Match(
                            dest='127.0.0.0/8',
                            dest_negate=True,
                            dst_type='LOCAL',
                        ),
                    )
                ],
            ),
            Chain(
                'POSTROUTING',
                'ACCEPT',
                [
                    Rule(
                        'MASQUERADE',
                        Match(
                            source=n.subnet_cidr,
                            out_iface=n.bridge,
                            out_negate=True,
                        ),
                    )
                    for n in nets
                ],
            ),
            Chain(
                service,
                rules=[Rule('RETURN', Match(in_iface=br)) for br in bridges],
            ),
        ],
    )
    policy = FirewallPolicy([filter_table, nat_table], tuple(bridges))
    validate_policy(policy)
    return policy


def bridge_isolation_policy(
    bridge: str, subnet_cidr: str, *, prefix: str = 'DOCKER'
) -> FirewallPolicy:
    return isolation_policy(
        [BridgeNetwork(bridge, subnet_cidr)], prefix=prefix
    )


def policy_from_config(fw) -> FirewallPolicy:
    return bridge_isolation_policy(
        fw.bridge, fw.subnet_cidr, prefix=fw.chain_prefix
    )


def validate_policy(policy: FirewallPolicy) -> None:
    problems: list[str] = []
    for table in policy.tables:
        names = [c.name for c in table.chains]
        if len(set(names)) != len(names):
            problems.append(f'{table.name}: duplicate chain names')
        builtins = BUILTIN_CHAINS.get(table.name, ())
        for chain in table.chains:
            if chain.name in builtins and chain.policy not in {
                'ACCEPT',
                'DROP',
            }:
                problems.append(
                    f'{table.name}/{chain.name}: built-in chain needs ACCEPT or DROP policy'
                )
            if chain.name not in builtins and chain.policy != 'RETURN':
                problems.append(
                    f'{table.name}/{chain.name}: user chains always fall through (RETURN)'
                )
            for idx, rule in enumerate(chain.rules):
                if rule.target in TERMINAL_TARGETS:
                    continue
                if rule.target not in names:
                    problems.append(
                        f'{table.name}/{chain.name}[{idx}]: jump to undefined chain {rule.target}'
                    )
    if problems:
        raise ValidationError(
            'Invalid firewall policy:\n  ' + '\n  '.join(problems)
        )


def render_rules(policy: FirewallPolicy) -> str:
    """Full iptables-save style text for every chain of the policy."""
    lines: list[str] = []
    for table in _ordered_tables(policy):
        lines.append(f'*{table.name}')
        for chain in table.chains:
            lines.append(f':{chain.name} {_policy_token(chain)} [0:0]')
        for chain in table.chains:
            lines += [rule.render(chain.name) for rule in chain.rules]
        lines.append('COMMIT')
    return '\n'.join(lines) + '\n'


def render_restore(policy: FirewallPolicy) -> str:
    """Text for ``iptables-restore --noflush`` that replaces managed chains.

    Preserved chains are left out entirely; they are created separately when
    missing so their existing contents survive.
    """
    lines: list[str] = []
    for table in _ordered_tables(policy):
        managed = [c for c in table.chains if not c.preserve]
        lines.append(f'*{table.name}')
        for chain in managed:
            lines.append(f':{chain.name} {_policy_token(chain)} [0:0]')
        for chain in managed:
            lines.append(f'-F {chain.name}')
        for chain in managed:
            lines += [rule.render(chain.name) for rule in chain.rules]
        lines.append('COMMIT')
    return '\n'.join(lines) + '\n'


def restore_commands(policy: FirewallPolicy, rules_path: str) -> list[str]:
    """Shell commands that load a :func:`render_restore` file on a fresh host."""
    cmds = []
    for table in _ordered_tables(policy):
        for chain in table.chains:
            if chain.preserve:
                cmds.append(
                    f'iptables -w 5 -t {table.name} -n -L {chain.name} '
                    f'>/dev/null 2>&1 || iptables -w 5 -t {table.name} -N {chain.name}'
                )
    cmds.append(f'iptables-restore -w 5 --noflush {rules_path}')
    return cmds


def _policy_token(chain: Chain) -> str:
    return chain.policy if chain.builtin else '-'


def _ordered_tables(policy: FirewallPolicy) -> list[Table]:
    def key(t: Table) -> int:
        return TABLE_ORDER.index(t.name) if t.name in TABLE_ORDER else 99

    return sorted(policy.tables, key=key)


def _parse_rule_args(tokens: list[str]) -> Rule:
    kw: dict[str, object] = {}
    extra: list[str] = []
    target = ''
    target_args: list[str] = []
    negate = False
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        nxt = tokens[i + 1] if i + 1 < len(tokens) else ''
        if tok == '!':
            negate = True
            i += 1
            continue
        if tok in ('-s', '-d', '-i', '-o') and nxt:
            name = {
                '-s': 'source',
                '-d': 'dest',
                '-i': 'in_iface',
                '-o': 'out_iface',
            }[tok]
            kw[name] = nxt
            kw[f'{name.split("_")[0]}_negate'] = negate
            i += 2
        elif tok == '-m' and nxt in ('addrtype', 'conntrack'):
            i += 2
            continue
        elif tok == '--dst-type' and nxt and not negate:
            kw['dst_type'] = nxt
            i += 2
        elif tok == '--ctstate' and nxt and not negate:
            kw['ctstate'] = tuple(nxt.split(','))
            i += 2
        elif tok == '-j' and nxt:
            target = nxt
            target_args = tokens[i + 2 :]
            break
        else:
            extra += (['!'] if negate else []) + [tok]
            i += 1
        negate = False
    if not target:
        raise ValidationError(f'Rule without a target: {" ".join(tokens)}')
    return Rule(target, Match(extra=tuple(extra), **kw), tuple(target_args))


def parse_rules(text: str) -> FirewallPolicy:
    """Parse iptables-save style text back into a policy."""
    policy = FirewallPolicy()
    table: Table | None = None
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('*'):
            table = Table(line[1:].strip())
            policy.tables.append(table)
            continue
        if table is None:
            raise ValidationError(f'line {lineno}: rule outside of a table')
        if line == 'COMMIT':
            table = None
            continue
        if line.startswith(':'):
            parts = line[1:].split()
            name = parts[0]
            token = parts[1] if len(parts) > 1 else '-'
            table.chains.append(
                Chain(name, 'RETURN' if token == '-' else token)
            )
            continue
        tokens = shlex.split(line)
        if len(tokens) == 2 and tokens[0] == '-F':
            continue
        if len(tokens) >= 2 and tokens[0] == '-A':
            chain = table.chain(tokens[1])
            if chain is None:
                raise ValidationError(
                    f'line {lineno}: rule for undeclared chain {tokens[1]}'
                )
            chain.rules.append(_parse_rule_args(tokens[2:]))
            continue
        raise ValidationError(f'line {lineno}: unsupported line {line!r}')
    return policy


def effective_rules(policy: FirewallPolicy) -> dict[tuple[str, str], tuple]:
    """Comparable view: (table, chain) -> (policy, rendered rules)."""
    out: dict[tuple[str, str], tuple] = {}
    for table in policy.tables:
        for chain in table.chains:
            out[(table.name, chain.name)] = (
                chain.policy,
                tuple(' '.join(r.args()) for r in chain.rules),
            )
    return out


def _iface_ok(want: str, negate: bool, have: str) -> bool:
    if not want:
        return True
    if want.endswith('+'):
        hit = have.startswith(want[:-1])
    else:
        hit = have == want
    return hit != negate


def _addr_ok(want: str, negate: bool, have: str) -> bool:
    if not want:
        return True
    hit = ipaddress.ip_address(have) in ipaddress.ip_network(
        want, strict=False
    )
    return hit != negate


def rule_matches(rule: Rule, pkt: Packet) -> bool:
    m = rule.match
    if m.extra:
        return False
    return (
        _iface_ok(m.in_iface, m.in_negate, pkt.in_iface)
        and _iface_ok(m.out_iface, m.out_negate, pkt.out_iface)
        and _addr_ok(m.source, m.source_negate, pkt.src)
        and _addr_ok(m.dest, m.dest_negate, pkt.dst)
        and (not m.dst_type or m.dst_type == pkt.dst_type)
        and (not m.ctstate or pkt.ctstate in m.ctstate)
    )


def evaluate(
    policy: FirewallPolicy, table: str, chain: str, packet: Packet
) -> str:
    """First-match-wins traversal of a built-in chain; returns the verdict."""
    start = policy.chain(table, chain)
    if start is None:
        raise ValidationError(f'Unknown chain {table}/{chain}')
    verdict = _walk(policy, table, start, packet, depth=0)
    return verdict if verdict is not None else start.policy


def _walk(
    policy: FirewallPolicy,
    table: str,
    chain: Chain,
    packet: Packet,
    *,
    depth: int,
) -> str | None:
    if depth > 32:
        raise ValidationError(f'Chain jump loop through {table}/{chain.name}')
    for rule in chain.rules:
        if not rule_matches(rule, packet):
            continue
        if rule.target == 'RETURN':
            return None
        if rule.target in TERMINAL_TARGETS:
            return rule.target
        sub = policy.chain(table, rule.target)
        if sub is None:
            raise ValidationError(f'Jump to undefined chain {rule.target}')
        verdict = _walk(policy, table, sub, packet, depth=depth + 1)
        if verdict is not None:
            return verdict
    return None


def apply_policy(
    policy: FirewallPolicy,
    host: HostEnvironment,
    *,
    dry_run: bool = False,
) -> None:
    """Atomically replace the managed chains; safe to call repeatedly."""
    validate_policy(policy)
    script = render_restore(policy)
    if dry_run:
        log.info(
            'DRYRUN: iptables-restore --noflush <<EOF\n{}EOF', script
        )
        return
    with ExitStack() as stack:
        for bridge in sorted(policy.bridges):
            stack.enter_context(host.bridge_lock(bridge))
        for table in _ordered_tables(policy):
            for chain in table.chains:
                if chain.preserve:
                    _ensure_chain(table.name, chain.name, host)
        try:
            run_cmd(
                ['iptables-restore', '-w', '5', '--noflush'],
                sudo=host.use_sudo,
                check=True,
                capture=True,
                input_text=script,
            )
        except CmdError as ex:
            raise PolicyApplyError(
                'Packet filter rejected the bridge isolation policy '
                f'(bridges={",".join(policy.bridges)}): {ex}'
            ) from ex
    log.info(
        'Firewall policy applied (bridges={}).', ','.join(policy.bridges)
    )


def _ensure_chain(table: str, name: str, host: HostEnvironment) -> None:
    res = run_cmd(
        ['iptables', '-w', '5', '-t', table, '-n', '-L', name],
        sudo=host.use_sudo,
        check=False,
        capture=True,
    )
    if res.code == 0:
        return
    try:
        run_cmd(
            ['iptables', '-w', '5', '-t', table, '-N', name],
            sudo=host.use_sudo,
            check=True,
            capture=True,
        )
    except CmdError as ex:
        raise PolicyApplyError(
            f'Cannot create chain {table}/{name}: {ex}'
        ) from ex


def dump_policy(
    policy: FirewallPolicy, host: HostEnvironment
) -> FirewallPolicy:
    """Read back the live contents of every chain named in ``policy``."""
    live = FirewallPolicy(bridges=policy.bridges)
    for table in _ordered_tables(policy):
        try:
            res = run_cmd(
                ['iptables-save', '-t', table.name],
                sudo=host.use_sudo,
                check=True,
                capture=True,
            )
        except CmdError as ex:
            raise PolicyApplyError(
                f'Cannot read packet filter table {table.name}: {ex}'
            ) from ex
        parsed = parse_rules(res.stdout).table(table.name)
        out = Table(table.name)
        for chain in table.chains:
            found = parsed.chain(chain.name) if parsed is not None else None
            if found is not None:
                out.chains.append(found)
        live.tables.append(out)
    return live
