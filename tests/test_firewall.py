from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from scratchvm.errors import PolicyApplyError, ValidationError
from scratchvm.firewall import (
    BridgeNetwork,
    Chain,
    FirewallPolicy,
    Match,
    Packet,
    Rule,
    Table,
    apply_policy,
    bridge_isolation_policy,
    dump_policy,
    effective_rules,
    evaluate,
    isolation_policy,
    parse_rules,
    render_restore,
    render_rules,
    restore_commands,
    validate_policy,
)
from scratchvm.host import HostEnvironment
from scratchvm.util import CmdError, CmdResult


def _host(tmp_path: Path) -> HostEnvironment:
    return HostEnvironment(
        cache_dir=tmp_path / 'cache',
        base_dir=tmp_path / 'base',
        state_dir=tmp_path / 'state',
    )


def _two_bridges():
    return isolation_policy(
        [
            BridgeNetwork('br-a', '172.18.0.0/16'),
            BridgeNetwork('br-b', '172.19.0.0/16'),
        ]
    )


def test_forward_chain_order() -> None:
    policy = bridge_isolation_policy('docker0', '172.17.0.0/16')
    fwd = policy.chain('filter', 'FORWARD')
    assert fwd.policy == 'DROP'
    assert [r.render('FORWARD') for r in fwd.rules] == [
        '-A FORWARD -j DOCKER-USER',
        '-A FORWARD -j DOCKER-ISOLATION-STAGE-1',
        '-A FORWARD -o docker0 -m conntrack --ctstate RELATED,ESTABLISHED -j ACCEPT',
        '-A FORWARD -o docker0 -j DOCKER',
        '-A FORWARD -i docker0 ! -o docker0 -j ACCEPT',
        '-A FORWARD -i docker0 -o docker0 -j ACCEPT',
    ]


def test_nat_rules() -> None:
    policy = bridge_isolation_policy('docker0', '172.17.0.5/16')
    text = render_rules(policy)
    assert '-A PREROUTING -m addrtype --dst-type LOCAL -j DOCKER' in text
    assert (
        '-A OUTPUT ! -d 127.0.0.0/8 -m addrtype --dst-type LOCAL -j DOCKER'
        in text
    )
    assert (
        '-A POSTROUTING -s 172.17.0.0/16 ! -o docker0 -j MASQUERADE' in text
    )


@pytest.mark.parametrize(
    'src, dst',
    [('br-a', 'br-b'), ('br-b', 'br-a')],
)
def test_cross_bridge_traffic_dropped(src, dst) -> None:
    policy = _two_bridges()
    pkt = Packet(in_iface=src, out_iface=dst, src='172.18.0.2', dst='172.19.0.2')
    assert evaluate(policy, 'filter', 'FORWARD', pkt) == 'DROP'


def test_stage2_drop_precedes_return() -> None:
    policy = _two_bridges()
    stage2 = policy.chain('filter', 'DOCKER-ISOLATION-STAGE-2')
    targets = [r.target for r in stage2.rules]
    assert targets[-1] == 'RETURN'
    assert set(targets[:-1]) == {'DROP'}
    for br in policy.bridges:
        pkt = Packet(in_iface='other', out_iface=br)
        assert evaluate(policy, 'filter', 'DOCKER-ISOLATION-STAGE-2', pkt) == 'DROP'


@pytest.mark.parametrize(
    'pkt, verdict',
    [
        (Packet(in_iface='br-a', out_iface='br-a'), 'ACCEPT'),
        (Packet(in_iface='br-a', out_iface='eth0'), 'ACCEPT'),
        (
            Packet(in_iface='eth0', out_iface='br-a', ctstate='ESTABLISHED'),
            'ACCEPT',
        ),
        (Packet(in_iface='eth0', out_iface='br-a', ctstate='NEW'), 'DROP'),
        (Packet(in_iface='eth0', out_iface='eth1'), 'DROP'),
    ],
)
def test_forward_verdicts(pkt, verdict) -> None:
    assert evaluate(_two_bridges(), 'filter', 'FORWARD', pkt) == verdict


def test_user_chain_takes_precedence() -> None:
    policy = bridge_isolation_policy('docker0', '172.17.0.0/16')
    pkt = Packet(
        in_iface='docker0', out_iface='docker0', src='172.17.0.5', dst='172.17.0.6'
    )
    assert evaluate(policy, 'filter', 'FORWARD', pkt) == 'ACCEPT'
    user = policy.chain('filter', 'DOCKER-USER')
    user.rules.append(Rule('DROP', Match(source='172.17.0.5/32')))
    assert evaluate(policy, 'filter', 'FORWARD', pkt) == 'DROP'


def test_custom_prefix() -> None:
    policy = bridge_isolation_policy('br0', '10.10.0.0/24', prefix='SVM')
    names = {c.name for t in policy.tables for c in t.chains}
    assert {'SVM', 'SVM-USER', 'SVM-ISOLATION-STAGE-1'} <= names


@pytest.mark.parametrize(
    'bridge, subnet',
    [
        ('docker0', 'not-a-subnet'),
        ('', '172.17.0.0/16'),
        ('a-very-long-bridge-name', '172.17.0.0/16'),
        ('br 0', '172.17.0.0/16'),
    ],
)
def test_invalid_inputs(bridge, subnet) -> None:
    with pytest.raises(ValidationError):
        bridge_isolation_policy(bridge, subnet)


def test_duplicate_bridges_rejected() -> None:
    with pytest.raises(ValidationError):
        isolation_policy(
            [
                BridgeNetwork('br-a', '172.18.0.0/16'),
                BridgeNetwork('br-a', '172.19.0.0/16'),
            ]
        )


def test_validate_policy_dangling_jump() -> None:
    policy = FirewallPolicy(
        [Table('filter', [Chain('FORWARD', 'DROP', [Rule('MISSING')])])]
    )
    with pytest.raises(ValidationError, match='undefined chain MISSING'):
        validate_policy(policy)


def test_render_parse_round_trip() -> None:
    policy = _two_bridges()
    text = render_rules(policy)
    parsed = parse_rules(text)
    assert effective_rules(parsed) == effective_rules(policy)
    assert render_rules(parsed) == text


def test_restore_form_leaves_user_chain_alone() -> None:
    text = render_restore(bridge_isolation_policy('docker0', '172.17.0.0/16'))
    assert ':DOCKER-USER' not in text
    assert '-F DOCKER-USER' not in text
    assert '-F FORWARD' in text
    assert '-F DOCKER-ISOLATION-STAGE-2' in text
    assert text.count('COMMIT') == 2
    # Restore text parses back, flush lines included.
    parsed = parse_rules(text)
    assert parsed.chain('filter', 'DOCKER-USER') is None
    assert len(parsed.chain('filter', 'FORWARD').rules) == 6


def test_restore_commands() -> None:
    policy = bridge_isolation_policy('docker0', '172.17.0.0/16')
    cmds = restore_commands(policy, '/etc/scratchvm/bridge.rules')
    assert 'DOCKER-USER' in cmds[0]
    assert cmds[-1] == 'iptables-restore -w 5 --noflush /etc/scratchvm/bridge.rules'


class FakeIptables:
    def __init__(self, *, known_chains=(), fail_restore=False, delay=0.0):
        self.calls = []
        self.inputs = []
        self.known = set(known_chains)
        self.fail_restore = fail_restore
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.lock = threading.Lock()

    def __call__(self, cmd, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        if cmd[0] == 'iptables' and '-L' in cmd:
            name = cmd[-1]
            return CmdResult(0 if name in self.known else 1, '', '')
        if cmd[0] == 'iptables' and '-N' in cmd:
            self.known.add(cmd[-1])
            return CmdResult(0, '', '')
        if cmd[0] == 'iptables-restore':
            if self.fail_restore:
                raise CmdError(
                    cmd, CmdResult(2, '', "can't initialize iptables table")
                )
            with self.lock:
                self.active += 1
                self.peak = max(self.peak, self.active)
            time.sleep(self.delay)
            self.inputs.append(kwargs.get('input_text'))
            with self.lock:
                self.active -= 1
            return CmdResult(0, '', '')
        raise AssertionError(f'unexpected command {cmd}')


def test_apply_creates_user_chain_and_restores(monkeypatch, tmp_path) -> None:
    fake = FakeIptables()
    monkeypatch.setattr('scratchvm.firewall.run_cmd', fake)
    policy = bridge_isolation_policy('docker0', '172.17.0.0/16')
    apply_policy(policy, _host(tmp_path))
    assert ['iptables', '-w', '5', '-t', 'filter', '-N', 'DOCKER-USER'] in fake.calls
    assert fake.calls[-1] == ['iptables-restore', '-w', '5', '--noflush']
    assert fake.inputs == [render_restore(policy)]


def test_apply_twice_is_idempotent(monkeypatch, tmp_path) -> None:
    fake = FakeIptables()
    monkeypatch.setattr('scratchvm.firewall.run_cmd', fake)
    policy = bridge_isolation_policy('docker0', '172.17.0.0/16')
    host = _host(tmp_path)
    apply_policy(policy, host)
    apply_policy(policy, host)
    assert fake.inputs[0] == fake.inputs[1]
    creates = [c for c in fake.calls if '-N' in c]
    assert len(creates) == 1


def test_apply_failure_raises(monkeypatch, tmp_path) -> None:
    fake = FakeIptables(known_chains={'DOCKER-USER'}, fail_restore=True)
    monkeypatch.setattr('scratchvm.firewall.run_cmd', fake)
    with pytest.raises(PolicyApplyError, match='docker0'):
        apply_policy(
            bridge_isolation_policy('docker0', '172.17.0.0/16'), _host(tmp_path)
        )


def test_apply_dry_run_runs_nothing(monkeypatch, tmp_path) -> None:
    fake = FakeIptables()
    monkeypatch.setattr('scratchvm.firewall.run_cmd', fake)
    apply_policy(
        bridge_isolation_policy('docker0', '172.17.0.0/16'),
        _host(tmp_path),
        dry_run=True,
    )
    assert fake.calls == []


def test_concurrent_apply_same_bridge_serialized(monkeypatch, tmp_path) -> None:
    fake = FakeIptables(known_chains={'DOCKER-USER'}, delay=0.02)
    monkeypatch.setattr('scratchvm.firewall.run_cmd', fake)
    host = _host(tmp_path)
    policy = bridge_isolation_policy('docker0', '172.17.0.0/16')
    threads = [
        threading.Thread(target=apply_policy, args=(policy, host))
        for _ in range(4)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(fake.inputs) == 4
    assert fake.peak == 1


def test_dump_policy_filters_managed_chains(monkeypatch, tmp_path) -> None:
    policy = bridge_isolation_policy('docker0', '172.17.0.0/16')
    saved = render_rules(policy)
    extra = saved.replace(
        '*filter\n', '*filter\n:INPUT ACCEPT [0:0]\n:LIBVIRT_FWI - [0:0]\n', 1
    )

    def fake_run_cmd(cmd, **kwargs):
        table = cmd[-1]
        start = extra.index(f'*{table}')
        end = extra.index('COMMIT', start) + len('COMMIT\n')
        return CmdResult(0, extra[start:end], '')

    monkeypatch.setattr('scratchvm.firewall.run_cmd', fake_run_cmd)
    live = dump_policy(policy, _host(tmp_path))
    names = {c.name for t in live.tables for c in t.chains}
    assert 'LIBVIRT_FWI' not in names
    assert 'INPUT' not in names
    assert effective_rules(live) == effective_rules(policy)
