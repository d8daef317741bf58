"""Supervised service units for the guest workload.

The unit is rendered as a systemd unit file and shipped into the guest with the
first-boot bundle. :class:`RestartTracker` is the restart/rate-limit state
machine the rendered unit asks the supervisor to enforce.
"""

from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from loguru import logger

from .errors import ScratchVMError, ValidationError
from .util import CmdError, ensure_dir, run_cmd, which

log = logger

UNIT_DIR = Path('/etc/systemd/system')
_UNIT_NAME_RE = re.compile(r'^[A-Za-z0-9:_.@-]+$')


@dataclass(frozen=True)
class RestartPolicy:
    delay_s: float = 5
    max_restarts: int = 3
    window_s: float = 60


@dataclass(frozen=True)
class ResourceLimits:
    nofile: int = 65536


@dataclass(frozen=True)
class ServiceUnit:
    name: str
    command: str
    working_directory: str
    requires: tuple[str, ...]
    after: tuple[str, ...]
    part_of: tuple[str, ...]
    restart: RestartPolicy
    limits: ResourceLimits
    description: str = ''
    wanted_by: str = 'multi-user.target'

    @property
    def unit_name(self) -> str:
        return unit_name(self.name)

    @property
    def path(self) -> str:
        return str(UNIT_DIR / self.unit_name)


def unit_name(name: str) -> str:
    if '.' in name.rsplit('@', 1)[-1]:
        return name
    return f'{name}.service'


def build_unit(
    name: str,
    command: str,
    depends_on=(),
    restart_policy: RestartPolicy | None = None,
    limits: ResourceLimits | None = None,
    *,
    working_directory: str = '/',
    description: str = '',
) -> ServiceUnit:
    restart_policy = restart_policy or RestartPolicy()
    limits = limits or ResourceLimits()
    if not name or not _UNIT_NAME_RE.match(name):
        raise ValidationError(f'Invalid service name: {name!r}')
    if not str(command or '').strip():
        raise ValidationError(f'Service {name!r} needs a command.')
    if restart_policy.max_restarts <= 0:
        raise ValidationError(
            f'max_restarts must be positive (got {restart_policy.max_restarts})'
        )
    if restart_policy.window_s <= 0:
        raise ValidationError(
            f'restart window must be positive (got {restart_policy.window_s})'
        )
    if restart_policy.delay_s < 0:
        raise ValidationError(
            f'restart delay must not be negative (got {restart_policy.delay_s})'
        )
    if limits.nofile <= 0:
        raise ValidationError(f'nofile must be positive (got {limits.nofile})')
    if not working_directory.startswith('/'):
        raise ValidationError(
            f'working directory must be absolute: {working_directory!r}'
        )
    deps: list[str] = []
    for dep in depends_on or ():
        dep = unit_name(str(dep).strip())
        if not _UNIT_NAME_RE.match(dep):
            raise ValidationError(f'Invalid dependency name: {dep!r}')
        if dep == unit_name(name):
            raise ValidationError(f'Service {name!r} cannot depend on itself')
        if dep not in deps:
            deps.append(dep)
    return ServiceUnit(
        name=name,
        command=command.strip(),
        working_directory=working_directory,
        requires=tuple(deps),
        after=tuple(deps),
        part_of=tuple(deps),
        restart=restart_policy,
        limits=limits,
        description=description or f'scratchvm workload {name}',
    )


def _seconds(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def render_unit(unit: ServiceUnit) -> str:
    # StartLimitBurst counts starts, so the initial start is added to the
    # restart budget.
    lines = ['[Unit]', f'Description={unit.description}']
    if unit.after:
        lines.append('After=' + ' '.join(unit.after))
    if unit.requires:
        lines.append('Requires=' + ' '.join(unit.requires))
    if unit.part_of:
        lines.append('PartOf=' + ' '.join(unit.part_of))
    lines += [
        f'StartLimitIntervalSec={_seconds(unit.restart.window_s)}',
        f'StartLimitBurst={unit.restart.max_restarts + 1}',
        '',
        '[Service]',
        'Type=simple',
        f'WorkingDirectory={unit.working_directory}',
        f'ExecStart={unit.command}',
        'Restart=on-failure',
        f'RestartSec={_seconds(unit.restart.delay_s)}',
        f'LimitNOFILE={unit.limits.nofile}',
        '',
        '[Install]',
        f'WantedBy={unit.wanted_by}',
    ]
    return '\n'.join(lines) + '\n'


def activation_commands(unit: ServiceUnit) -> list[str]:
    """Guest-side commands that register and start the unit."""
    return [
        'systemctl daemon-reload',
        f'systemctl enable --now {unit.unit_name}',
    ]


@dataclass(frozen=True)
class RestartDecision:
    action: str
    at: float | None = None


class RestartTracker:
    """Restart bookkeeping for one unit under an on-failure policy.

    Example:
        >>> from scratchvm.service import RestartPolicy, RestartTracker
        >>> t = RestartTracker(RestartPolicy(delay_s=1, max_restarts=1, window_s=10))
        >>> t.exited(1, now=0).action
        'restart'
        >>> t.exited(1, now=2).action
        'fail'
    """

    def __init__(self, policy: RestartPolicy) -> None:
        self.policy = policy
        self.state = 'inactive'
        self._restarts: deque[float] = deque()

    @property
    def restart_count(self) -> int:
        return len(self._restarts)

    def started(self, now: float) -> None:
        if self.state == 'failed':
            raise RuntimeError('Unit is failed; reset it before starting.')
        self.state = 'active'

    def exited(self, code: int, now: float) -> RestartDecision:
        if self.state == 'failed':
            return RestartDecision('fail')
        if code == 0:
            self.state = 'inactive'
            return RestartDecision('stop')
        while self._restarts and now - self._restarts[0] >= self.policy.window_s:
            self._restarts.popleft()
        if len(self._restarts) >= self.policy.max_restarts:
            self.state = 'failed'
            log.warning(
                'Restart limit hit ({} within {}s); unit is failed',
                self.policy.max_restarts,
                self.policy.window_s,
            )
            return RestartDecision('fail')
        self._restarts.append(now)
        self.state = 'activating'
        return RestartDecision('restart', at=now + self.policy.delay_s)

    def reset(self) -> None:
        self._restarts.clear()
        self.state = 'inactive'


def start_order(units: list[ServiceUnit]) -> list[str]:
    """Unit names ordered so each comes after the units it requires."""
    by_name = {u.unit_name: u for u in units}
    order: list[str] = []
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(name: str, trail: tuple[str, ...]) -> None:
        if name in done:
            return
        if name in visiting:
            cycle = ' -> '.join(trail + (name,))
            raise ValidationError(f'Dependency cycle: {cycle}')
        visiting.add(name)
        for dep in by_name[name].requires:
            if dep in by_name:
                visit(dep, trail + (name,))
        visiting.discard(name)
        done.add(name)
        order.append(name)

    for u in units:
        visit(u.unit_name, ())
    return order


def may_start(unit: ServiceUnit, status: dict[str, str]) -> bool:
    return all(status.get(dep) == 'active' for dep in unit.requires)


def units_to_stop(units: list[ServiceUnit], failed: str) -> list[str]:
    """Units stopped transitively when ``failed`` goes down."""
    failed = unit_name(failed)
    out: list[str] = []
    frontier = [failed]
    while frontier:
        cur = frontier.pop(0)
        for u in units:
            if cur in u.part_of and u.unit_name not in out:
                out.append(u.unit_name)
                frontier.append(u.unit_name)
    return out


class Supervisor(Protocol):
    def start(self, name: str) -> None: ...

    def stop(self, name: str) -> None: ...

    def status(self, name: str) -> str: ...


class SystemdSupervisor:
    def __init__(self, *, use_sudo: bool = False) -> None:
        self.use_sudo = use_sudo

    def _systemctl(self, *args: str, check: bool = True):
        return run_cmd(
            ['systemctl', *args], sudo=self.use_sudo, check=check, capture=True
        )

    def start(self, name: str) -> None:
        self._systemctl('start', unit_name(name))

    def stop(self, name: str) -> None:
        self._systemctl('stop', unit_name(name))

    def status(self, name: str) -> str:
        res = self._systemctl('is-active', unit_name(name), check=False)
        return (res.stdout or '').strip() or 'unknown'

    def reload(self) -> None:
        self._systemctl('daemon-reload')

    def enable(self, name: str) -> None:
        self._systemctl('enable', unit_name(name))


class NullSupervisor:
    """Stand-in when no init system is running; records intent only."""

    def start(self, name: str) -> None:
        log.info('No supervisor available; not starting {}', name)

    def stop(self, name: str) -> None:
        log.info('No supervisor available; not stopping {}', name)

    def status(self, name: str) -> str:
        return 'unknown'


def detect_supervisor(*, use_sudo: bool = False) -> Supervisor:
    if which('systemctl') and Path('/run/systemd/system').is_dir():
        return SystemdSupervisor(use_sudo=use_sudo)
    log.debug('systemd not running; using NullSupervisor')
    return NullSupervisor()


def install_unit(
    unit: ServiceUnit,
    supervisor: Supervisor,
    *,
    unit_dir: Path = UNIT_DIR,
) -> bool:
    """Write the unit file and start it once its dependencies are healthy.

    Returns True when the unit was started.
    """
    ensure_dir(unit_dir)
    path = unit_dir / unit.unit_name
    path.write_text(render_unit(unit), encoding='utf-8')
    log.info('Wrote service unit {}', path)
    if isinstance(supervisor, SystemdSupervisor):
        try:
            supervisor.reload()
            supervisor.enable(unit.name)
        except CmdError as ex:
            raise ScratchVMError(
                f'Cannot register {unit.unit_name}: {ex}'
            ) from ex
    status = {dep: supervisor.status(dep) for dep in unit.requires}
    if not may_start(unit, status):
        waiting = [d for d, s in status.items() if s != 'active']
        log.warning(
            'Not starting {}; dependencies not healthy: {}',
            unit.unit_name,
            ', '.join(waiting),
        )
        return False
    supervisor.start(unit.name)
    return True


def unit_from_config(svc) -> ServiceUnit:
    """Build the workload unit from a ``[service]`` config section."""
    return build_unit(
        svc.name,
        svc.command,
        svc.requires,
        RestartPolicy(
            delay_s=svc.restart_delay_s,
            max_restarts=svc.max_restarts,
            window_s=svc.window_s,
        ),
        ResourceLimits(nofile=svc.nofile),
        working_directory=svc.working_directory,
    )
