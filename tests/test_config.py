from __future__ import annotations

from pathlib import Path

import pytest

from scratchvm.config import (
    ScratchVMConfig,
    dump_toml,
    load,
    loads,
    parse_forwards,
    save,
)
from scratchvm.errors import ValidationError


def test_defaults() -> None:
    cfg = ScratchVMConfig()
    assert cfg.vm.disk_size == '20G'
    assert cfg.vm.ram_mb == 2048
    assert cfg.vm.cpus == 2
    assert cfg.network.forwards == ['2222:22']
    assert cfg.service.requires == ['docker.service']
    assert cfg.port_forwards() == {2222: 22}


def test_toml_round_trip(tmp_path: Path) -> None:
    cfg = ScratchVMConfig()
    cfg.vm.name = 'box'
    cfg.vm.packages = ['git', 'tmux']
    cfg.vm.run_commands = ['echo "hi"']
    cfg.network.forwards = ['2222:22', '8080:80']
    cfg.service.max_restarts = 5
    cfg.verbosity = 2
    path = tmp_path / '.scratchvm.toml'
    save(path, cfg)
    got = load(path)
    assert got == cfg


def test_verbosity_is_written_before_tables() -> None:
    cfg = ScratchVMConfig()
    cfg.verbosity = 0
    text = dump_toml(cfg)
    assert text.startswith('verbosity = 0\n')
    assert loads(text).verbosity == 0


def test_loads_ignores_unknown_keys() -> None:
    cfg = loads(
        '[vm]\nname = "x"\nbogus = 1\n\n[nonsense]\nkey = "v"\n'
    )
    assert cfg.vm.name == 'x'
    assert not hasattr(cfg.vm, 'bogus')


def test_expanded_paths_fills_cache_dir(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv('HOME', str(tmp_path))
    cfg = ScratchVMConfig()
    cfg.paths.base_dir = '~/vms'
    cfg.expanded_paths()
    assert cfg.paths.cache_dir
    assert cfg.paths.base_dir == str(tmp_path / 'vms')


def test_parse_forwards_keeps_order() -> None:
    got = parse_forwards(['8080:80', ' 2222:22 ', ''])
    assert list(got.items()) == [(8080, 80), (2222, 22)]


@pytest.mark.parametrize(
    'entries',
    [
        ['2222'],
        ['a:22'],
        ['0:22'],
        ['2222:70000'],
        ['2222:22', '2222:80'],
        ['2222:22', '2223:22'],
        ['1:2:3'],
    ],
)
def test_parse_forwards_rejects(entries) -> None:
    with pytest.raises(ValidationError):
        parse_forwards(entries)
