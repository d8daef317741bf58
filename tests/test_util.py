from __future__ import annotations

import pytest

from scratchvm.util import CmdError, parse_size, run_cmd, shell_join


@pytest.mark.parametrize(
    'raw, expected',
    [
        ('512', 512),
        ('1K', 1024),
        ('64M', 64 * 1024**2),
        ('20G', 20 * 1024**3),
        ('20g', 20 * 1024**3),
        ('1T', 1024**4),
    ],
)
def test_parse_size(raw, expected) -> None:
    assert parse_size(raw) == expected


@pytest.mark.parametrize('raw', ['', 'G', '20GB', '-1G', '1.5G', 'twenty'])
def test_parse_size_rejects_garbage(raw) -> None:
    with pytest.raises(ValueError):
        parse_size(raw)


def test_shell_join_quotes() -> None:
    assert shell_join(['echo', 'a b', "c'd"]) == "echo 'a b' 'c'\"'\"'d'"


def test_run_cmd_missing_binary_without_check() -> None:
    res = run_cmd(['scratchvm-no-such-binary-xyz'], check=False)
    assert res.code == 127


def test_run_cmd_missing_binary_with_check() -> None:
    with pytest.raises(CmdError) as exc:
        run_cmd(['scratchvm-no-such-binary-xyz'], check=True)
    assert exc.value.result.code == 127
