from __future__ import annotations

from pathlib import Path

import pytest

from kiln.config.cli_args import TaskRequest, parse_task_args
from kiln.config.loader import parse_config
from kiln.config.schema import ConfigSpec
from kiln.util.errors import ConfigError, UnknownTaskError


def _config(tmp_path: Path) -> ConfigSpec:
    return parse_config(
        {
            "kiln": {"tasks": ["build"]},
            "tasks": {
                "build": {
                    "bash": "true",
                    "params": {
                        "-r|--release": {"default": False},
                        "--mode": {"choices": ["debug", "release"]},
                        "target": {},
                    },
                },
                "test": {"bash": "true", "params": {"--filter": {}}},
                "shard": {"bash": "true", "foreach": {"items": ["a", "b"]}},
            },
        },
        tmp_path / "kiln.yml",
    )


def test_no_tokens_requests_default_tasks(tmp_path: Path) -> None:
    assert parse_task_args(_config(tmp_path), []) == [TaskRequest(name="build")]


def test_tokens_split_into_task_sections(tmp_path: Path) -> None:
    requests = parse_task_args(
        _config(tmp_path),
        ["build", "-r", "--mode", "debug", "app", "test", "--filter=unit", "shard:b"],
    )
    assert requests == [
        TaskRequest(name="build", values={"release": "true", "mode": "debug", "target": "app"}),
        TaskRequest(name="test", values={"filter": "unit"}),
        TaskRequest(name="shard:b", values={}),
    ]


def test_option_value_may_equal_a_task_name(tmp_path: Path) -> None:
    requests = parse_task_args(_config(tmp_path), ["test", "--filter", "build"])
    assert requests == [TaskRequest(name="test", values={"filter": "build"})]


def test_choices_are_enforced(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="invalid value 'fast'"):
        parse_task_args(_config(tmp_path), ["build", "--mode", "fast"])


def test_unknown_option_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="has no option '--nope'"):
        parse_task_args(_config(tmp_path), ["build", "--nope"])


def test_missing_option_value_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="requires a value"):
        parse_task_args(_config(tmp_path), ["build", "--mode"])


def test_flag_with_value_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="takes no value"):
        parse_task_args(_config(tmp_path), ["build", "--release=yes"])


def test_extra_positional_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="unexpected argument 'two'"):
        parse_task_args(_config(tmp_path), ["build", "one", "two"])


def test_unknown_first_token(tmp_path: Path) -> None:
    with pytest.raises(UnknownTaskError, match="unknown task 'deploy'"):
        parse_task_args(_config(tmp_path), ["deploy"])
