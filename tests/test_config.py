from __future__ import annotations

from pathlib import Path

import pytest

from sweep.config import RunConfig, load_config
from sweep.errors import ConfigurationError

CONFIG = """
defaults:
  user: deploy
  port: 2222
  ssh_key: /keys/fleet
  puppet: /opt/puppetlabs/bin/puppet
run:
  concurrency: 3
  noop: true
  environment: staging
  tag: [base, web]
nodes:
  - name: web1
    host: 10.0.0.1
  - name: web2
    host: 10.0.0.2
    user: admin
    port: 22
    ssh_key: /keys/web2
"""


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "sweep.yaml"
    path.write_text(text)
    return path


def test_load_config(tmp_path: Path) -> None:
    path = _write(tmp_path, CONFIG)

    config = load_config(path)

    assert config.source_path == path.resolve()
    assert config.run == RunConfig(
        concurrency=3, noop=True, environment="staging", tag=["base", "web"]
    )
    web1, web2 = config.nodes
    assert (web1.name, web1.host, web1.user, web1.port) == ("web1", "10.0.0.1", "deploy", 2222)
    assert web1.ssh_key == Path("/keys/fleet")
    assert web1.puppet == "/opt/puppetlabs/bin/puppet"
    assert (web2.user, web2.port, web2.ssh_key) == ("admin", 22, Path("/keys/web2"))


def test_comma_separated_tags(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        "run: {concurrency: 1, tag: 'one,two'}\nnodes: [{name: a, host: a}]\n",
    )

    assert load_config(path).run.tag == ["one", "two"]


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("run: {concurrency: 1}\n", "No nodes defined"),
        ("run: {concurrency: 1}\nnodes: [{host: a}]\n", "must have a 'name'"),
        ("run: {concurrency: 1}\nnodes: [{name: a}]\n", "must have a 'host'"),
        (
            "run: {concurrency: 1}\nnodes: [{name: a, host: a}, {name: a, host: b}]\n",
            "Duplicate node name",
        ),
        ("nodes: [{name: a, host: a}]\n", "Concurrency has to be > 0"),
        ("run: {concurrency: 0}\nnodes: [{name: a, host: a}]\n", "Concurrency has to be > 0"),
        ("- just\n- a list\n", "must be a mapping"),
        ("run: {concurrency: 1}\nnodes: web1\n", "'nodes' must be a list"),
        ("run: {concurrency: 1}\nnodes: {web1: {host: a}}\n", "'nodes' must be a list"),
        ("run: {concurrency: 1}\nnodes: [web1]\n", "Node entry must be a mapping"),
    ],
)
def test_invalid_config(tmp_path: Path, text: str, message: str) -> None:
    with pytest.raises(ConfigurationError, match=message):
        load_config(_write(tmp_path, text))
