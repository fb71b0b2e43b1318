from pathlib import Path
import textwrap

import pytest

from forit.errors import ConfigError
from forit.playbooks import PlaybookLoader


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text).strip() + "\n")
    return path


def test_loads_playbook(tmp_path: Path) -> None:
    path = write(
        tmp_path / "team" / "web.yml",
        """
        name: web servers
        description: nginx fleet
        hosts: ["web*", "edge?"]
        customer: acme
        environment: prod
        tasks:
          - name: install nginx
            command: apt-get install nginx
            when: web*
            env:
              PORT: 8080
          - name: echo
            command: echo hi
        """,
    )

    playbook = PlaybookLoader().load(path, tmp_path)

    assert playbook.source == "team/web.yml"
    assert playbook.bucket == ("acme", "prod")
    assert playbook.hosts == ["web*", "edge?"]
    assert [t.name for t in playbook.tasks] == ["install nginx", "echo"]
    assert playbook.tasks[0].env == {"PORT": "8080"}
    assert playbook.tasks[0].when == "web*"
    assert playbook.applies_to("edge1")
    assert not playbook.applies_to("db1")


def test_variables_alias_env(tmp_path: Path) -> None:
    path = write(
        tmp_path / "vars.yml",
        """
        hosts: "*"
        customer: acme
        environment: dev
        tasks:
          - name: t
            command: env
            variables: {A: "1", B: "2"}
            env: {B: "3"}
        """,
    )

    playbook = PlaybookLoader().load(path, tmp_path)
    assert playbook.name == "vars"
    assert playbook.hosts == ["*"]
    assert playbook.tasks[0].env == {"A": "1", "B": "3"}


def test_secret_reference_kept_as_mapping(tmp_path: Path) -> None:
    path = write(
        tmp_path / "db.yml",
        """
        hosts: [db*]
        customer: acme
        environment: prod
        tasks:
          - name: join
            command: realm join
            env:
              PASSWORD: {aws_secret: ad-join, key: pw}
        """,
    )

    task = PlaybookLoader().load(path, tmp_path).tasks[0]
    assert task.env["PASSWORD"] == {"aws_secret": "ad-join", "key": "pw"}


def test_yaml_syntax_error_reports_location(tmp_path: Path) -> None:
    path = write(tmp_path / "broken.yml", "tasks: [\n  - name: x\n")

    with pytest.raises(ConfigError) as excinfo:
        PlaybookLoader().load(path, tmp_path)
    assert str(excinfo.value).startswith("broken.yml:")


@pytest.mark.parametrize(
    "body, message",
    [
        ("- just a list", "must be a mapping"),
        ("hosts: [a]\nenvironment: prod\ntasks: []", "customer"),
        ("customer: c\nenvironment: e\ntasks: []", "hosts"),
        ("hosts: [a]\ncustomer: c\nenvironment: e\ntasks:\n  - name: x", "command"),
        ("hosts: [a]\ncustomer: c\nenvironment: e\ntasks:\n  - name: x\n    command: y\n    env: [1]", "mapping"),
        ("hosts: ['web[']\ncustomer: c\nenvironment: e\ntasks: []", "invalid pattern"),
        (
            "hosts: [a]\ncustomer: c\nenvironment: e\ntasks:\n  - name: x\n    command: y\n    env: {P: {vault: db}}",
            "aws_secret reference",
        ),
    ],
)
def test_invalid_playbooks(tmp_path: Path, body: str, message: str) -> None:
    path = tmp_path / "bad.yml"
    path.write_text(body)

    with pytest.raises(ConfigError) as excinfo:
        PlaybookLoader().load(path, tmp_path)
    assert message in str(excinfo.value)
