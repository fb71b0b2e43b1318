from pathlib import Path
import hashlib
import json
import logging

import pytest

from forit.corpus import CorpusManager
from forit.inventory import InventoryStore
from forit.server import create_app, encode_tasks, etag_matches
from forit.types import Task

ACME_PROD = """\
name: web
customer: acme
environment: prod
hosts: [web*]
tasks:
  - name: echo
    command: echo hi
"""


@pytest.fixture
def playbook_dir(tmp_path: Path) -> Path:
    root = tmp_path / "playbooks"
    root.mkdir()
    (root / "web.yml").write_text(ACME_PROD)
    return root


@pytest.fixture
def corpus(playbook_dir: Path) -> CorpusManager:
    manager = CorpusManager(playbook_dir)
    manager.reload()
    return manager


@pytest.fixture
def inventory(tmp_path: Path) -> InventoryStore:
    return InventoryStore(tmp_path / "data")


@pytest.fixture
def client(corpus, inventory):
    return create_app(corpus, inventory).test_client()


def get_tasks(client, hostname: str, **headers):
    return client.get(
        "/tasks",
        query_string={"hostname": hostname, "customer": "acme", "environment": "prod"},
        headers=headers,
    )


def test_conditional_get(client) -> None:
    first = get_tasks(client, "web1")

    assert first.status_code == 200
    assert first.content_type == "application/json"
    assert first.data == b'[{"name":"echo","command":"echo hi"}]'
    etag = first.headers["ETag"]
    assert etag == hashlib.sha256(first.data).hexdigest()

    second = get_tasks(client, "web1", **{"If-None-Match": etag})
    assert second.status_code == 304
    assert second.data == b""
    assert second.headers["ETag"] == etag


def test_quoted_if_none_match_accepted(client) -> None:
    etag = get_tasks(client, "web1").headers["ETag"]
    assert get_tasks(client, "web1", **{"If-None-Match": f'"{etag}"'}).status_code == 304


def test_stale_etag_gets_full_body(client) -> None:
    response = get_tasks(client, "web1", **{"If-None-Match": "deadbeef"})
    assert response.status_code == 200
    assert json.loads(response.data)[0]["command"] == "echo hi"


def test_host_exclusion_changes_etag(client) -> None:
    web = get_tasks(client, "web1")
    db = get_tasks(client, "db1")

    assert db.status_code == 200
    assert db.data == b"[]"
    assert db.headers["ETag"] != web.headers["ETag"]


def test_body_is_stable_across_requests(client) -> None:
    assert get_tasks(client, "web1").data == get_tasks(client, "web1").data


def test_reload_changes_body_and_etag(client, corpus, playbook_dir: Path) -> None:
    before = get_tasks(client, "web1")
    (playbook_dir / "web.yml").write_text(ACME_PROD.replace("echo hi", "echo bye"))
    corpus.reload()
    after = get_tasks(client, "web1", **{"If-None-Match": before.headers["ETag"]})

    assert after.status_code == 200
    assert json.loads(after.data) == [{"name": "echo", "command": "echo bye"}]
    assert after.headers["ETag"] != before.headers["ETag"]


@pytest.mark.parametrize(
    "query",
    [
        {"customer": "acme", "environment": "prod"},
        {"hostname": "web1", "environment": "prod"},
        {"hostname": "web1", "customer": "acme", "environment": ""},
    ],
)
def test_missing_parameters(client, query) -> None:
    response = client.get("/tasks", query_string=query)
    assert response.status_code == 400
    assert "error" in response.get_json()


def test_fetch_registers_host(client, inventory) -> None:
    get_tasks(client, "web1")
    entry = inventory.get("web1")
    assert entry is not None
    assert entry.ip == "127.0.0.1"
    assert entry.environment == "prod"


def test_playbooks_variant_searches_all_buckets(client) -> None:
    response = client.get("/playbooks", query_string={"hostname": "web7"})
    assert response.status_code == 200
    assert json.loads(response.data) == [{"name": "echo", "command": "echo hi"}]
    assert client.get("/playbooks").status_code == 400


def test_post_results_single_and_list(client, caplog) -> None:
    caplog.set_level(logging.INFO, logger="forit.server")
    single = {"name": "echo", "changed": True, "failed": False, "output": "hi", "duration": 1000}
    failed = {"name": "boom", "changed": False, "failed": True, "output": "", "error": "exit 1"}

    assert client.post("/results", json=single).status_code == 200
    response = client.post("/results?hostname=web1", json=[single, failed])

    assert response.status_code == 200
    assert response.get_json() == {"received": 2}
    assert "task=echo changed=True failed=False output=hi" in caplog.text
    assert "exit 1" in caplog.text


def test_post_results_rejects_malformed(client) -> None:
    bad_json = client.post("/results", data="{nope", content_type="application/json")
    assert bad_json.status_code == 400
    assert client.post("/results", json=[{"changed": True}]).status_code == 400
    assert client.post("/results", json=[1, 2]).status_code == 400


def test_inventory_endpoint(client) -> None:
    get_tasks(client, "web1")
    get_tasks(client, "db1")

    response = client.get("/inventory")
    assert response.status_code == 200
    hosts = [entry["hostname"] for entry in response.get_json()]
    assert hosts == ["db1", "web1"]
    assert response.get_json()[0]["ip"] == "127.0.0.1"


def test_inventory_survives_restart(corpus, tmp_path: Path) -> None:
    data_dir = tmp_path / "data"
    first = create_app(corpus, InventoryStore(data_dir)).test_client()
    first.get(
        "/tasks",
        query_string={"hostname": "h1", "customer": "acme", "environment": "prod"},
        environ_base={"REMOTE_ADDR": "10.0.0.5", "REMOTE_PORT": "34211"},
    )
    original = first.get("/inventory").get_json()[0]

    restarted = create_app(corpus, InventoryStore(data_dir)).test_client()
    [entry] = restarted.get("/inventory").get_json()
    assert entry["hostname"] == "h1"
    assert entry["ip"] == "10.0.0.5"
    assert entry["first_seen"] == original["first_seen"]


def test_wrong_method(client) -> None:
    response = client.post("/tasks")
    assert response.status_code == 405
    assert "error" in response.get_json()
    assert "GET" in response.headers["Allow"]
    assert "POST" in client.get("/results").headers["Allow"]
    assert client.get("/results").status_code == 405
    assert client.delete("/inventory").status_code == 405


def test_internal_error_is_500(inventory, tmp_path: Path) -> None:
    class BrokenCorpus:
        def tasks_for(self, *args):
            raise RuntimeError("boom")

    client = create_app(BrokenCorpus(), inventory).test_client()
    response = get_tasks(client, "web1")
    assert response.status_code == 500
    assert response.get_json() == {"error": "internal server error"}


def test_env_is_encoded_in_sorted_order() -> None:
    task = Task(name="t", command="c", env={"ZED": "1", "ALPHA": "2"})
    assert encode_tasks([task]) == b'[{"name":"t","command":"c","env":{"ALPHA":"2","ZED":"1"}}]'


def test_etag_matches_variants() -> None:
    assert etag_matches("abc", "abc")
    assert etag_matches('W/"abc"', "abc")
    assert etag_matches('"x", "abc"', "abc")
    assert etag_matches("*", "abc")
    assert not etag_matches("", "abc")
    assert not etag_matches("abcd", "abc")
