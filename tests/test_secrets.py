import base64
import json

import pytest

from forit.errors import ConfigError
from forit.secrets import SecretResolver


class FakeSecretsManager:
    def __init__(self, secrets):
        self.secrets = secrets
        self.calls = []

    def get_secret_value(self, SecretId):
        self.calls.append(SecretId)
        return self.secrets[SecretId]


class FakeBoto3:
    def __init__(self, client):
        self._client = client

    def client(self, name, **kwargs):
        assert name == "secretsmanager"
        return self._client


@pytest.fixture
def secretsmanager(monkeypatch):
    fake = FakeSecretsManager(
        {
            "ad-join": {"SecretString": json.dumps({"user": "svc", "password": "s3cret"})},
            "plain": {"SecretString": "mypassword"},
            "binary": {"SecretBinary": base64.b64encode(b"from-binary")},
        }
    )
    monkeypatch.setattr("forit.secrets.boto3", FakeBoto3(fake))
    return fake


def test_plain_values_pass_through(secretsmanager) -> None:
    env = SecretResolver().resolve_env({"A": "1", "B": 2})
    assert env == {"A": "1", "B": "2"}
    assert secretsmanager.calls == []


def test_json_secret_by_key_is_cached(secretsmanager) -> None:
    resolver = SecretResolver()
    env = resolver.resolve_env(
        {
            "USER": {"aws_secret": "ad-join", "key": "user"},
            "PASSWORD": {"aws_secret": "ad-join", "key": "password"},
        }
    )
    assert env == {"USER": "svc", "PASSWORD": "s3cret"}
    assert secretsmanager.calls == ["ad-join"]


def test_plaintext_secret_with_key(secretsmanager) -> None:
    env = SecretResolver().resolve_env({"PASSWORD": {"aws_secret": "plain", "key": "password"}})
    assert env["PASSWORD"] == "mypassword"


def test_binary_secret(secretsmanager) -> None:
    assert SecretResolver().resolve_env({"X": {"aws_secret": "binary"}}) == {"X": "from-binary"}


def test_missing_key_raises(secretsmanager) -> None:
    with pytest.raises(ConfigError):
        SecretResolver().resolve_env({"X": {"aws_secret": "ad-join", "key": "nope"}})


def test_mapping_without_reference_raises(secretsmanager) -> None:
    with pytest.raises(ConfigError):
        SecretResolver().resolve_env({"X": {"vault": "path"}})


def test_boto3_missing(monkeypatch) -> None:
    monkeypatch.setattr("forit.secrets.boto3", None)
    with pytest.raises(RuntimeError, match="boto3"):
        SecretResolver().resolve_env({"X": {"aws_secret": "plain"}})
