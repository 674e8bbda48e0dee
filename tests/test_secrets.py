import logging
from pathlib import Path

import pytest

from rigger_automation.errors import PlanValidationError
from rigger_automation.secrets import (
    REDACTED,
    RedactingFilter,
    Redactor,
    SecretResolver,
    load_vault_file,
)


class FakeClient:
    def __init__(self, secrets: dict):
        self.secrets = secrets
        self.calls: list[str] = []

    def get_secret_value(self, SecretId):
        self.calls.append(SecretId)
        return {"SecretString": self.secrets[SecretId]}


class FakeBoto3:
    def __init__(self, client: FakeClient):
        self._client = client

    def client(self, name):
        assert name == "secretsmanager"
        return self._client


def test_secret_resolver_plaintext_with_key(monkeypatch):
    resolver = SecretResolver()
    monkeypatch.setattr("rigger_automation.secrets.boto3", FakeBoto3(FakeClient({"plain": "mypassword"})))

    values = resolver.resolve({"password": {"aws_secret": "plain", "key": "password"}})
    assert values["password"] == "mypassword"
    assert "mypassword" in resolver.revealed


def test_secret_resolver_json_key_is_cached(monkeypatch):
    client = FakeClient({"db": '{"user": "app", "password": "hunter22"}'})
    monkeypatch.setattr("rigger_automation.secrets.boto3", FakeBoto3(client))
    resolver = SecretResolver()

    first = resolver.resolve({"pw": {"aws_secret": "db", "key": "password"}})
    second = resolver.resolve({"nested": {"pw": {"aws_secret": "db", "key": "password"}}})

    assert first["pw"] == "hunter22"
    assert second["nested"]["pw"] == "hunter22"
    assert client.calls == ["db"]


def test_missing_boto3_is_reported(monkeypatch):
    monkeypatch.setattr("rigger_automation.secrets.boto3", None)
    with pytest.raises(RuntimeError):
        SecretResolver().resolve({"x": {"aws_secret": "anything"}})


def test_load_vault_file_formats(tmp_path: Path):
    toml_file = tmp_path / "vault.toml"
    toml_file.write_text('user_password = "s3cret-pass"\n')
    yaml_file = tmp_path / "vault.yml"
    yaml_file.write_text("user_password: s3cret-pass\n")

    assert load_vault_file(toml_file) == {"user_password": "s3cret-pass"}
    assert load_vault_file(yaml_file) == {"user_password": "s3cret-pass"}


def test_load_vault_file_rejects_non_mapping(tmp_path: Path):
    vault = tmp_path / "vault.yml"
    vault.write_text("- just\n- a list\n")
    with pytest.raises(PlanValidationError):
        load_vault_file(vault)


def test_redactor_replaces_longest_secret_first():
    redactor = Redactor(["abc123", "abc123-extended"])
    text = redactor.redact("token=abc123-extended other=abc123")
    assert text == f"token={REDACTED} other={REDACTED}"


def test_redactor_masks_short_secrets():
    redactor = Redactor(["pw", "", None])
    assert redactor.redact("password is pw") == f"{REDACTED}ssword is {REDACTED}"


def test_redactor_walks_nested_values():
    redactor = Redactor([{"pw": "hunter22"}])
    value = redactor.redact_value({"stdout": "pw is hunter22", "lines": ["hunter22"], "rc": 0})
    assert value == {"stdout": f"pw is {REDACTED}", "lines": [REDACTED], "rc": 0}


def test_redacting_filter_scrubs_log_records(caplog):
    log = logging.getLogger("rigger_automation.tests.redaction")
    handler = caplog.handler
    handler.addFilter(RedactingFilter(Redactor(["hunter22"])))
    with caplog.at_level(logging.INFO):
        log.info("password=%s", "hunter22")
    assert "hunter22" not in caplog.text
    assert REDACTED in caplog.text
