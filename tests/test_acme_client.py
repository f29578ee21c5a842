"""Tests for the certbot-backed certificate authority client."""
from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from sitectl.errors import OperationalFailure, ProviderError
from sitectl.providers.acme import CertbotClient


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _client(tmp_path: Path, **overrides: Any) -> CertbotClient:
    options: dict[str, Any] = {
        "url": "example.com",
        "acme_dir": tmp_path / "acme-conf",
        "certs_dir": tmp_path / "certs",
        "webroot": tmp_path / "html",
    }
    options.update(overrides)
    return CertbotClient(**options)


def test_register_treats_existing_account_as_success(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    seen: list[list[str]] = []

    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        seen.append(list(args))
        return DummyResult(returncode=1, stderr="There is an existing account; registration skipped")

    monkeypatch.setattr("sitectl.providers.acme.subprocess.run", fake_run)
    client = _client(tmp_path, staging=True)

    assert client.register("ops@example.com") is True

    command = seen[0]
    assert command[:2] == ["certbot", "register"]
    assert "--non-interactive" in command
    assert command[command.index("--config-dir") + 1] == str(client.config_dir)
    assert command[-1] == "--staging"


def test_register_failure(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        "sitectl.providers.acme.subprocess.run",
        lambda *args, **kwargs: DummyResult(returncode=1, stderr="rate limited"),
    )

    assert _client(tmp_path).register("ops@example.com") is False


def test_missing_certbot_is_a_provider_error(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    def not_found(*_args: object, **_kwargs: object) -> None:
        raise FileNotFoundError("certbot")

    monkeypatch.setattr("sitectl.providers.acme.subprocess.run", not_found)

    with pytest.raises(ProviderError, match="certbot"):
        _client(tmp_path).register("ops@example.com")


def test_authorize_records_http_challenge(tmp_path: Path) -> None:
    client = _client(tmp_path)

    assert client.authorize(["example.com", "www.example.com"], wildcard=False) is True

    record = json.loads(client.authorization_path.read_text(encoding="utf-8"))
    assert record["challenge"] == "http-01"
    assert record["status"] == "ready"
    assert client.challenge_dir.is_dir()


def test_check_marks_matching_authorization_valid(tmp_path: Path) -> None:
    client = _client(tmp_path)
    client.authorize(["example.com", "www.example.com"], wildcard=False)

    client.check(["www.example.com", "example.com"], wildcard=False)

    record = json.loads(client.authorization_path.read_text(encoding="utf-8"))
    assert record["status"] == "valid"


def test_check_without_authorization(tmp_path: Path) -> None:
    with pytest.raises(OperationalFailure, match="No pending authorization"):
        _client(tmp_path).check(["example.com"], wildcard=False)


def test_check_rejects_domain_mismatch(tmp_path: Path) -> None:
    client = _client(tmp_path)
    client.authorize(["example.com", "www.example.com"], wildcard=False)

    with pytest.raises(OperationalFailure, match="expected"):
        client.check(["example.com", "*.example.com"], wildcard=False)


def test_wildcard_check_needs_dns_hook(tmp_path: Path) -> None:
    client = _client(tmp_path)
    client.authorize(["example.com", "*.example.com"], wildcard=True)

    with pytest.raises(OperationalFailure, match="dns_auth_hook"):
        client.check(["example.com", "*.example.com"], wildcard=True)

    hooked = _client(tmp_path, dns_auth_hook="/usr/local/bin/dns-hook")
    hooked.check(["example.com", "*.example.com"], wildcard=True)


def test_request_skips_current_certificate(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    issue_certificate: Callable[..., tuple[Path, Path]],
) -> None:
    client = _client(tmp_path)
    material = client.material
    issue_certificate(material.certificate, material.key, ["example.com", "www.example.com"],
                      valid_days=80)
    invoked: list[object] = []
    monkeypatch.setattr(
        "sitectl.providers.acme.subprocess.run",
        lambda *args, **kwargs: invoked.append(args) or DummyResult(),
    )

    assert client.request("example.com", ["www.example.com"], "ops@example.com") is False
    assert invoked == []


def _fake_certbot(
    client: CertbotClient,
    issue_certificate: Callable[..., tuple[Path, Path]],
    seen: list[list[str]],
) -> Callable[..., DummyResult]:
    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        seen.append(list(args))
        live = client.config_dir / "live" / client.url
        issue_certificate(
            live / "fullchain.pem",
            live / "privkey.pem",
            ["example.com", "www.example.com"],
        )
        return DummyResult()

    return fake_run


@pytest.mark.mutation_timeout
def test_request_issues_and_installs_material(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    issue_certificate: Callable[..., tuple[Path, Path]],
) -> None:
    client = _client(tmp_path)
    client.authorize(["example.com", "www.example.com"], wildcard=False)
    seen: list[list[str]] = []
    monkeypatch.setattr(
        "sitectl.providers.acme.subprocess.run",
        _fake_certbot(client, issue_certificate, seen),
    )

    assert client.request("example.com", ["www.example.com"], "ops@example.com") is True

    command = seen[0]
    assert command[1] == "certonly"
    assert command[command.index("--cert-name") + 1] == "example.com"
    assert [command[i + 1] for i, arg in enumerate(command) if arg == "-d"] == [
        "example.com",
        "www.example.com",
    ]
    assert "--webroot" in command
    assert "--force-renewal" not in command
    material = client.material
    assert material.exists()
    assert material.key.stat().st_mode & 0o777 == 0o600
    assert material.certificate.stat().st_mode & 0o777 == 0o644


def test_forced_wildcard_request_uses_dns_hook(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    issue_certificate: Callable[..., tuple[Path, Path]],
) -> None:
    client = _client(tmp_path, dns_auth_hook="/usr/local/bin/dns-hook")
    client.authorize(["example.com", "*.example.com"], wildcard=True)
    seen: list[list[str]] = []
    monkeypatch.setattr(
        "sitectl.providers.acme.subprocess.run",
        _fake_certbot(client, issue_certificate, seen),
    )

    client.request("example.com", ["*.example.com"], "ops@example.com", force=True)

    command = seen[0]
    assert command[command.index("--manual-auth-hook") + 1] == "/usr/local/bin/dns-hook"
    assert "--force-renewal" in command
    assert "--webroot" not in command


def test_failed_request_raises(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        "sitectl.providers.acme.subprocess.run",
        lambda *args, **kwargs: DummyResult(returncode=1, stderr="challenge failed"),
    )

    with pytest.raises(OperationalFailure, match="challenge failed"):
        _client(tmp_path).request("example.com", ["www.example.com"], "ops@example.com")


def test_cleanup_removes_challenge_artifacts_but_keeps_authorization(tmp_path: Path) -> None:
    client = _client(tmp_path)
    client.authorize(["example.com", "www.example.com"], wildcard=False)
    token = client.challenge_dir / "token"
    token.write_text("proof", encoding="utf-8")
    client.work_dir.mkdir(parents=True)

    client.cleanup()

    assert client.authorization_path.exists()
    assert not client.work_dir.exists()
    assert not token.exists()
    assert client.config_dir in client.artifacts()


@pytest.mark.mutation_timeout
def test_forced_renewal_after_cleanup(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    issue_certificate: Callable[..., tuple[Path, Path]],
) -> None:
    domains = ["example.com", "www.example.com"]
    client = _client(tmp_path)
    client.authorize(domains, wildcard=False)
    seen: list[list[str]] = []
    monkeypatch.setattr(
        "sitectl.providers.acme.subprocess.run",
        _fake_certbot(client, issue_certificate, seen),
    )
    client.check(domains, wildcard=False)
    assert client.request("example.com", ["www.example.com"], "ops@example.com") is True
    client.cleanup()

    client.check(domains, wildcard=False)
    assert client.request("example.com", ["www.example.com"], "ops@example.com", force=True)

    assert len(seen) == 2
    assert "--force-renewal" in seen[1]
    assert "--webroot" in seen[1]
