"""Tests for the sitectl CLI."""
from __future__ import annotations

import json
import signal
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from sitectl import __version__
from sitectl.cli import app
from sitectl.errors import FatalInterrupt
from sitectl.exit_codes import ExitCode
from sitectl.locking import LockManager
from sitectl.providers.compose import ComposeProvider
from sitectl.providers.database import DatabaseProvider
from sitectl.providers.provisioner import SiteProvisioner
from sitectl.state import DatabaseParams, Site, SiteRegistry, SiteType

runner = CliRunner()

_COMPOSE_METHODS = (
    "up",
    "down",
    "restart",
    "exec",
    "config_test",
    "remove_site_containers",
    "disconnect_network",
    "remove_network",
    "reload_proxy",
)


def _prepare_environment(
    tmp_path: Path,
    *,
    sites: list[Site] | None = None,
    config_overrides: dict[str, object] | None = None,
) -> tuple[dict[str, str], SiteRegistry]:
    config: dict[str, object] = {
        "sites_root": str(tmp_path / "sites"),
        "conf_root": str(tmp_path / "services"),
        "state_dir": str(tmp_path / "state"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "lock_timeout": 2,
        "acme": {"email": "ops@example.com"},
        "backups": {"root": str(tmp_path / "backups")},
    }
    if config_overrides:
        config.update(config_overrides)
    config_path = tmp_path / "sitectl.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")

    registry = SiteRegistry(tmp_path / "state" / "registry")
    for site in sites or []:
        registry.save(site)
    return {"SITECTL_CONFIG_FILE": str(config_path)}, registry


def _stub_compose(
    monkeypatch: pytest.MonkeyPatch,
    **results: object,
) -> list[tuple[str, tuple[object, ...]]]:
    """Replace every compose call with a recorder answering from *results*."""
    calls: list[tuple[str, tuple[object, ...]]] = []

    def make(name: str) -> Callable[..., bool]:
        def fake(self: ComposeProvider, *args: object, **kwargs: object) -> bool:
            calls.append((name, args))
            outcome = results.get(name, True)
            if isinstance(outcome, BaseException):
                raise outcome
            return bool(outcome)

        return fake

    for name in _COMPOSE_METHODS:
        monkeypatch.setattr(ComposeProvider, name, make(name))
    return calls


def _last_operation(tmp_path: Path) -> dict[str, object]:
    lines = (tmp_path / "logs" / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return json.loads(lines[-1])


def test_version_flag(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert f"sitectl {__version__}" in result.stdout


def test_config_show_json_redacts_password(tmp_path: Path) -> None:
    env, _ = _prepare_environment(
        tmp_path,
        config_overrides={"database": {"root_password": "hunter2"}},
    )

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    data = json.loads(result.stdout)
    assert data["sites_root"] == str(tmp_path / "sites")
    assert data["registry_dir"] == str(tmp_path / "state" / "registry")
    assert data["database"]["root_password"] == "***"
    assert "hunter2" not in result.stdout


def test_invalid_config_is_an_environment_error(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path, config_overrides={"colour": "blue"})

    result = runner.invoke(app, ["site", "list"], env=env)

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert "colour" in result.stdout


def test_list_without_sites(tmp_path: Path) -> None:
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["site", "list"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "No sites found!" in result.stdout


def test_list_formats_and_filters(tmp_path: Path, make_site: Callable[..., Site]) -> None:
    env, _ = _prepare_environment(
        tmp_path,
        sites=[
            make_site("a.example", with_files=False),
            make_site("b.example", with_files=False, enabled=False),
        ],
    )

    text = runner.invoke(app, ["site", "list", "--format", "text"], env=env)
    count = runner.invoke(app, ["site", "list", "--disabled", "--format", "count"], env=env)
    as_json = runner.invoke(app, ["site", "list", "--enabled", "--format", "json"], env=env)

    assert text.exit_code == 0
    assert text.stdout.split() == ["a.example", "b.example"]
    assert count.stdout.strip() == "1"
    assert json.loads(as_json.stdout) == [{"site": "a.example", "status": "enabled"}]


def test_enable_updates_registry(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    site = make_site(enabled=False)
    env, registry = _prepare_environment(tmp_path, sites=[site])
    calls = _stub_compose(monkeypatch)

    result = runner.invoke(app, ["site", "enable", "example.com"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Success" in result.stdout
    assert calls == [("up", (site.fs_path,))]
    record = registry.find("example.com")
    assert record is not None and record.enabled is True
    operation = _last_operation(tmp_path)
    assert operation["command"] == "site enable"
    assert operation["target"] == {"kind": "site", "name": "example.com"}


def test_enable_already_enabled_site(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    env, _ = _prepare_environment(tmp_path, sites=[make_site()])
    calls = _stub_compose(monkeypatch)

    result = runner.invoke(app, ["site", "enable", "example.com"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "already enabled" in result.stdout
    assert calls == []


def test_enable_failure_is_a_provider_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    env, registry = _prepare_environment(tmp_path, sites=[make_site(enabled=False)])
    _stub_compose(monkeypatch, up=False)

    result = runner.invoke(app, ["site", "enable", "example.com"], env=env)

    assert result.exit_code == ExitCode.PROVIDER
    record = registry.find("example.com")
    assert record is not None and record.enabled is False


def test_unknown_site(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env, _ = _prepare_environment(tmp_path)
    _stub_compose(monkeypatch)

    result = runner.invoke(app, ["site", "disable", "missing.example"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "does not exist" in result.stdout


def test_disable_resolves_site_from_working_directory(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    site = make_site()
    env, registry = _prepare_environment(tmp_path, sites=[site])
    calls = _stub_compose(monkeypatch)
    monkeypatch.chdir(site.content_dir)

    result = runner.invoke(app, ["site", "disable"], env=env)

    assert result.exit_code == 0, result.stdout
    assert calls == [("down", (site.fs_path,))]
    record = registry.find("example.com")
    assert record is not None and record.enabled is False


def test_delete_with_yes_removes_site(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    params = DatabaseParams(host="global-db", user="shop", password="pw", name="shopdb")
    site = make_site(database=params)
    env, registry = _prepare_environment(tmp_path, sites=[site])
    _stub_compose(monkeypatch)
    dropped: list[str] = []
    monkeypatch.setattr(
        DatabaseProvider,
        "drop_database",
        lambda self, p: dropped.append(f"db:{p.name}") or True,
    )
    monkeypatch.setattr(
        DatabaseProvider,
        "drop_user",
        lambda self, p: dropped.append(f"user:{p.user}") or True,
    )

    result = runner.invoke(app, ["site", "delete", "example.com", "--yes"], env=env)

    assert result.exit_code == 0, result.stdout
    assert dropped == ["db:shopdb", "user:shop"]
    assert not site.fs_path.exists()
    assert registry.find("example.com") is None


def test_delete_prompt_can_abort(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    site = make_site()
    env, registry = _prepare_environment(tmp_path, sites=[site])
    calls = _stub_compose(monkeypatch)

    result = runner.invoke(app, ["site", "delete", "example.com"], env=env, input="n\n")

    assert result.exit_code != 0
    assert calls == []
    assert site.fs_path.exists()
    assert registry.find("example.com") is not None


def test_fatal_interrupt_exits_with_interrupted_code(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    site = make_site(enabled=False)
    env, registry = _prepare_environment(tmp_path, sites=[site])
    _stub_compose(monkeypatch, up=FatalInterrupt(signal.SIGTERM))

    result = runner.invoke(app, ["site", "enable", "example.com"], env=env)

    assert result.exit_code == ExitCode.INTERRUPTED
    assert "SIGTERM" in result.stdout
    assert site.fs_path.exists()
    record = registry.find("example.com")
    assert record is not None and record.enabled is False


def test_lock_held_elsewhere_is_an_environment_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    env, _ = _prepare_environment(tmp_path, sites=[make_site(enabled=False)])
    calls = _stub_compose(monkeypatch)
    locks = LockManager(tmp_path / "run")

    with locks.site_lock("example.com"):
        result = runner.invoke(
            app,
            ["--lock-timeout", "0.1", "site", "enable", "example.com"],
            env=env,
        )

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert calls == []


def test_update_requires_type(tmp_path: Path, make_site: Callable[..., Site]) -> None:
    env, _ = _prepare_environment(tmp_path, sites=[make_site()])

    result = runner.invoke(app, ["site", "update", "example.com"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "Nothing to update" in result.stdout


def test_update_failure_restores_old_site(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    site = make_site(site_type=SiteType.HTML)
    env, _ = _prepare_environment(tmp_path, sites=[site])
    _stub_compose(monkeypatch)
    outcomes = [False, True]
    created: list[str] = []

    def fake_create(
        self: SiteProvisioner,
        url: str,
        site_type: SiteType,
        params: object = (),
    ) -> bool:
        created.append(site_type.value)
        return outcomes.pop(0)

    monkeypatch.setattr(SiteProvisioner, "create", fake_create)

    result = runner.invoke(app, ["site", "update", "example.com", "--type", "php"], env=env)

    assert result.exit_code == ExitCode.PROVIDER
    assert "restored" in result.stdout
    assert created == ["php", "html"]
    assert (site.content_dir / "index.html").exists()


def test_backup_reports_location(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    env, _ = _prepare_environment(tmp_path, sites=[make_site(site_type=SiteType.HTML)])
    _stub_compose(monkeypatch)
    location = tmp_path / "bk"

    result = runner.invoke(
        app,
        ["site", "backup", "example.com", "--location", str(location)],
        env=env,
    )

    assert result.exit_code == 0, result.stdout
    assert "Backup completed" in result.stdout
    assert (location / "files" / "index.html").exists()
    assert (tmp_path / "backups" / "backups.json").exists()


def test_restart_rejects_service_outside_whitelist(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    env, _ = _prepare_environment(tmp_path, sites=[make_site(site_type=SiteType.HTML)])
    calls = _stub_compose(monkeypatch)

    result = runner.invoke(app, ["site", "restart", "example.com", "--php"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert calls == []


def test_reload_selected_service(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    site = make_site(site_type=SiteType.PHP)
    env, _ = _prepare_environment(tmp_path, sites=[site])
    calls = _stub_compose(monkeypatch)

    result = runner.invoke(app, ["site", "reload", "example.com", "--php"], env=env)

    assert result.exit_code == 0, result.stdout
    assert calls == [("exec", (site.fs_path, "php", ("kill", "-USR2", "1")))]


def test_ssl_requires_type_for_site_without_ssl(
    tmp_path: Path,
    make_site: Callable[..., Site],
) -> None:
    env, _ = _prepare_environment(tmp_path, sites=[make_site()])

    result = runner.invoke(app, ["site", "ssl", "example.com"], env=env)

    assert result.exit_code == ExitCode.VALIDATION
    assert "--type" in result.stdout


def test_ssl_inherit_from_wildcard_parent(
    tmp_path: Path,
    make_site: Callable[..., Site],
) -> None:
    env, registry = _prepare_environment(
        tmp_path,
        sites=[
            make_site("example.com", with_files=False, ssl=True, ssl_wildcard=True),
            make_site("blog.example.com", with_files=False),
        ],
    )

    result = runner.invoke(
        app,
        ["site", "ssl", "blog.example.com", "--type", "inherit"],
        env=env,
    )

    assert result.exit_code == 0, result.stdout
    assert "inherited" in result.stdout
    record = registry.find("blog.example.com")
    assert record is not None and record.ssl is True


def test_ssl_inherit_without_wildcard_parent_fails(
    tmp_path: Path,
    make_site: Callable[..., Site],
) -> None:
    env, registry = _prepare_environment(
        tmp_path,
        sites=[
            make_site("example.com", with_files=False, ssl=True),
            make_site("blog.example.com", with_files=False),
        ],
    )

    result = runner.invoke(
        app,
        ["site", "ssl", "blog.example.com", "--type", "inherit"],
        env=env,
    )

    assert result.exit_code == ExitCode.VALIDATION
    assert "wildcard" in result.stdout
    record = registry.find("blog.example.com")
    assert record is not None and record.ssl is False


def test_unexpected_error_is_reported_as_one_line(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    env, registry = _prepare_environment(tmp_path, sites=[make_site(enabled=False)])
    _stub_compose(monkeypatch, up=RuntimeError("docker daemon exploded"))

    result = runner.invoke(app, ["site", "enable", "example.com"], env=env)

    assert result.exit_code == ExitCode.PROVIDER
    assert "Error:" in result.stdout
    assert "docker daemon exploded" in result.stdout
    assert not isinstance(result.exception, RuntimeError)
    record = registry.find("example.com")
    assert record is not None and record.enabled is False
    operation = _last_operation(tmp_path)
    assert operation["result"]["status"] == "error"  # type: ignore[index]


def test_backup_into_existing_location_keeps_other_files(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
) -> None:
    env, _ = _prepare_environment(tmp_path, sites=[make_site(site_type=SiteType.HTML)])
    _stub_compose(monkeypatch)
    location = tmp_path / "mybackups"
    earlier = location / "files" / "older-export.tar"
    earlier.parent.mkdir(parents=True)
    earlier.write_text("archive", encoding="utf-8")

    result = runner.invoke(
        app,
        ["site", "backup", "example.com", "--location", str(location)],
        env=env,
    )

    assert result.exit_code == 0, result.stdout
    assert earlier.read_text(encoding="utf-8") == "archive"
    assert (location / "files" / "index.html").exists()


@pytest.mark.mutation_timeout
def test_ssl_forced_renewal_after_initial_issuance(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    make_site: Callable[..., Site],
    issue_certificate: Callable[..., tuple[Path, Path]],
) -> None:
    env, registry = _prepare_environment(tmp_path, sites=[make_site(with_files=False)])
    _stub_compose(monkeypatch)
    seen: list[list[str]] = []

    class Completed:
        returncode = 0
        stdout = ""
        stderr = ""

    def fake_certbot(args: list[str], **kwargs: object) -> Completed:
        seen.append(list(args))
        if args[1] == "certonly":
            live = Path(args[args.index("--config-dir") + 1]) / "live" / "example.com"
            issue_certificate(
                live / "fullchain.pem",
                live / "privkey.pem",
                ["example.com", "www.example.com"],
            )
        return Completed()

    monkeypatch.setattr("sitectl.providers.acme.subprocess.run", fake_certbot)

    first = runner.invoke(app, ["site", "ssl", "example.com", "--type", "le"], env=env)
    second = runner.invoke(app, ["site", "ssl", "example.com", "--force"], env=env)

    assert first.exit_code == 0, first.stdout
    assert second.exit_code == 0, second.stdout
    assert "installed" in second.stdout
    requests = [command for command in seen if command[1] == "certonly"]
    assert len(requests) == 2
    assert "--force-renewal" in requests[1]
    record = registry.find("example.com")
    assert record is not None and record.ssl is True
    assert (tmp_path / "services" / "nginx" / "certs" / "example.com.crt").exists()
