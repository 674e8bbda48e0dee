from pathlib import Path

import pytest

from rigger_automation.executors import LocalExecutor
from rigger_automation.resources.file import FileResource
from rigger_automation.types import HostConfig


def run_resource(resource: FileResource, executor: LocalExecutor, host: HostConfig):
    drift = resource.check(host, executor)
    if drift.matches:
        return drift, None
    return drift, resource.apply(host, executor, drift)


def test_file_created_then_unchanged(tmp_path: Path):
    host = HostConfig(name="local")
    executor = LocalExecutor(host)
    target = tmp_path / "X"

    drift, action = run_resource(FileResource({"path": str(target), "content": "hi"}), executor, host)
    assert drift.matches is False
    assert drift.diff == "created"
    assert action.details == "created"
    assert target.read_text() == "hi"

    drift, action = run_resource(FileResource({"path": str(target), "content": "hi"}), executor, host)
    assert drift.matches is True
    assert action is None


def test_file_content_and_mode_drift(tmp_path: Path):
    host = HostConfig(name="local")
    executor = LocalExecutor(host)
    target = tmp_path / "app.conf"
    target.write_text("old")
    target.chmod(0o600)

    resource = FileResource({"path": str(target), "content": "new", "mode": "0644"})
    drift, _ = run_resource(resource, executor, host)

    assert drift.diff == "content, mode->0644"
    assert target.read_text() == "new"
    assert target.stat().st_mode & 0o777 == 0o644


def test_mode_given_without_leading_zero_is_octal(tmp_path: Path):
    resource = FileResource({"path": str(tmp_path / "f"), "mode": "755"})
    assert resource.mode == 0o755


def test_file_absent_removes_once(tmp_path: Path):
    host = HostConfig(name="local")
    executor = LocalExecutor(host)
    target = tmp_path / "stale"
    target.write_text("x")

    drift, action = run_resource(FileResource({"path": str(target), "state": "absent"}), executor, host)
    assert drift.diff == "remove"
    assert action.details == "removed"
    assert not target.exists()

    drift, _ = run_resource(FileResource({"path": str(target), "state": "absent"}), executor, host)
    assert drift.matches is True


def test_directory_state(tmp_path: Path):
    host = HostConfig(name="local")
    executor = LocalExecutor(host)
    target = tmp_path / "releases" / "current"

    drift, _ = run_resource(FileResource({"path": str(target), "state": "directory"}), executor, host)
    assert drift.diff == "created"
    assert target.is_dir()
    assert FileResource({"path": str(target), "state": "directory"}).check(host, executor).matches


def test_link_state(tmp_path: Path):
    host = HostConfig(name="local")
    executor = LocalExecutor(host)
    source = tmp_path / "sites-available" / "app"
    source.parent.mkdir()
    source.write_text("server {}")
    link = tmp_path / "sites-enabled" / "app"

    spec = {"path": str(link), "src": str(source), "state": "link"}
    drift, _ = run_resource(FileResource(spec), executor, host)
    assert drift.diff == f"link->{source}"
    assert link.is_symlink()
    assert FileResource(spec).check(host, executor).matches


def test_template_is_rendered_from_plan_dir(tmp_path: Path):
    host = HostConfig(name="local")
    executor = LocalExecutor(host)
    (tmp_path / "templates").mkdir()
    (tmp_path / "templates" / "site.conf.j2").write_text("server_name {{ domain }};\n")
    target = tmp_path / "out" / "site.conf"

    spec = {
        "path": str(target),
        "template": "templates/site.conf.j2",
        "_plan_dir": str(tmp_path),
        "_render": lambda text: text.replace("{{ domain }}", "example.com"),
    }
    run_resource(FileResource(spec), executor, host)

    assert target.read_text() == "server_name example.com;\n"
    assert FileResource(spec).check(host, executor).matches


def test_copy_from_control_machine(tmp_path: Path):
    host = HostConfig(name="local")
    executor = LocalExecutor(host)
    (tmp_path / "files").mkdir()
    (tmp_path / "files" / "motd").write_text("welcome\n")
    target = tmp_path / "etc" / "motd"

    spec = {"dest": str(target), "src": "files/motd", "remote_src": False, "_plan_dir": str(tmp_path)}
    drift, _ = run_resource(FileResource(spec), executor, host)

    assert drift.diff == "created"
    assert target.read_text() == "welcome\n"


def test_invalid_state_is_rejected(tmp_path: Path):
    with pytest.raises(ValueError):
        FileResource({"path": str(tmp_path / "x"), "state": "touched"})
    with pytest.raises(ValueError):
        FileResource({"state": "present"})
