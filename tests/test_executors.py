import os
import pwd
import subprocess
from pathlib import Path

import pytest

from rigger_automation.errors import HostUnreachable
from rigger_automation.executors import BecomeExecutor, LocalExecutor, SshExecutor, executor_for
from rigger_automation.types import HostConfig


class FakeSsh:
    """Stands in for ``subprocess.run``; replies are (rc, stdout, stderr) in call order."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def __call__(self, command, **kwargs):
        self.calls.append((command, kwargs))
        rc, stdout, stderr = self.replies.pop(0) if self.replies else (0, "", "")
        return subprocess.CompletedProcess(command, rc, stdout, stderr)

    @property
    def remote(self) -> str:
        return self.calls[-1][0][-1]


@pytest.fixture
def fake_ssh(monkeypatch):
    def install(*replies):
        fake = FakeSsh(*replies)
        monkeypatch.setattr(subprocess, "run", fake)
        return fake

    return install


def ssh_host(**kwargs) -> SshExecutor:
    return SshExecutor(HostConfig(name="web1", connection="ssh", address="203.0.113.10", user="ubuntu", **kwargs))


def test_remote_command_quotes_env_and_cwd(fake_ssh):
    fake = fake_ssh((0, "ok\n", ""))
    executor = ssh_host(port=2222)

    result = executor.run(["echo", "a b"], env={"GREETING": "hi there"}, cwd="/srv/my app")

    command, kwargs = fake.calls[0]
    assert command[:3] == ["ssh", "-oBatchMode=yes", "-oConnectTimeout=10"]
    assert command[3:6] == ["-p", "2222", "ubuntu@203.0.113.10"]
    assert fake.remote == "cd '/srv/my app' && env GREETING='hi there' echo 'a b'"
    assert kwargs["input"] == ""
    assert result.stdout == "ok\n"
    assert result.command == ["echo", "a b"]


def test_connect_failure_is_unreachable(fake_ssh):
    fake_ssh((255, "", "ssh: connect to host 203.0.113.10 port 22: No route to host\n"))
    with pytest.raises(HostUnreachable) as excinfo:
        ssh_host().run(["true"], check=False)
    assert excinfo.value.host == "web1"
    assert "No route to host" in str(excinfo.value)


def test_nonzero_exit_raises_only_when_checked(fake_ssh):
    fake_ssh((1, "", "nope"), (1, "", "nope"))
    executor = ssh_host()
    with pytest.raises(subprocess.CalledProcessError):
        executor.run(["false"])
    assert executor.run(["false"], check=False).returncode == 1


def test_stat_parses_links_and_directories(fake_ssh):
    fake_ssh(
        (0, "symbolic link|777|0|0\n/etc/nginx/sites-available/app\nnodir\n", ""),
        (0, "directory|755|1000|1000\ndir\n", ""),
        (0, "missing\n", ""),
    )
    executor = ssh_host()

    link = executor.stat(Path("/etc/nginx/sites-enabled/app"))
    directory = executor.stat(Path("/home/admin/app"))
    missing = executor.stat(Path("/nowhere"))

    assert link.is_link and not link.is_dir
    assert link.link_target == "/etc/nginx/sites-available/app"
    assert link.mode == 0o777
    assert directory.is_dir and not directory.is_link
    assert directory.link_target is None
    assert (directory.mode, directory.uid, directory.gid) == (0o755, 1000, 1000)
    assert missing.exists is False


def test_read_file_maps_missing_to_none(fake_ssh):
    fake_ssh((3, "", ""), (0, "APP_ENV=production\n", ""), (1, "", "Permission denied"))
    executor = ssh_host()

    assert executor.read_file(Path("/srv/app/.env")) is None
    assert executor.read_file(Path("/srv/app/.env")) == "APP_ENV=production\n"
    with pytest.raises(subprocess.CalledProcessError):
        executor.read_file(Path("/root/.env"))


def test_write_file_sends_content_on_stdin(fake_ssh):
    fake = fake_ssh()
    ssh_host().write_file(Path("/etc/my app/motd"), "hello\n")

    assert fake.calls[0][1]["input"] == "hello\n"
    assert fake.remote == "sh -c 'mkdir -p '\"'\"'/etc/my app'\"'\"' && cat > '\"'\"'/etc/my app/motd'\"'\"''"


def test_user_and_group_ids(fake_ssh):
    fake_ssh((0, "1000\n", ""), (1, "", ""), (0, "www-data:x:33:\n", ""), (2, "", ""))
    executor = ssh_host()

    assert executor.user_id("admin") == 1000
    assert executor.user_id("ghost") is None
    assert executor.group_id("www-data") == 33
    assert executor.group_id("ghost") is None


def test_executor_for_connection_types():
    assert isinstance(executor_for(HostConfig(name="local")), LocalExecutor)
    assert isinstance(executor_for(HostConfig(name="web1", connection="ssh")), SshExecutor)
    with pytest.raises(ValueError):
        executor_for(HostConfig(name="win", connection="winrm"))


def test_become_wraps_commands_in_sudo(scripted):
    executor = BecomeExecutor(scripted, "deploy")
    executor.run(["php", "artisan", "migrate"], env={"HOME": "/home/deploy"}, cwd="/srv/app")

    assert scripted.ran("sudo") == [
        ["sudo", "-n", "-u", "deploy", "--", "env", "HOME=/home/deploy", "php", "artisan", "migrate"]
    ]


def test_become_reads_files_through_commands(scripted):
    scripted.on("sudo", "-n", "-u", "root", "--", "sh", "-c", stdout="secret config\n")
    executor = BecomeExecutor(scripted)

    assert executor.read_file(Path("/etc/shadow-app.conf")) == "secret config\n"
    assert scripted.ran("sudo", "-n", "-u", "root", "--", "sh", "-c")


def test_local_become_is_a_noop_for_the_current_user():
    executor = LocalExecutor(HostConfig(name="local"))
    current = pwd.getpwuid(os.geteuid()).pw_name

    assert executor.become(current) is executor
    other = executor.become("rigger-nobody")
    assert isinstance(other, BecomeExecutor)
    assert other.inner is executor
    assert other.become("rigger-nobody") is other
