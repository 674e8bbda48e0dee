from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union
import grp
import logging
import os
import pwd
import shlex
import shutil
import stat
import subprocess

from .errors import HostUnreachable
from .types import HostConfig

logger = logging.getLogger(__name__)

SSH_CONNECT_FAILED = 255


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


@dataclass
class PathInfo:
    exists: bool
    is_dir: bool = False
    is_link: bool = False
    mode: Optional[int] = None
    uid: Optional[int] = None
    gid: Optional[int] = None
    link_target: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        return {
            "exists": self.exists,
            "isdir": self.is_dir,
            "islnk": self.is_link,
            "mode": f"{self.mode:04o}" if self.mode is not None else None,
            "uid": self.uid,
            "gid": self.gid,
            "lnk_target": self.link_target,
        }


class Executor:
    """Base executor abstraction used by resources."""

    def __init__(self, host: HostConfig):
        self.host = host

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        raise NotImplementedError

    # File primitives -----------------------------------------------------
    def stat(self, path: Path) -> PathInfo:
        raise NotImplementedError

    def read_file(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def write_file(self, path: Path, content: str) -> None:
        raise NotImplementedError

    def make_directory(self, path: Path) -> None:
        raise NotImplementedError

    def remove_path(self, path: Path) -> bool:
        raise NotImplementedError

    def set_mode(self, path: Path, mode: int) -> None:
        raise NotImplementedError

    def set_ownership(self, path: Path, *, uid: Optional[int], gid: Optional[int]) -> None:
        raise NotImplementedError

    def symlink(self, target: str, path: Path) -> None:
        raise NotImplementedError

    def user_id(self, name: str) -> Optional[int]:
        raise NotImplementedError

    def group_id(self, name: str) -> Optional[int]:
        raise NotImplementedError

    def become(self, user: str = "root") -> "Executor":
        """An executor that runs as ``user`` through ``sudo``."""
        return BecomeExecutor(self, user)


class LocalExecutor(Executor):
    """Executor that acts directly on the local host."""

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        cmd_list = [str(part) for part in command]
        exec_env = None
        if env:
            exec_env = os.environ.copy()
            exec_env.update(env)

        proc = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            check=False,
            env=exec_env,
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
            input=input,
        )
        if check and proc.returncode != 0:
            raise subprocess.CalledProcessError(
                proc.returncode,
                cmd_list,
                proc.stdout,
                proc.stderr,
            )
        return CommandResult(cmd_list, proc.stdout, proc.stderr, proc.returncode)

    def stat(self, path: Path) -> PathInfo:
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return PathInfo(exists=False)
        is_link = stat.S_ISLNK(st.st_mode)
        return PathInfo(
            exists=True,
            is_dir=path.is_dir() if is_link else stat.S_ISDIR(st.st_mode),
            is_link=is_link,
            mode=stat.S_IMODE(st.st_mode),
            uid=st.st_uid,
            gid=st.st_gid,
            link_target=os.readlink(path) if is_link else None,
        )

    def read_file(self, path: Path) -> Optional[str]:
        try:
            return path.read_text()
        except (FileNotFoundError, IsADirectoryError):
            return None

    def write_file(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    def make_directory(self, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)

    def remove_path(self, path: Path) -> bool:
        if not path.exists() and not path.is_symlink():
            return False
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True

    def set_mode(self, path: Path, mode: int) -> None:
        os.chmod(path, mode)

    def set_ownership(self, path: Path, *, uid: Optional[int], gid: Optional[int]) -> None:
        os.lchown(path, -1 if uid is None else uid, -1 if gid is None else gid)

    def symlink(self, target: str, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(target, path)

    def user_id(self, name: str) -> Optional[int]:
        try:
            return pwd.getpwnam(name).pw_uid
        except KeyError:
            return None

    def group_id(self, name: str) -> Optional[int]:
        try:
            return grp.getgrnam(name).gr_gid
        except KeyError:
            return None

    def become(self, user: str = "root") -> Executor:
        try:
            current = pwd.getpwuid(os.geteuid()).pw_name
        except KeyError:
            current = None
        if current == user:
            return self
        return super().become(user)


class CommandExecutor(Executor):
    """Implements the file primitives with shell commands sent through ``run``."""

    def _sh(self, script: str, *, check: bool = True, input: Optional[str] = None) -> CommandResult:
        return self.run(["sh", "-c", script], check=check, input=input)

    def stat(self, path: Path) -> PathInfo:
        quoted = shlex.quote(str(path))
        script = (
            f"if [ -e {quoted} ] || [ -L {quoted} ]; then "
            f"stat -c '%F|%a|%u|%g' -- {quoted}; readlink -- {quoted} || true; "
            f"[ -d {quoted} ] && echo dir || echo nodir; "
            "else echo missing; fi"
        )
        lines = self._sh(script).stdout.splitlines()
        if not lines or lines[0] == "missing":
            return PathInfo(exists=False)
        kind, mode, uid, gid = lines[0].split("|")
        is_link = kind == "symbolic link"
        link_target = lines[1] if is_link and len(lines) > 2 else None
        return PathInfo(
            exists=True,
            is_dir=lines[-1] == "dir",
            is_link=is_link,
            mode=int(mode, 8),
            uid=int(uid),
            gid=int(gid),
            link_target=link_target,
        )

    def read_file(self, path: Path) -> Optional[str]:
        quoted = shlex.quote(str(path))
        result = self._sh(f"[ -f {quoted} ] || exit 3; cat -- {quoted}", check=False)
        if result.returncode == 3:
            return None
        if result.returncode != 0:
            raise subprocess.CalledProcessError(result.returncode, result.command, result.stdout, result.stderr)
        return result.stdout

    def write_file(self, path: Path, content: str) -> None:
        quoted = shlex.quote(str(path))
        parent = shlex.quote(str(path.parent))
        self._sh(f"mkdir -p {parent} && cat > {quoted}", input=content)

    def make_directory(self, path: Path) -> None:
        self.run(["mkdir", "-p", str(path)])

    def remove_path(self, path: Path) -> bool:
        if not self.stat(path).exists:
            return False
        self.run(["rm", "-rf", "--", str(path)])
        return True

    def set_mode(self, path: Path, mode: int) -> None:
        self.run(["chmod", f"{mode:04o}", str(path)])

    def set_ownership(self, path: Path, *, uid: Optional[int], gid: Optional[int]) -> None:
        owner = "" if uid is None else str(uid)
        if gid is not None:
            owner = f"{owner}:{gid}"
        self.run(["chown", "-h", owner, str(path)])

    def symlink(self, target: str, path: Path) -> None:
        self.run(["ln", "-sfn", target, str(path)])

    def user_id(self, name: str) -> Optional[int]:
        result = self.run(["id", "-u", name], check=False)
        return int(result.stdout.strip()) if result.returncode == 0 else None

    def group_id(self, name: str) -> Optional[int]:
        result = self.run(["getent", "group", name], check=False)
        if result.returncode != 0:
            return None
        return int(result.stdout.strip().split(":")[2])


class SshExecutor(CommandExecutor):
    """Executor that runs everything through the ``ssh`` client in batch mode."""

    def __init__(self, host: HostConfig, *, ssh_binary: str = "ssh", connect_timeout: int = 10):
        super().__init__(host)
        self.ssh_binary = ssh_binary
        self.connect_timeout = connect_timeout

    @property
    def destination(self) -> str:
        address = self.host.address or self.host.name
        return f"{self.host.user}@{address}" if self.host.user else address

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        cmd_list = [str(part) for part in command]
        remote = shlex.join(cmd_list)
        if env:
            assignments = " ".join(f"{k}={shlex.quote(v)}" for k, v in env.items())
            remote = f"env {assignments} {remote}"
        if cwd is not None:
            remote = f"cd {shlex.quote(str(cwd))} && {remote}"
        full_command = [
            self.ssh_binary,
            "-oBatchMode=yes",
            f"-oConnectTimeout={self.connect_timeout}",
        ]
        if self.host.port:
            full_command += ["-p", str(self.host.port)]
        full_command += [self.destination, remote]
        logger.debug("ssh host=%s command=%s", self.host.name, remote)

        proc = subprocess.run(
            full_command,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
            # ssh may wait for stdin even when the command needs none
            input=input if input is not None else "",
        )
        if proc.returncode == SSH_CONNECT_FAILED:
            raise HostUnreachable(self.host.name, proc.stderr.strip())
        if check and proc.returncode != 0:
            raise subprocess.CalledProcessError(proc.returncode, cmd_list, proc.stdout, proc.stderr)
        return CommandResult(cmd_list, proc.stdout, proc.stderr, proc.returncode)


class BecomeExecutor(CommandExecutor):
    """Wraps another executor and runs its commands as ``user`` via ``sudo -n``.

    ``sudo`` resets the environment, so variables are passed through ``env``
    after it. The working directory is entered before escalating.
    """

    def __init__(self, inner: Executor, user: str = "root", *, sudo: str = "sudo"):
        super().__init__(inner.host)
        self.inner = inner
        self.user = user
        self.sudo = sudo

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        cmd_list = [self.sudo, "-n", "-u", self.user, "--"]
        if env:
            cmd_list += ["env", *(f"{k}={v}" for k, v in env.items())]
        cmd_list += [str(part) for part in command]
        return self.inner.run(cmd_list, check=check, cwd=cwd, timeout=timeout, input=input)

    def become(self, user: str = "root") -> Executor:
        return self if user == self.user else self.inner.become(user)


def executor_for(host: HostConfig) -> Executor:
    if host.connection == "local":
        return LocalExecutor(host)
    if host.connection == "ssh":
        return SshExecutor(host)
    raise ValueError(f"Unknown connection type '{host.connection}'")
