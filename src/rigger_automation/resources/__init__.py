from .base import Resource
from .cron import CronResource
from .file import FileResource
from .firewall import FirewallResource
from .info import DebugResource, StatResource
from .lineinfile import LineInFileResource
from .package import PackageResource
from .service import ServiceResource
from .shell import CommandResource, ShellResource
from .wait import WaitForResource

RESOURCE_REGISTRY = {
    "file": FileResource,
    "lineinfile": LineInFileResource,
    "package": PackageResource,
    "service": ServiceResource,
    "firewall": FirewallResource,
    "shell": ShellResource,
    "command": CommandResource,
    "cron": CronResource,
    "stat": StatResource,
    "debug": DebugResource,
    "wait_for": WaitForResource,
}

__all__ = [
    "Resource",
    "FileResource",
    "LineInFileResource",
    "PackageResource",
    "ServiceResource",
    "FirewallResource",
    "ShellResource",
    "CommandResource",
    "CronResource",
    "StatResource",
    "DebugResource",
    "WaitForResource",
    "RESOURCE_REGISTRY",
]
