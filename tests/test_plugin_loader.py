from pathlib import Path

import rigger_automation.resources as resources
from rigger_automation import cli
from rigger_automation.checker import ResourceChecker
from rigger_automation.cli import _load_plugins
from rigger_automation.config import RiggerConfig
from rigger_automation.resources.base import Resource

PLUGIN_SOURCE = """
from rigger_automation.resources.base import Resource
from rigger_automation.types import ActionResult, CheckResult


class {cls}(Resource):
    kind = "{kind}"

    def check(self, host, executor):
        return CheckResult(True, diff="noop")

    def apply(self, host, executor, drift):
        return ActionResult(details="noop")


def register_resources(registry):
    registry["{kind}"] = {cls}
"""


def test_plugin_dir_registration(monkeypatch, tmp_path: Path):
    plugin_dir = tmp_path / "mods"
    plugin_dir.mkdir()
    (plugin_dir / "custom_resource.py").write_text(PLUGIN_SOURCE.format(cls="CustomResource", kind="custom"))

    cfg = RiggerConfig(plugin_dirs=[plugin_dir])
    registry: dict = {}
    monkeypatch.setattr(resources, "RESOURCE_REGISTRY", registry)
    monkeypatch.setattr(cli, "RESOURCE_REGISTRY", registry)
    _load_plugins(cfg)

    assert "custom" in resources.RESOURCE_REGISTRY
    assert issubclass(resources.RESOURCE_REGISTRY["custom"], Resource)
    assert ResourceChecker().knows("custom")


def test_plugin_module_import(monkeypatch, tmp_path: Path):
    package = tmp_path / "myplugin"
    package.mkdir()
    (package / "__init__.py").write_text("")
    (package / "extra_resources.py").write_text(PLUGIN_SOURCE.format(cls="ExtraResource", kind="extra"))
    monkeypatch.syspath_prepend(str(tmp_path))

    cfg = RiggerConfig(plugin_modules=["myplugin.extra_resources"])
    registry: dict = {}
    monkeypatch.setattr(resources, "RESOURCE_REGISTRY", registry)
    monkeypatch.setattr(cli, "RESOURCE_REGISTRY", registry)

    _load_plugins(cfg)

    assert "extra" in resources.RESOURCE_REGISTRY


def test_missing_plugin_dir_is_skipped(tmp_path: Path, caplog):
    _load_plugins(RiggerConfig(plugin_dirs=[tmp_path / "absent"]))
    assert "does not exist" in caplog.text
