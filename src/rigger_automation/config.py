from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]


DEFAULT_CONFIG = Path("/etc/rigger/main.conf")
DEFAULT_PLAN = Path("/etc/rigger/plan.yml")
DEFAULT_FORKS = 5


@dataclass
class RiggerConfig:
    plan: Path = DEFAULT_PLAN
    inventory: Optional[Path] = None
    vault_file: Optional[Path] = None
    forks: int = DEFAULT_FORKS
    template_dir: Optional[Path] = None
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None
    plugin_dirs: list[Path] = field(default_factory=list)
    plugin_modules: list[str] = field(default_factory=list)


def load_config(path: Path) -> RiggerConfig:
    if not path.exists():
        return RiggerConfig()
    data = tomllib.loads(path.read_text())
    defaults = data.get("defaults", {})
    plan = Path(defaults.get("plan", DEFAULT_PLAN))
    inventory = defaults.get("inventory")
    vault_file = defaults.get("vault_file")
    template_dir = defaults.get("template_dir")
    aws_region = defaults.get("aws_region")
    aws_profile = defaults.get("aws_profile")
    forks = int(defaults.get("forks", DEFAULT_FORKS))
    if forks < 1:
        raise ValueError(f"{path}: forks must be at least 1")
    plugin_dirs = defaults.get("plugin_dirs", [])
    plugin_modules = defaults.get("plugin_modules", [])
    if isinstance(plugin_dirs, str):
        plugin_dirs = [plugin_dirs]
    if isinstance(plugin_modules, str):
        plugin_modules = [plugin_modules]
    return RiggerConfig(
        plan=plan,
        inventory=Path(inventory) if inventory else None,
        vault_file=Path(vault_file) if vault_file else None,
        forks=forks,
        template_dir=Path(template_dir) if template_dir else None,
        aws_region=str(aws_region) if aws_region else None,
        aws_profile=str(aws_profile) if aws_profile else None,
        plugin_dirs=[Path(p) for p in plugin_dirs],
        plugin_modules=[str(m) for m in plugin_modules],
    )
