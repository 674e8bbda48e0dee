from pathlib import Path

import pytest

from rigger_automation.inventory import InventoryLoader
from rigger_automation.loader import PlanLoader

EXAMPLES = Path(__file__).resolve().parent.parent / "examples"


@pytest.mark.parametrize("playbook", ["laravel-sail-prepare.yml", "laravel-sail-launch.yml"])
def test_example_playbooks_load(playbook):
    inventory = InventoryLoader().load(EXAMPLES / "inventory.toml")
    plan = PlanLoader().load(EXAMPLES / playbook, inventory=inventory)

    [play] = plan.plays
    assert play.become is True
    assert set(plan.hosts) == {"web1", "web2"}
    assert all(task.become for task in play.tasks)


def test_prepare_runs_project_steps_as_the_app_user():
    inventory = InventoryLoader().load(EXAMPLES / "inventory.toml")
    plan = PlanLoader().load(EXAMPLES / "laravel-sail-prepare.yml", inventory=inventory)
    tasks = {task.name: task for task in plan.plays[0].tasks}

    assert tasks["Install Composer dependencies"].become_user == "{{ create_user }}"
    assert tasks["Add PHP repository"].become_user is None
    assert tasks["Clone Laravel repository"].params["creates"] == "{{ project_dir }}/.git"
    assert str(tasks["Alternative Git clone method"].when) == "git_clone_result is failed"
