"""模块导入冒烟测试"""

import importlib

import pytest


@pytest.mark.parametrize(
    "module",
    [
        "mynd.reminder.config",
        "mynd.reminder.logging_config",
        "mynd.reminder.exceptions",
        "mynd.reminder.models",
        "mynd.reminder.store",
        "mynd.reminder.timer",
        "mynd.reminder.dedup",
        "mynd.reminder.notification_port",
        "mynd.reminder.projection",
        "mynd.reminder.signals",
        "mynd.reminder.leveling",
        "mynd.reminder.admission",
        "mynd.reminder.recovery",
        "mynd.reminder.engine",
        "mynd.reminder.__main__",
    ],
)
def test_module_imports(module):
    assert importlib.import_module(module) is not None


def test_task_view_annotations_resolve():
    from mynd.reminder.projection import TaskView

    view = TaskView()
    assert view.list_tasks("owner-1") == []
    assert view.pending_predictions() == []
