"""Progress reporting for Python build scripts run by the agent.

A build script launched by the agent can describe its stages so the master
shows them live::

    from build_agent import script_channel

    script_channel.report_stages(["build", "test"])
    with script_channel.stage("build"):
        run_build()
    with script_channel.stage("test"):
        run_tests()

Outside the agent (no ``BUILD_AGENT_IPC_FD`` in the environment) every call is
a no-op, so the same script still runs by hand.
"""

import json
import os
from contextlib import contextmanager
from typing import Any

IPC_FD_ENV = "BUILD_AGENT_IPC_FD"


def _send(type: str, data: Any) -> bool:
    fd = os.environ.get(IPC_FD_ENV)
    if not fd:
        return False
    line = json.dumps({"type": type, "data": data}) + "\n"
    os.write(int(fd), line.encode("utf-8"))
    return True


def report_stages(names: list[str]) -> bool:
    return _send("stages", list(names))


def stage_start(name: str) -> bool:
    return _send("stage-start", name)


def stage_success(name: str) -> bool:
    return _send("stage-success", name)


def stage_failed(name: str) -> bool:
    return _send("stage-failed", name)


@contextmanager
def stage(name: str):
    """Report name as building, then success or failed depending on the block."""
    stage_start(name)
    try:
        yield
    except BaseException:
        stage_failed(name)
        raise
    stage_success(name)
