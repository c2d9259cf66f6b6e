"""Tests for the build-script bridge and its stage side channel."""

import sys
import textwrap
from unittest.mock import MagicMock

import pytest

from build_agent.errors import SetupError, SubprocessFailed, SubprocessTimeout
from build_agent.models.session import BuildSession, Job, Stage, StageStatus
from build_agent.services.script_runner import (
    ScriptRunner,
    script_command,
    script_environment,
)
from helpers import logs_of, sent

REPORTER = textwrap.dedent("""\
    import json, os, sys

    FD = int(os.environ["BUILD_AGENT_IPC_FD"])

    def send(type, data):
        os.write(FD, (json.dumps({"type": type, "data": data}) + "\\n").encode())
    """)


def write_script(workspace, body, name="cd.py"):
    path = workspace / name
    path.write_text(REPORTER + textwrap.dedent(body))
    return path


def make_job(**overrides):
    data = {"name": "demo", "repoUrl": "https://example.com/r.git", "cdFilePath": "cd.py"}
    data.update(overrides)
    return Job.model_validate(data)


def make_session(workspace):
    return BuildSession(id="b1", workspace=str(workspace))


def stage_statuses(build):
    return {s["name"]: s["status"] for s in build["stages"]}


class TestApplyMessage:
    def setup_method(self):
        self.runner = ScriptRunner(MagicMock())
        self.session = BuildSession(id="b1")
        self.build = {"_id": "build-1", "status": "pending"}

    def apply(self, type, data):
        return self.runner.apply_message(self.session, self.build, {"type": type, "data": data})

    def test_stages_created_pending(self):
        assert self.apply("stages", ["build", "test"]) is True
        assert [s.name for s in self.session.stages] == ["build", "test"]
        assert all(s.status is StageStatus.pending for s in self.session.stages)
        assert self.build["stages"][0] == {"build": "build-1", "name": "build", "status": "pending"}

    def test_duplicate_stage_names_collapsed(self):
        self.apply("stages", ["build", "build", "test"])
        assert [s.name for s in self.session.stages] == ["build", "test"]

    def test_repeated_stages_keep_finished_status(self):
        self.apply("stages", ["build"])
        self.apply("stage-start", "build")
        self.apply("stage-success", "build")
        done_at = self.session.stages[0].done_at

        assert self.apply("stages", ["build"]) is False
        assert self.session.stages[0].status is StageStatus.success
        assert self.session.stages[0].done_at == done_at
        assert self.build["stages"][0]["status"] == "success"

    def test_repeated_stages_append_new_names(self):
        self.apply("stages", ["build"])
        self.apply("stage-start", "build")
        assert self.apply("stages", ["build", "deploy"]) is True
        assert [(s.name, s.status) for s in self.session.stages] == [
            ("build", StageStatus.building), ("deploy", StageStatus.pending),
        ]
        assert [s["name"] for s in self.build["stages"]] == ["build", "deploy"]

    def test_start_records_time(self):
        self.apply("stages", ["build"])
        assert self.apply("stage-start", "build") is True
        stage = self.session.stages[0]
        assert stage.status is StageStatus.building
        assert stage.start_at is not None
        assert "startAt" in self.build["stages"][0]

    def test_success_records_done_time(self):
        self.apply("stages", ["build"])
        self.apply("stage-start", "build")
        assert self.apply("stage-success", "build") is True
        assert self.session.stages[0].status is StageStatus.success
        assert self.session.stages[0].done_at >= self.session.stages[0].start_at

    def test_cannot_skip_building(self):
        self.apply("stages", ["build"])
        assert self.apply("stage-success", "build") is False
        assert self.session.stages[0].status is StageStatus.pending

    def test_cannot_regress(self):
        self.apply("stages", ["build"])
        self.apply("stage-start", "build")
        self.apply("stage-failed", "build")
        assert self.apply("stage-start", "build") is False
        assert self.apply("stage-success", "build") is False
        assert self.session.stages[0].status is StageStatus.failed

    def test_unknown_stage_ignored(self):
        self.apply("stages", ["build"])
        assert self.apply("stage-start", "deploy") is False

    def test_unknown_type_ignored(self):
        assert self.apply("progress", 50) is False
        assert "stages" not in self.build

    def test_non_dict_ignored(self):
        assert self.runner.apply_message(self.session, self.build, ["stages"]) is False

    def test_bad_stage_list_ignored(self):
        assert self.apply("stages", "build") is False


class TestScriptCommand:
    def test_python_script_uses_current_interpreter(self):
        assert script_command(make_job(), "/ws/cd.py") == [sys.executable, "/ws/cd.py"]

    def test_js_script_uses_node(self):
        assert script_command(make_job(), "/ws/cd.js") == ["node", "/ws/cd.js"]

    def test_other_files_executed_directly(self):
        assert script_command(make_job(), "/ws/build.sh") == ["/ws/build.sh"]

    def test_explicit_command(self):
        job = make_job(scriptCommand=["make", "ci"])
        assert script_command(job, "/ws/cd.py") == ["make", "ci"]


class TestScriptEnvironment:
    def test_session_env_layered_over_process_env(self, monkeypatch):
        monkeypatch.setenv("FOO", "process")
        env = script_environment(make_job(), {"FOO": "session", "N": 3})
        assert env["FOO"] == "session"
        assert env["N"] == "3"

    def test_credential_variables(self):
        job = make_job(credential={"type": "username/password",
                                   "data": {"username": "u", "password": "p"}})
        env = script_environment(job, None)
        assert env["CDJS_GIT_USERNAME"] == "u"
        assert env["CDJS_GIT_PASSWORD"] == "p"

    def test_no_credential_variables_without_credential(self, monkeypatch):
        monkeypatch.delenv("CDJS_GIT_USERNAME", raising=False)
        env = script_environment(make_job(), {})
        assert "CDJS_GIT_USERNAME" not in env


class TestScriptRunnerRun:
    async def test_missing_script(self, config, channel, tmp_path):
        runner = ScriptRunner(config)
        with pytest.raises(SetupError) as exc_info:
            await runner.run(make_session(tmp_path), {}, make_job(), {}, channel.for_session("b1"))
        assert str(exc_info.value) == "cd.py does not exist!"
        assert sent(channel) == []

    async def test_partial_failure_keeps_stage_progress(self, config, channel, tmp_path):
        write_script(tmp_path, """\
            send("stages", ["build", "test"])
            send("stage-start", "build")
            print("compiling")
            send("stage-success", "build")
            send("stage-start", "test")
            print("\\x1b[31m1 failing\\x1b[0m", file=sys.stderr)
            send("stage-failed", "test")
            sys.exit(1)
            """)
        runner = ScriptRunner(config)
        session = make_session(tmp_path)
        build = {"_id": "build-1", "status": "pending"}

        with pytest.raises(SubprocessFailed) as exc_info:
            await runner.run(session, build, make_job(), {}, channel.for_session("b1"))

        assert exc_info.value.code == 1
        assert stage_statuses(build) == {"build": "success", "test": "failed"}
        events = sent(channel)
        saves = [data["build"] for t, data in events if t == "save-build"]
        assert saves[0]["status"] == "building"
        assert stage_statuses(saves[-1]) == {"build": "success", "test": "failed"}
        logs = logs_of(events)
        assert {"message": "compiling", "level": "info"} in logs
        assert {"message": "1 failing", "level": "error"} in logs

    async def test_success(self, config, channel, tmp_path):
        write_script(tmp_path, """\
            send("stages", ["build"])
            send("stage-start", "build")
            send("stage-success", "build")
            """)
        runner = ScriptRunner(config)
        session = make_session(tmp_path)
        build = {"_id": "build-1"}

        await runner.run(session, build, make_job(), {}, channel.for_session("b1"))

        assert build["status"] == "building"
        assert session.stages == [
            Stage(build="build-1", name="build", status=StageStatus.success,
                  startAt=session.stages[0].start_at, doneAt=session.stages[0].done_at)
        ]

    async def test_session_env_and_cwd_visible_to_script(self, config, channel, tmp_path):
        write_script(tmp_path, """\
            print(os.environ["FOO"], os.getcwd())
            """)
        runner = ScriptRunner(config)
        await runner.run(make_session(tmp_path), {}, make_job(), {"FOO": "bar"},
                         channel.for_session("b1"))
        messages = [log["message"] for log in logs_of(sent(channel))]
        assert f"bar {tmp_path.resolve()}" in messages

    async def test_garbage_on_side_channel_ignored(self, config, channel, tmp_path):
        write_script(tmp_path, """\
            os.write(FD, b"not json\\n")
            send("telemetry", {"cpu": 1})
            send("stages", ["only"])
            """)
        runner = ScriptRunner(config)
        build = {}
        await runner.run(make_session(tmp_path), build, make_job(), {}, channel.for_session("b1"))
        assert stage_statuses(build) == {"only": "pending"}

    async def test_timeout(self, config, channel, tmp_path):
        write_script(tmp_path, """\
            import time
            time.sleep(30)
            """)
        runner = ScriptRunner(config.model_copy(update={"subprocess_timeout": 0.5}))
        with pytest.raises(SubprocessTimeout):
            await runner.run(make_session(tmp_path), {}, make_job(), {}, channel.for_session("b1"))
