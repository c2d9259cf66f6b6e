"""Runs a job's build script and relays its self-reported stage progress."""

import asyncio
import json
import logging
import os
import sys
import time
from typing import Any

from build_agent.config import AgentConfig
from build_agent.errors import SetupError, SubprocessFailed
from build_agent.models.messages import ScriptMessageType
from build_agent.models.session import BuildSession, Job, Stage, StageStatus
from build_agent.script_channel import IPC_FD_ENV
from build_agent.services.events import SessionChannel
from build_agent.utils.process import MAX_LINE_BYTES, pump_lines, spawn_process, supervise

logger = logging.getLogger(__name__)

USERNAME_ENV = "CDJS_GIT_USERNAME"
PASSWORD_ENV = "CDJS_GIT_PASSWORD"

_TRANSITIONS = {
    ScriptMessageType.stage_start: StageStatus.building,
    ScriptMessageType.stage_success: StageStatus.success,
    ScriptMessageType.stage_failed: StageStatus.failed,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def script_command(job: Job, script_path: str) -> list[str]:
    """Pick the argv used to launch the build script."""
    if job.script_command:
        return list(job.script_command)
    ext = os.path.splitext(script_path)[1].lower()
    if ext == ".py":
        return [sys.executable, script_path]
    if ext in (".js", ".cjs", ".mjs"):
        return ["node", script_path]
    return [script_path]


def script_environment(job: Job, session_env: dict[str, Any] | None) -> dict[str, str]:
    """Process env, overlaid with the session env and credential variables."""
    env = dict(os.environ)
    for key, value in (session_env or {}).items():
        if value is not None:
            env[str(key)] = str(value)
    if job.credential is not None:
        if job.credential.username is not None:
            env[USERNAME_ENV] = job.credential.username
        if job.credential.password is not None:
            env[PASSWORD_ENV] = job.credential.password
    return env


class ScriptRunner:
    """Bridges a build-script subprocess to its session.

    The script reports progress as newline-delimited JSON ``{"type", "data"}``
    objects written to the file descriptor named by ``BUILD_AGENT_IPC_FD``.
    Every accepted stage change is applied to the session and the build record
    is re-sent to the master.
    """

    def __init__(self, config: AgentConfig) -> None:
        self._config = config

    async def run(
        self,
        session: BuildSession,
        build: dict[str, Any],
        job: Job,
        env: dict[str, Any] | None,
        channel: SessionChannel,
    ) -> None:
        workspace = session.workspace or ""
        script_path = os.path.join(workspace, job.cd_file_path)
        if not os.path.isfile(script_path):
            raise SetupError(f"{job.cd_file_path} does not exist!")

        channel.log(f"Executing {job.cd_file_path} file at: {script_path}", "info", "system")
        build["status"] = "building"
        channel.save_build(build)

        code = await self._execute(
            script_command(job, script_path),
            workspace,
            script_environment(job, env),
            session,
            build,
            channel,
        )
        if code != 0:
            raise SubprocessFailed(code)

    async def _execute(
        self,
        command: list[str],
        cwd: str,
        env: dict[str, str],
        session: BuildSession,
        build: dict[str, Any],
        channel: SessionChannel,
    ) -> int:
        read_fd, write_fd = os.pipe()
        env[IPC_FD_ENV] = str(write_fd)

        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=MAX_LINE_BYTES)
        transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader),
            os.fdopen(read_fd, "rb", buffering=0),
        )
        try:
            try:
                proc = await spawn_process(command, cwd=cwd, env=env, pass_fds=(write_fd,))
            finally:
                # Only the child may hold the write end, or EOF never arrives.
                os.close(write_fd)

            return await supervise(
                proc,
                [
                    pump_lines(proc.stdout, "info", channel.log_line),
                    pump_lines(proc.stderr, "error", channel.log_line),
                    self._read_messages(reader, session, build, channel),
                ],
                timeout=self._config.subprocess_timeout,
                kill_grace=self._config.kill_grace_period,
            )
        finally:
            transport.close()

    async def _read_messages(
        self,
        reader: asyncio.StreamReader,
        session: BuildSession,
        build: dict[str, Any],
        channel: SessionChannel,
    ) -> None:
        while True:
            try:
                raw = await reader.readline()
            except ValueError:
                logger.warning("Script message exceeded %d bytes, skipping", MAX_LINE_BYTES)
                continue
            if not raw:
                return
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("Ignoring undecodable script message: %r", raw[:200])
                continue
            if self.apply_message(session, build, message):
                channel.save_build(build)

    def apply_message(
        self, session: BuildSession, build: dict[str, Any], message: Any
    ) -> bool:
        """Apply one side-channel message; return True if the build record changed."""
        if not isinstance(message, dict):
            return False
        try:
            kind = ScriptMessageType(message.get("type"))
        except ValueError:
            logger.debug("Ignoring unknown script message type %r", message.get("type"))
            return False
        data = message.get("data")

        if kind is ScriptMessageType.stages:
            if not isinstance(data, list):
                return False
            # Known stages keep their status; a repeated report can only add.
            seen = {s.name for s in session.stages}
            added = 0
            for name in map(str, data):
                if name in seen:
                    logger.warning("Stage %r already reported, keeping it", name)
                    continue
                seen.add(name)
                session.stages.append(Stage(build=build.get("_id"), name=name))
                added += 1
            if not added:
                return False
        else:
            stage = next((s for s in session.stages if s.name == data), None)
            if stage is None:
                logger.debug("Ignoring %s for unknown stage %r", kind.value, data)
                return False
            target = _TRANSITIONS[kind]
            if not stage.can_move_to(target):
                logger.warning(
                    "Ignoring stage %r transition %s -> %s",
                    stage.name, stage.status.value, target.value,
                )
                return False
            stage.status = target
            if target is StageStatus.building:
                stage.start_at = _now_ms()
            else:
                stage.done_at = _now_ms()

        build["stages"] = [s.to_record() for s in session.stages]
        return True
