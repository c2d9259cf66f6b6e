"""The fixed pipeline operations: prepare, clone, checkout, install."""

import asyncio
import os

from build_agent.config import AgentConfig
from build_agent.errors import SetupError, SubprocessFailed
from build_agent.models.session import Job
from build_agent.services.events import SessionChannel
from build_agent.services.git_service import GitService, inject_credential, redact_url
from build_agent.utils.dirs import get_build_dir, get_workspace_dir
from build_agent.utils.process import run_streaming

SYSTEM = "system"


class PipelineOperations:
    """Runs each pipeline step for a session against its workspace.

    Builds of one job share a workspace so the clone is reused, but never at
    the same time: while one session holds it, another gets a per-build
    directory of its own.
    """

    def __init__(self, config: AgentConfig, git: GitService | None = None) -> None:
        self._config = config
        self._git = git or GitService()
        self._holders: dict[str, str] = {}

    def resolve_workspace(self, job: Job) -> str:
        return get_workspace_dir(self._config.workspace_root, job.name or job.slug, job.repo_url)

    def claim_workspace(self, session_id: str, job: Job, build_key: object = None) -> str:
        """Reserve a workspace for session_id and return its path."""
        base = self.resolve_workspace(job)
        candidates = [base, get_build_dir(base, session_id)]
        if build_key is not None:
            candidates.insert(1, get_build_dir(base, build_key))
        path = next(p for p in candidates if self._holders.get(p, session_id) == session_id)
        self._holders[path] = session_id
        return path

    def release_workspace(self, session_id: str) -> None:
        for path in [p for p, s in self._holders.items() if s == session_id]:
            del self._holders[path]

    async def prepare_workspace(self, path: str) -> str:
        """Create path (and parents) if absent; existing directories are fine."""
        try:
            await asyncio.to_thread(os.makedirs, path, exist_ok=True)
        except OSError as e:
            raise SetupError(f"Cannot create workspace {path}: {e.strerror}") from e
        return path

    async def clone(self, job: Job, workspace: str, channel: SessionChannel) -> bool:
        if self._git.has_repo(workspace):
            channel.log("Repository already cloned, skipping clone", "info", SYSTEM)
            return False

        shown = redact_url(inject_credential(job.repo_url, job.credential))
        channel.log(f"Cloning repo at url: {shown}", "info", SYSTEM)
        return await asyncio.to_thread(
            self._git.clone, job.repo_url, workspace, job.credential
        )

    async def checkout(self, job: Job, workspace: str, channel: SessionChannel) -> None:
        channel.log(f"Pull code and checkout to branch: {job.branch}", "info", SYSTEM)
        await asyncio.to_thread(self._git.checkout, workspace, job.branch, job.credential)

    async def install_dependencies(
        self, job: Job, workspace: str, channel: SessionChannel
    ) -> None:
        command = job.install_command or self._config.install_command
        channel.log(f"Running {command}...", "info", SYSTEM)

        code = await run_streaming(
            command,
            cwd=workspace,
            on_line=channel.log_line,
            shell=True,
            timeout=self._config.subprocess_timeout,
            kill_grace=self._config.kill_grace_period,
        )
        if code != 0:
            raise SubprocessFailed(code)
