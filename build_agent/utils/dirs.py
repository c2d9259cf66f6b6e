"""Maps a job's identity to its local workspace directory."""

import hashlib
import os
import re

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_name(value: str) -> str:
    cleaned = _UNSAFE.sub("-", value).strip("-.")
    return cleaned or "job"


def get_workspace_dir(root: str, job_name: str, repo_url: str) -> str:
    """Return the workspace path for a job.

    The same job name and repository always resolve to the same directory so
    later builds reuse the existing clone. The repository URL is hashed so two
    jobs sharing a name but pointing at different repos never collide, and so
    credentials embedded in the URL never end up in a path.
    """
    digest = hashlib.sha1(repo_url.encode("utf-8")).hexdigest()[:10]
    return os.path.join(os.path.abspath(root), _safe_name(job_name), digest)


def get_build_dir(workspace: str, build_key: object) -> str:
    """Per-build sibling of workspace, used while another build holds it."""
    return f"{workspace}-build-{_safe_name(str(build_key))}"
