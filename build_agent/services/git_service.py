"""Manages Git operations for build workspaces."""

import logging
import os
import re
from urllib.parse import quote, urlsplit, urlunsplit

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from build_agent.errors import VcsError
from build_agent.models.session import Credential

logger = logging.getLogger(__name__)

USERNAME_PASSWORD = "username/password"
REDACTED = "***"
# Shorter secrets are only masked inside URLs.
MIN_SECRET_LENGTH = 4
REMOTE_REFSPEC = "+refs/heads/*:refs/remotes/origin/*"

_URL_USERINFO = re.compile(r"(?P<scheme>\b[A-Za-z][A-Za-z0-9+.-]*://)[^/\s@]+@")


def inject_credential(repo_url: str, credential: Credential | None) -> str:
    """Return repo_url with the credential placed in its authority component."""
    if credential is None or credential.type != USERNAME_PASSWORD:
        return repo_url
    if not credential.username:
        return repo_url

    parts = urlsplit(repo_url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    auth = quote(credential.username, safe="")
    if credential.password:
        auth += ":" + quote(credential.password, safe="")
    return urlunsplit(parts._replace(netloc=f"{auth}@{host}"))


def redact_url(url: str) -> str:
    """Mask the whole userinfo part of every URL in url."""
    return _URL_USERINFO.sub(rf"\g<scheme>{REDACTED}@", url)


def scrub(text: str, credential: Credential | None) -> str:
    """Remove credentials from free-form text such as git stderr."""
    text = redact_url(text)
    if credential is None:
        return text
    for value in (credential.username, credential.password):
        for secret in {value or "", quote(value or "", safe="")}:
            if len(secret) >= MIN_SECRET_LENGTH:
                text = text.replace(secret, REDACTED)
    return text


class GitService:
    """Handles clone, fetch and checkout for a workspace.

    Credentials are only ever passed on the command line for a single
    clone or fetch; the remote URL stored in the workspace stays plain.
    """

    def has_repo(self, path: str) -> bool:
        return os.path.isdir(os.path.join(path, ".git"))

    def clone(self, repo_url: str, path: str, credential: Credential | None = None) -> bool:
        """Clone repo_url into path unless a repository is already there.

        Returns True if a clone was performed, False if it was skipped.
        """
        if self.has_repo(path):
            logger.debug("Repository already present at %s, skipping clone", path)
            return False

        url = inject_credential(repo_url, credential)
        try:
            repo = Repo.clone_from(url, path)
            if url != repo_url:
                repo.remotes.origin.set_url(repo_url)
        except GitCommandError as e:
            raise VcsError(scrub(f"Clone failed: {e}", credential)) from None
        return True

    def checkout(self, path: str, branch: str, credential: Credential | None = None) -> None:
        """Fetch origin, switch to branch and fast-forward it."""
        try:
            repo = Repo(path)
        except (InvalidGitRepositoryError, NoSuchPathError):
            raise VcsError(f"No git repository at {path}") from None

        try:
            url = inject_credential(repo.remotes.origin.url, credential)
            repo.git.fetch(url, REMOTE_REFSPEC)
            repo.git.checkout(branch)
            repo.git.merge(f"origin/{branch}", ff_only=True)
        except (GitCommandError, AttributeError) as e:
            raise VcsError(scrub(f"Checkout of {branch} failed: {e}", credential)) from None
