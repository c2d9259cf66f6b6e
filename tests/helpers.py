"""Helpers shared by test modules."""

import os

from git import Repo

from build_agent.services.events import EventChannel


def commit_file(repo: Repo, name: str, content: str, message: str) -> None:
    with open(os.path.join(repo.working_tree_dir, name), "w", encoding="utf-8") as f:
        f.write(content)
    repo.index.add([name])
    repo.index.commit(message)


def sent(channel: EventChannel, session_id: str | None = None) -> list[tuple[str, object]]:
    """Drain the channel into (type, data) pairs, optionally for one session."""
    return [
        (message.type.value, message.data)
        for sid, message in channel.drain()
        if session_id is None or sid == session_id
    ]


def types_of(events: list[tuple[str, object]]) -> list[str]:
    """Event types without the log and save-build chatter."""
    return [t for t, _ in events if t not in ("log", "save-build")]


def logs_of(events: list[tuple[str, object]]) -> list[dict]:
    return [data for t, data in events if t == "log"]
