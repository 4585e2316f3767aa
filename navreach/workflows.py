"""Slash-command workflow aliases stored as markdown files."""

import re
from dataclasses import dataclass
from pathlib import Path

from navreach.config import get_config
from navreach.logging import get_logger

log = get_logger(__name__)

_FRONT_MATTER_RE = re.compile(r"^---[\s\S]*?---\n?")


@dataclass(frozen=True)
class Workflow:
    name: str
    path: Path


def workflows_dir(base: Path | str | None = None) -> Path:
    return get_config().resolved_workflows_path(base)


def list_workflows(directory: Path | str | None = None) -> list[Workflow]:
    """List ``*.md`` workflow aliases, sorted by name."""
    root = Path(directory) if directory is not None else workflows_dir()
    if not root.is_dir():
        return []
    return [
        Workflow(name=path.stem, path=path)
        for path in sorted(root.glob("*.md"))
        if path.is_file()
    ]


def expand_workflow_alias(prompt: str, directory: Path | str | None = None) -> str:
    """Expand ``/name args`` into the workflow body plus ``Context: args``.

    Prompts that are not slash commands, or name no existing workflow, are
    returned unchanged.
    """
    text = prompt or ""
    if not text.startswith("/"):
        return text
    command, _, args = text.partition(" ")
    name = command[1:]
    if not name or "/" in name or name.startswith("."):
        return text

    root = Path(directory) if directory is not None else workflows_dir()
    path = root / f"{name}.md"
    if not path.is_file():
        return text

    log.info("Expanding workflow alias", workflow=name)
    body = _FRONT_MATTER_RE.sub("", path.read_text(encoding="utf-8"), count=1).strip()
    args = args.strip()
    return f"{body}\n\nContext: {args}" if args else body
