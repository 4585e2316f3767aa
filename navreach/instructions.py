"""Prompt templates the engine sends to the model.

The agent loop and session controller never hard-code prompt text. Every
system prompt section and corrective user message is a markdown template:

  ``system_prompt.md``          base system prompt for every chat
  ``infinite_directive.md``     appended in infinite mode, takes ``{goal}``
  ``continuation.md``           next-pass message in infinite mode, ``{goal}``
  ``stall_correction.md``       sent when the model narrates instead of acting
  ``tool_failure.md``           after a raised tool error, ``{tool_name}`` ``{error}``
  ``usage_limit.md``            quota notice, ``{count}`` ``{limit}``
  ``playbook_instructions.md``  step list for a preloaded playbook
  ``playbook_discovery.md``     playbook run without a preloaded playbook

Packaged defaults live in ``navreach/instructions/``; a file with the same
name in ``~/.navreach/instructions/`` replaces the default.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping


TEMPLATES: tuple[str, ...] = (
    "system_prompt.md",
    "infinite_directive.md",
    "continuation.md",
    "stall_correction.md",
    "tool_failure.md",
    "usage_limit.md",
    "playbook_instructions.md",
    "playbook_discovery.md",
)

_PERSONAL_DIR = Path("~/.navreach/instructions").expanduser()


class _SafeFormatDict(dict[str, str]):
    """Keep ``{name}`` literally when the caller does not supply it."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Resolve engine prompt templates, personal overrides first."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = self._resolve_base_dir(base_dir)
        self.personal_dir: Path = (
            Path(personal_dir).expanduser().resolve()
            if personal_dir is not None
            else _PERSONAL_DIR.resolve()
        )
        self._cache: dict[str, str] = {}

    @staticmethod
    def _resolve_base_dir(base_dir: Path | str | None) -> Path:
        if base_dir is not None:
            return Path(base_dir).expanduser().resolve()
        env_dir = os.getenv("NAVREACH_INSTRUCTIONS_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return (Path(__file__).resolve().parent / "instructions").resolve()

    def source_of(self, name: str) -> Path:
        """Path the template *name* is read from."""
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def missing(self) -> list[str]:
        """Engine templates that resolve to no file."""
        return [name for name in TEMPLATES if not self.source_of(name).is_file()]

    def load(self, name: str) -> str:
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self.source_of(name)
        if not path.is_file():
            raise FileNotFoundError(
                f"Prompt template not found: {path}. "
                f"Expected one of {', '.join(TEMPLATES)} under {self.base_dir}."
            )
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, name: str, **variables: object) -> str:
        """Fill ``{placeholders}`` in template *name*; unknown ones stay as-is."""
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return self.load(name).format_map(_SafeFormatDict(values))
