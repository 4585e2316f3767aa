"""Per-category pacing after side-effecting tool calls."""

import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable

from navreach.config import PacingConfig, get_config
from navreach.logging import get_logger

if TYPE_CHECKING:
    from navreach.tools.registry import Tool

log = get_logger(__name__)


class ToolPacer:
    """Sleep a category-specific delay scaled by the session speed."""

    def __init__(
        self,
        config: PacingConfig | None = None,
        speed: str = "normal",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or get_config().pacing
        self.speed = speed
        self._sleep = sleep

    @property
    def multiplier(self) -> float:
        return float(self.config.speed_multipliers.get(self.speed, 1.0))

    def category_for(self, tool_name: str, declared: str = "default") -> str:
        """Resolve the pacing category, preferring the tool's declared one."""
        if declared and declared != "default":
            return declared
        cfg = self.config
        if tool_name in cfg.navigation_tools:
            return "navigation"
        if any(tool_name.startswith(prefix) for prefix in cfg.site_action_prefixes):
            return "site_action"
        if tool_name in cfg.interaction_tools:
            return "interaction"
        if tool_name in cfg.scroll_tools:
            return "scroll"
        if tool_name in cfg.inspection_tools:
            return "inspection"
        return "default"

    def delay_ms(self, tool_name: str, declared: str = "default") -> int:
        if not self.config.enabled:
            return 0
        category = self.category_for(tool_name, declared)
        base = self.config.delays_ms.get(category, self.config.delays_ms.get("default", 0))
        return max(0, int(base * self.multiplier))

    async def pace(self, tool: "Tool") -> int:
        """Sleep after a successful call and return the delay applied."""
        delay = self.delay_ms(tool.name, tool.category)
        if delay > 0:
            log.debug("Pacing after tool", tool=tool.name, delay_ms=delay)
            await self._sleep(delay / 1000)
        return delay
