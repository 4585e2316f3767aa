"""NavReach - LLM agent execution engine."""

__version__ = "0.1.0"

from navreach.config import Config
from navreach.session import SessionController

__all__ = ["Config", "SessionController", "__version__"]
