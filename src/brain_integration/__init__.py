"""Brain integration orchestrator package."""

from .config import BrainSettings
from .orchestrator import BrainOrchestrator

__version__ = "0.1.0"

__all__ = ["BrainOrchestrator", "BrainSettings", "__version__"]
