"""
IngestCore - content ingestion pipeline for a publishing site.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import DependencyContainer
from .processor import ContentProcessor
from .scheduler import Scheduler

__all__ = ["__version__", "Config", "DependencyContainer", "ContentProcessor", "Scheduler"]
