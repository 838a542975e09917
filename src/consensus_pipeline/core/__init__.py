"""
Core pipeline modules for the Viral Consensus Pipeline.
"""

from .pipeline import Pipeline

# Import submodules
from . import discovery
from . import stages
from . import graph
from . import executor
from . import scheduler
from . import publish
from . import references
from . import trim_summary

__all__ = [
    "Pipeline",
    "discovery",
    "stages",
    "graph",
    "executor",
    "scheduler",
    "publish",
    "references",
    "trim_summary",
]
