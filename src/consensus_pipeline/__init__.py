"""
Viral Consensus Pipeline

Orchestrates trimming, host removal, alignment, variant calling and consensus
building for a target virus across many sequencing samples.
"""

__version__ = "1.0.0"
__author__ = "Bioinformatics Team"
__email__ = "team@example.com"

# Lazy imports to avoid dependency issues
def get_pipeline():
    """Get the Pipeline class."""
    from .core.pipeline import Pipeline
    return Pipeline

def get_pipeline_config():
    """Get the PipelineConfig class."""
    from .config.settings import PipelineConfig
    return PipelineConfig

def get_run_summary():
    """Get the RunSummary class."""
    from .models.results import RunSummary
    return RunSummary

__all__ = ["get_pipeline", "get_pipeline_config", "get_run_summary"]
