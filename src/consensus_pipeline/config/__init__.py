"""
Configuration management for the Viral Consensus Pipeline.
"""

from .settings import PipelineConfig, load_pipeline_config

__all__ = ["PipelineConfig", "load_pipeline_config"]
