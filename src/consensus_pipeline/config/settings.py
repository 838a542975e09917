"""
Configuration settings for the Viral Consensus Pipeline.
"""

import configparser
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from ..exceptions import ConfigurationError
from ..models.stages import ReadMode, ReferenceSet, RetryPolicy
from ..utils.logging import default_worker_count


class PipelineConfig(BaseSettings):
    """Immutable run-wide configuration, built once at start-up."""

    # Inputs and outputs
    reads_dir: Path = Field(description="Directory containing raw read files")
    output_dir: Path = Field(description="Output root for published results")
    work_dir: Optional[Path] = Field(default=None, description="Working directory (default: <output_dir>/work)")

    # References
    virus_fasta: Path = Field(description="Target virus genome FASTA file")
    virus_index: Path = Field(description="Bowtie2 index prefix of the virus genome")
    host_fasta: Optional[Path] = Field(default=None, description="Host genome FASTA file")
    host_index: Optional[Path] = Field(default=None, description="Bowtie2 index prefix of the host genome")

    # Branch toggles
    single_end: bool = Field(default=False, description="Treat every read file as its own single-end sample")
    skip_trim: bool = Field(default=False, description="Skip adapter and quality trimming")
    with_qc: bool = Field(default=False, description="Run FastQC on raw and trimmed reads")
    save_trimmed: bool = Field(default=False, description="Publish trimmed reads")
    with_host_removal: Optional[bool] = Field(
        default=None,
        description="Remove host reads before virus alignment (default: when a host reference is given)"
    )
    mask_low_coverage: bool = Field(default=True, description="Also build a consensus with low-coverage sites masked")

    # Trimming
    adapters: Optional[Path] = Field(default=None, description="Adapter FASTA file for Trimmomatic")
    adapter_seed_mismatches: int = Field(default=2, description="ILLUMINACLIP seed mismatches")
    adapter_palindrome_clip: int = Field(default=30, description="ILLUMINACLIP palindrome clip threshold")
    adapter_simple_clip: int = Field(default=10, description="ILLUMINACLIP simple clip threshold")
    window_size: int = Field(default=4, description="SLIDINGWINDOW window length")
    window_quality: int = Field(default=20, description="SLIDINGWINDOW required average quality")
    min_length: int = Field(default=50, description="Minimum retained read length")

    # Variant filtering and masking
    min_variant_quality: int = Field(default=20, description="Minimum QUAL of retained variants")
    min_coverage: int = Field(default=10, description="Depth below which consensus sites are masked")

    # Execution
    threads: int = Field(default=1, description="Threads per external tool invocation")
    max_workers: int = Field(default_factory=default_worker_count, description="Concurrent worker slots")
    max_attempts: int = Field(default=3, description="Attempts per stage before a chain fails")
    retry_backoff_seconds: float = Field(default=0.0, description="Delay before each retry")
    timeout_seconds: Optional[int] = Field(default=None, description="Timeout per stage attempt in seconds")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[Path] = Field(default=None, description="Log file path")

    @field_validator('threads', 'max_workers', 'max_attempts', 'window_size', 'min_length')
    @classmethod
    def validate_positive(cls, v):
        """Validate counts and lengths are positive."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator('adapter_seed_mismatches', 'adapter_palindrome_clip', 'adapter_simple_clip',
                     'window_quality', 'min_variant_quality', 'min_coverage', 'retry_backoff_seconds')
    @classmethod
    def validate_non_negative(cls, v):
        """Validate thresholds are non-negative."""
        if v < 0:
            raise ValueError("Value must be non-negative")
        return v

    @field_validator('timeout_seconds')
    @classmethod
    def validate_timeout(cls, v):
        if v is not None and v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v.upper()

    @model_validator(mode="after")
    def validate_host_pair(self):
        """The host FASTA and index only make sense together."""
        if (self.host_fasta is None) != (self.host_index is None):
            raise ValueError("host_fasta and host_index must be given together")
        return self

    model_config = {
        "env_prefix": "CONSENSUS_PIPELINE_",
        "case_sensitive": False,
        "env_file": ".env",
        "extra": "ignore",
        "frozen": True,
    }

    @property
    def read_mode(self) -> ReadMode:
        return ReadMode.SINGLE_END if self.single_end else ReadMode.PAIRED_END

    @property
    def virus_reference(self) -> ReferenceSet:
        return ReferenceSet(name="virus", fasta=self.virus_fasta, index=self.virus_index)

    @property
    def host_reference(self) -> Optional[ReferenceSet]:
        if self.host_fasta is None or self.host_index is None:
            return None
        return ReferenceSet(name="host", fasta=self.host_fasta, index=self.host_index)

    @property
    def host_removal_enabled(self) -> bool:
        if self.with_host_removal is None:
            return self.host_reference is not None
        return self.with_host_removal

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_seconds=self.retry_backoff_seconds,
            timeout_seconds=self.timeout_seconds,
        )

    def get_work_dir(self) -> Path:
        """Get the working directory path."""
        return self.work_dir if self.work_dir is not None else self.output_dir / "work"

    def get_info_dir(self) -> Path:
        """Get the directory holding run summaries."""
        return self.output_dir / "pipeline_info"

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        for directory in (self.output_dir, self.get_work_dir(), self.get_info_dir()):
            directory.mkdir(parents=True, exist_ok=True)

    def required_tools(self) -> List[str]:
        """External executables needed by the enabled stages."""
        tools = ["bowtie2", "samtools", "bcftools"]
        if not self.skip_trim:
            tools.append("trimmomatic")
        if self.mask_low_coverage:
            tools.append("bedtools")
        if self.with_qc:
            tools.append("fastqc")
        return tools

    def validate_setup(self, check_tools: bool = True) -> List[str]:
        """Validate that the pipeline is properly set up."""
        errors = []

        if not self.reads_dir.is_dir():
            errors.append(f"Reads directory not found: {self.reads_dir}")

        for path in self.virus_reference.missing_files():
            errors.append(f"Virus reference file not found: {path}")

        if self.host_removal_enabled:
            host = self.host_reference
            if host is None:
                errors.append("Host removal requested but no host reference configured")
            else:
                for path in host.missing_files():
                    errors.append(f"Host reference file not found: {path}")

        if not self.skip_trim:
            if self.adapters is None:
                errors.append("Trimming requires an adapter file")
            elif not self.adapters.is_file():
                errors.append(f"Adapter file not found: {self.adapters}")

        if check_tools:
            for tool in self.required_tools():
                if not self._check_tool_available(tool):
                    errors.append(f"Required tool not found: {tool}")

        return errors

    def _check_tool_available(self, tool: str) -> bool:
        """Check if a tool is available in PATH."""
        return shutil.which(tool) is not None


def load_pipeline_config(config_file_path: Optional[Path] = None, **overrides: Any) -> PipelineConfig:
    """
    Build the pipeline configuration.

    Values are read from the optional INI file (``[Paths]`` and
    ``[Parameters]`` sections, keys named after the PipelineConfig fields),
    then overridden by every keyword argument that is not None.

    Raises:
        ConfigurationError: If the file is unreadable, names unknown keys or
            the resulting values do not validate.
    """
    values: Dict[str, Any] = {}

    if config_file_path is not None:
        config_elem = configparser.ConfigParser()
        try:
            config_read = config_elem.read(config_file_path)
        except configparser.Error as e:
            raise ConfigurationError(f"Error reading configuration file {config_file_path}: {e}")
        # Raise an error if the file was specified but not found/readable
        if not config_read:
            raise ConfigurationError(
                f"Configuration file not found or empty: {config_file_path}"
            )
        known_fields = set(PipelineConfig.model_fields)
        for section in ("Paths", "Parameters"):
            if not config_elem.has_section(section):
                continue
            for key, value in config_elem[section].items():
                field_name = key.lower()
                if field_name not in known_fields:
                    raise ConfigurationError(
                        f"Unknown key '{key}' in section [{section}] of {config_file_path}"
                    )
                values[field_name] = value

    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return PipelineConfig(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}")
