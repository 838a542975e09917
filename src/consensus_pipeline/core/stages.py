"""
Stage definitions: the external tool contract of every pipeline step.

Each builder returns a StageSpec shared by all samples of a run. Commands are
bash templates; see StageSpec.render_command for the placeholders.
"""

from pathlib import Path
from typing import Dict, List

from ..config.settings import PipelineConfig
from ..exceptions import ConfigurationError
from ..models.stages import (
    InputBinding,
    OutputSlot,
    PublishRule,
    ReadMode,
    StageSpec,
)
from .trim_summary import write_trim_summary


TRIM = "trim"
TRIM_SUMMARY = "trim_summary"
HOST_REMOVAL = "host_removal"
ALIGN = "align"
SORT_INDEX = "sort_index"
CALL_VARIANTS = "call_variants"
FILTER_VARIANTS = "filter_variants"
CONSENSUS = "consensus"
QC_RAW = "qc_raw"
QC_TRIMMED = "qc_trimmed"

ReadBindings = Dict[str, InputBinding]


def _abs(path: Path) -> Path:
    return Path(path).expanduser().resolve()


def _logged(command: str, log_slot: str) -> str:
    """Send the tool's stderr to its log output and echo it to the attempt log."""
    return f"{command} 2> {{out_{log_slot}}}; rc=$?; cat {{out_{log_slot}}} >&2; exit $rc"


def _raw_reads(read_mode: ReadMode) -> ReadBindings:
    reads = {"read1": InputBinding.from_raw(0)}
    if read_mode == ReadMode.PAIRED_END:
        reads["read2"] = InputBinding.from_raw(1)
    return reads


def _stage_reads(stage: str, read_mode: ReadMode) -> ReadBindings:
    reads = {"read1": InputBinding.from_stage(stage, "read1")}
    if read_mode == ReadMode.PAIRED_END:
        reads["read2"] = InputBinding.from_stage(stage, "read2")
    return reads


def trim_stage(config: PipelineConfig) -> StageSpec:
    """Adapter and quality trimming with Trimmomatic."""
    if config.adapters is None:
        raise ConfigurationError("Trimming is enabled but no adapter file is configured")

    clip = (
        "ILLUMINACLIP:{in_adapters}:{seed_mismatches}:{palindrome_clip}:{simple_clip} "
        "SLIDINGWINDOW:{window_size}:{window_quality} MINLEN:{min_length}"
    )
    inputs = dict(_raw_reads(config.read_mode))
    inputs["adapters"] = InputBinding.from_static(_abs(config.adapters))

    if config.read_mode == ReadMode.PAIRED_END:
        command = (
            "trimmomatic PE -threads {threads} -phred33 {in_read1} {in_read2} "
            "{out_read1} {out_unpaired1} {out_read2} {out_unpaired2} " + clip
        )
        outputs = {
            "read1": OutputSlot(template="{sample_id}_R1_trimmed.fastq.gz"),
            "read2": OutputSlot(template="{sample_id}_R2_trimmed.fastq.gz"),
            "unpaired1": OutputSlot(template="{sample_id}_R1_unpaired.fastq.gz", verify=False),
            "unpaired2": OutputSlot(template="{sample_id}_R2_unpaired.fastq.gz", verify=False),
            "log": OutputSlot(template="{sample_id}_trimmomatic.log"),
        }
        published = ("read1", "read2", "log")
    else:
        command = "trimmomatic SE -threads {threads} -phred33 {in_read1} {out_read1} " + clip
        outputs = {
            "read1": OutputSlot(template="{sample_id}_trimmed.fastq.gz"),
            "log": OutputSlot(template="{sample_id}_trimmomatic.log"),
        }
        published = ("read1", "log")

    return StageSpec(
        name=TRIM,
        declared_inputs=inputs,
        declared_outputs=outputs,
        command_template=_logged(command, "log"),
        params={
            "threads": config.threads,
            "seed_mismatches": config.adapter_seed_mismatches,
            "palindrome_clip": config.adapter_palindrome_clip,
            "simple_clip": config.adapter_simple_clip,
            "window_size": config.window_size,
            "window_quality": config.window_quality,
            "min_length": config.min_length,
        },
        retry_policy=config.retry_policy,
        publish_rules=(PublishRule(slots=published, subdir="trimmed"),) if config.save_trimmed else (),
    )


def trim_summary_stage(config: PipelineConfig) -> StageSpec:
    """Read counts before and after single-end trimming."""
    return StageSpec(
        name=TRIM_SUMMARY,
        declared_inputs={
            "untrimmed": InputBinding.from_raw(0),
            "trimmed": InputBinding.from_stage(TRIM, "read1"),
        },
        declared_outputs={"summary": OutputSlot(template="{sample_id}_trim_summary.txt")},
        function=write_trim_summary,
        retry_policy=config.retry_policy,
        publish_rules=(PublishRule(slots=("summary",), subdir="trim_summary"),),
    )


def host_removal_stage(config: PipelineConfig, reads: ReadBindings) -> StageSpec:
    """Align to the host genome and keep only the reads that do not map."""
    host = config.host_reference
    if host is None:
        raise ConfigurationError("Host removal is enabled but no host reference is configured")

    inputs = dict(reads)
    inputs["index"] = InputBinding.from_static(_abs(host.index))

    if config.read_mode == ReadMode.PAIRED_END:
        command = (
            "bowtie2 -p {threads} -x {in_index} -1 {in_read1} -2 {in_read2} 2> {out_log} "
            "| samtools fastq -f 12 -F 256 -n -1 {out_read1} -2 {out_read2} "
            "-0 /dev/null -s /dev/null -"
        )
        outputs = {
            "read1": OutputSlot(template="{sample_id}_host_removed_R1.fastq.gz"),
            "read2": OutputSlot(template="{sample_id}_host_removed_R2.fastq.gz"),
            "log": OutputSlot(template="{sample_id}_host_removal.log"),
        }
        published = ("read1", "read2", "log")
    else:
        command = (
            "bowtie2 -p {threads} -x {in_index} -U {in_read1} 2> {out_log} "
            "| samtools fastq -f 4 -F 256 -0 {out_read1} -"
        )
        outputs = {
            "read1": OutputSlot(template="{sample_id}_host_removed.fastq.gz"),
            "log": OutputSlot(template="{sample_id}_host_removal.log"),
        }
        published = ("read1", "log")

    return StageSpec(
        name=HOST_REMOVAL,
        declared_inputs=inputs,
        declared_outputs=outputs,
        command_template=command + "; rc=$?; cat {out_log} >&2; exit $rc",
        params={"threads": config.threads},
        retry_policy=config.retry_policy,
        publish_rules=(PublishRule(slots=published, subdir="host_removed"),),
    )


def align_stage(config: PipelineConfig, reads: ReadBindings) -> StageSpec:
    """Align reads to the virus genome with Bowtie2."""
    inputs = dict(reads)
    inputs["index"] = InputBinding.from_static(_abs(config.virus_index))

    if config.read_mode == ReadMode.PAIRED_END:
        command = "bowtie2 -p {threads} -x {in_index} -1 {in_read1} -2 {in_read2} -S {out_sam}"
    else:
        command = "bowtie2 -p {threads} -x {in_index} -U {in_read1} -S {out_sam}"

    return StageSpec(
        name=ALIGN,
        declared_inputs=inputs,
        declared_outputs={
            "sam": OutputSlot(template="{sample_id}.sam"),
            "log": OutputSlot(template="{sample_id}_bowtie2.log"),
        },
        command_template=_logged(command, "log"),
        params={"threads": config.threads},
        retry_policy=config.retry_policy,
        publish_rules=(PublishRule(slots=("sam", "log"), subdir="alignments"),),
    )


def sort_index_stage(config: PipelineConfig) -> StageSpec:
    """Sort and index the alignment, and collect alignment statistics."""
    return StageSpec(
        name=SORT_INDEX,
        declared_inputs={"sam": InputBinding.from_stage(ALIGN, "sam")},
        declared_outputs={
            "bam": OutputSlot(template="{sample_id}.sorted.bam"),
            "bai": OutputSlot(template="{sample_id}.sorted.bam.bai"),
            "flagstat": OutputSlot(template="{sample_id}.flagstat.txt"),
            "idxstats": OutputSlot(template="{sample_id}.idxstats.txt"),
        },
        command_template=(
            "samtools sort -@ {threads} -o {out_bam} {in_sam} "
            "&& samtools index {out_bam} {out_bai} "
            "&& samtools flagstat {out_bam} > {out_flagstat} "
            "&& samtools idxstats {out_bam} > {out_idxstats}"
        ),
        params={"threads": config.threads},
        retry_policy=config.retry_policy,
        publish_rules=(
            PublishRule(slots=("bam", "bai"), subdir="bam"),
            PublishRule(slots=("flagstat", "idxstats"), subdir="alignment_stats"),
        ),
    )


def call_variants_stage(config: PipelineConfig) -> StageSpec:
    """Call variants against the virus genome with bcftools."""
    return StageSpec(
        name=CALL_VARIANTS,
        declared_inputs={
            "fasta": InputBinding.from_static(_abs(config.virus_fasta)),
            "bam": InputBinding.from_stage(SORT_INDEX, "bam"),
            "bai": InputBinding.from_stage(SORT_INDEX, "bai"),
        },
        declared_outputs={"vcf": OutputSlot(template="{sample_id}.vcf.gz")},
        command_template=(
            "bcftools mpileup --threads {threads} -f {in_fasta} {in_bam} -Ou "
            "| bcftools call --ploidy 1 -mv -Oz -o {out_vcf}"
        ),
        params={"threads": config.threads},
        retry_policy=config.retry_policy,
        publish_rules=(PublishRule(slots=("vcf",), subdir="variants"),),
    )


def filter_variants_stage(config: PipelineConfig) -> StageSpec:
    """Keep variants at or above the quality threshold."""
    return StageSpec(
        name=FILTER_VARIANTS,
        declared_inputs={"vcf": InputBinding.from_stage(CALL_VARIANTS, "vcf")},
        declared_outputs={
            "vcf": OutputSlot(template="{sample_id}.filtered.vcf.gz"),
            "index": OutputSlot(template="{sample_id}.filtered.vcf.gz.csi"),
        },
        command_template=(
            "bcftools filter -i 'QUAL>={min_variant_quality}' -Oz -o {out_vcf} {in_vcf} "
            "&& bcftools index -f -o {out_index} {out_vcf}"
        ),
        params={"min_variant_quality": config.min_variant_quality},
        retry_policy=config.retry_policy,
        publish_rules=(PublishRule(slots=("vcf", "index"), subdir="filtered_variants"),),
    )


def consensus_stage(config: PipelineConfig) -> StageSpec:
    """Apply the filtered variants to the reference, optionally masking low-coverage sites."""
    # Header replaced by the sample id, kept out of sed so any id is safe
    rename = "{{ printf '>%s\\n' {quoted_sample_id}; tail -n +2; }}"
    consensus = f"bcftools consensus -f {{in_fasta}} {{in_vcf}} | {rename} > {{out_consensus}}"
    outputs = {"consensus": OutputSlot(template="{sample_id}_consensus.fasta")}
    published = ["consensus"]

    if config.mask_low_coverage:
        consensus += (
            " && bedtools genomecov -ibam {in_bam} -bga "
            "| awk '$4 < {min_coverage}' > {out_mask}"
            f" && bcftools consensus -f {{in_fasta}} -m {{out_mask}} {{in_vcf}} | {rename} > {{out_masked}}"
        )
        # Fully covered genomes give an empty mask.
        outputs["mask"] = OutputSlot(template="{sample_id}_low_coverage.bed", verify=False)
        outputs["masked"] = OutputSlot(template="{sample_id}_consensus_masked.fasta")
        published.append("masked")

    return StageSpec(
        name=CONSENSUS,
        declared_inputs={
            "fasta": InputBinding.from_static(_abs(config.virus_fasta)),
            "vcf": InputBinding.from_stage(FILTER_VARIANTS, "vcf"),
            "vcf_index": InputBinding.from_stage(FILTER_VARIANTS, "index"),
            "bam": InputBinding.from_stage(SORT_INDEX, "bam"),
        },
        declared_outputs=outputs,
        command_template=consensus,
        params={"min_coverage": config.min_coverage},
        retry_policy=config.retry_policy,
        publish_rules=(PublishRule(slots=tuple(published), subdir="consensus"),),
    )


def qc_stage(config: PipelineConfig, name: str, label: str, reads: ReadBindings) -> StageSpec:
    """
    FastQC report on raw or trimmed reads.

    Inputs are linked under sample-keyed names first so that the report names
    carry the sample_id whatever the raw file was called.
    """
    if config.read_mode == ReadMode.PAIRED_END:
        suffixes = {"read1": f"_{label}_R1", "read2": f"_{label}_R2"}
    else:
        suffixes = {"read1": f"_{label}"}

    links = {slot: f"{{quoted_sample_id}}{suffix}.fastq.gz" for slot, suffix in suffixes.items()}
    commands = [f"ln -sf {{in_{slot}}} {link}" for slot, link in links.items()]
    commands.append("fastqc -q -t {threads} -o . " + " ".join(links.values()))

    outputs = {}
    for slot, suffix in suffixes.items():
        outputs[f"{slot}_html"] = OutputSlot(template=f"{{sample_id}}{suffix}_fastqc.html")
        outputs[f"{slot}_zip"] = OutputSlot(template=f"{{sample_id}}{suffix}_fastqc.zip")

    return StageSpec(
        name=name,
        declared_inputs=dict(reads),
        declared_outputs=outputs,
        command_template=" && ".join(commands),
        params={"threads": config.threads},
        retry_policy=config.retry_policy,
        publish_rules=(PublishRule(slots=tuple(outputs), subdir="qc"),),
        side_branch=True,
    )


def build_stage_specs(config: PipelineConfig) -> List[StageSpec]:
    """
    Resolve the branch toggles into the ordered stage list of this run.

    Raises:
        ConfigurationError: If an enabled branch lacks what it needs
            (adapter file for trimming, host reference for host removal).
    """
    read_mode = config.read_mode
    specs: List[StageSpec] = []

    if config.with_qc:
        specs.append(qc_stage(config, QC_RAW, "raw", _raw_reads(read_mode)))

    if config.skip_trim:
        reads = _raw_reads(read_mode)
    else:
        specs.append(trim_stage(config))
        if read_mode == ReadMode.SINGLE_END:
            specs.append(trim_summary_stage(config))
        reads = _stage_reads(TRIM, read_mode)
        if config.with_qc:
            specs.append(qc_stage(config, QC_TRIMMED, "trimmed", reads))

    if config.host_removal_enabled:
        specs.append(host_removal_stage(config, reads))
        reads = _stage_reads(HOST_REMOVAL, read_mode)

    specs.extend([
        align_stage(config, reads),
        sort_index_stage(config),
        call_variants_stage(config),
        filter_variants_stage(config),
        consensus_stage(config),
    ])
    return specs
