from .artifact import build_merged_filename, build_report, build_result_csv
from .config import load_config, validate_runtime
from .errors import (
    AssemblyError,
    IntegrityError,
    ProbeError,
    RecordFetcherError,
    RemuxError,
    SegmentError,
    SelectionError,
    TransferError,
)
from .input_parser import (
    parse_rate_limit,
    parse_record_info,
    parse_segments,
    parse_segments_csv,
    parse_selection,
)
from .models import Config, Job, JobResult, RecordInfo, Segment, SelectionSet
from .runner import process_job

__all__ = [
    "AssemblyError",
    "Config",
    "IntegrityError",
    "Job",
    "JobResult",
    "ProbeError",
    "RecordFetcherError",
    "RecordInfo",
    "RemuxError",
    "Segment",
    "SegmentError",
    "SelectionError",
    "SelectionSet",
    "TransferError",
    "build_merged_filename",
    "build_report",
    "build_result_csv",
    "load_config",
    "parse_rate_limit",
    "parse_record_info",
    "parse_segments",
    "parse_segments_csv",
    "parse_selection",
    "process_job",
    "validate_runtime",
]
