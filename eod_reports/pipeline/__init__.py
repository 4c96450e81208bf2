"""Report pipelines: chunked per-record report and single-shot daily summary."""
from .context import ExecutionContext, ReportJobParameters
from .runner import PipelineRunner

__all__ = ["ExecutionContext", "ReportJobParameters", "PipelineRunner"]
