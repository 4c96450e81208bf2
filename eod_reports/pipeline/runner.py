"""Maps a report kind to the pipeline that produces it."""
from __future__ import annotations

from typing import Callable

from sqlalchemy.orm import Session

from eod_reports.config import DispatchSettings
from eod_reports.exceptions import UnsupportedReportKind
from eod_reports.models.db.enums import ReportKind
from eod_reports.pipeline.chunked import run_report_job
from eod_reports.pipeline.context import ExecutionContext, ReportJobParameters
from eod_reports.pipeline.summary import run_summary_job
from eod_reports.reports.csv_sink import CsvReportSink


class PipelineRunner:
    def __init__(self, *, session_factory: Callable[[], Session], sink: CsvReportSink, settings: DispatchSettings):
        self._session_factory = session_factory
        self._sink = sink
        self._settings = settings
        self._pipelines = {
            ReportKind.REPORT: run_report_job,
            ReportKind.REPORT_SUMMARY: run_summary_job,
        }

    def run(self, kind: ReportKind, params: ReportJobParameters) -> ExecutionContext:
        pipeline = self._pipelines.get(kind)
        if pipeline is None:
            raise UnsupportedReportKind(kind)
        return pipeline(params, session_factory=self._session_factory, sink=self._sink, settings=self._settings)


__all__ = ["PipelineRunner"]
