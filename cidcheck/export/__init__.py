"""Archival export of probed CIDs."""

from __future__ import annotations

from cidcheck.export.pipeline import ExportPipeline, archive_name, run_export_command

__all__ = ["ExportPipeline", "archive_name", "run_export_command"]
