"""Run output files."""

from __future__ import annotations

from cidcheck.output.sink import OutputSink, resume_offset

__all__ = ["OutputSink", "resume_offset"]
