"""Visualizer package - Rich terminal views for runs and recorded transcripts."""

from .live import LiveEventPrinter
from .transcripts import render_outcome_stats, render_transcript, render_transcript_list

__all__ = [
	"LiveEventPrinter",
	"render_outcome_stats",
	"render_transcript",
	"render_transcript_list",
]
