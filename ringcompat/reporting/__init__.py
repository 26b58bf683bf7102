"""Run diagnostics in JSON, Markdown and HTML formats.

Uses a Jinja2 template for the HTML report: verdict, per-node final
state, the full poll history, crash events and failed-node logs.
"""

from .diagnostic import Diagnostic, NodeDiagnostic
from .report_generator import VerdictReporter

__all__ = ["Diagnostic", "NodeDiagnostic", "VerdictReporter"]
