"""Verdict Reporter: write the run diagnostic, then tear down.

``conclude`` is called exactly once per run, whatever the outcome.  It
triggers teardown of the topology (recording anything that could not be
released as a warning), builds the ``Diagnostic`` and writes it to the
report directory:

* ``report.json``: the full diagnostic,
* ``report.md``: the summary also printed by the CLI,
* ``report.html``: rendered from a Jinja2 template.

Usage::

    reporter = VerdictReporter(Path(".ringcompat/report"))
    diagnostic = reporter.conclude(run, teardown=lambda: builder.teardown(topology))
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from ..core.exceptions import FailureKind
from ..core.models import Run, Verdict, utc_now
from .diagnostic import Diagnostic

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"
DEFAULT_TEMPLATE = "report_template.html"


class VerdictReporter:
    """Produce the diagnostic report of a finished run.

    Args:
        report_dir: Directory receiving the report files.
        template_dir: Directory containing Jinja2 templates.
        template_name: Name of the HTML report template.
        log_tail_chars: How much of a failed node's log to keep.

    """

    def __init__(
        self,
        report_dir: Path,
        template_dir: Path = TEMPLATE_DIR,
        template_name: str = DEFAULT_TEMPLATE,
        log_tail_chars: int = 4000,
    ) -> None:
        """Initialize the reporter with output and template settings."""
        self._report_dir = Path(report_dir)
        self._template_dir = template_dir
        self._template_name = template_name
        self._log_tail_chars = log_tail_chars
        self._logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def conclude(
        self,
        run: Run,
        teardown: Callable[[], list[str]] | None = None,
    ) -> Diagnostic:
        """Finalize *run*: tear down, then write the report.

        Teardown always runs, after the verdict is fixed.  A teardown
        that raises is recorded as a warning; it never changes the
        verdict.

        Args:
            run: The finished run.
            teardown: Releases the topology and returns cleanup issues.

        Returns:
            The ``Diagnostic`` that was written.

        """
        if run.verdict is None:
            run.verdict = Verdict.errored(
                FailureKind.INTERNAL_ERROR, "run was interrupted before a verdict"
            )
        self._logger.info("Verdict: %s", run.verdict.label())

        if teardown is not None:
            try:
                run.cleanup_issues.extend(teardown())
            except Exception as exc:
                self._logger.exception("Teardown raised")
                run.cleanup_issues.append(f"teardown raised {type(exc).__name__}: {exc}")
        for issue in run.cleanup_issues:
            self._logger.warning("Cleanup: %s", issue)

        run.finished_at = utc_now()
        diagnostic = Diagnostic.from_run(run, self._log_tail_chars)
        self.write(diagnostic)
        return diagnostic

    def write(self, diagnostic: Diagnostic) -> dict[str, Path]:
        """Write the JSON, Markdown and HTML renditions of *diagnostic*.

        Returns:
            Mapping of format name to written path.

        """
        self._report_dir.mkdir(parents=True, exist_ok=True)
        paths = {
            "json": self._report_dir / "report.json",
            "markdown": self._report_dir / "report.md",
            "html": self._report_dir / "report.html",
        }
        paths["json"].write_text(diagnostic.to_json(), encoding="utf-8")
        paths["markdown"].write_text(diagnostic.to_markdown(), encoding="utf-8")
        paths["html"].write_text(self.render_html(diagnostic), encoding="utf-8")
        self._logger.info("Report written to %s", self._report_dir)
        return paths

    def render_html(self, diagnostic: Diagnostic) -> str:
        """Render the Jinja2 HTML report for *diagnostic*."""
        try:
            from jinja2 import Environment, FileSystemLoader  # type: ignore[import-untyped]
        except ImportError:
            raise RuntimeError(
                "jinja2 is not installed. Install with: pip install Jinja2"
            ) from None

        env = Environment(
            loader=FileSystemLoader(str(self._template_dir)),
            autoescape=True,
        )
        template = env.get_template(self._template_name)
        return template.render(
            data=diagnostic,
            title=f"Ring compatibility run {diagnostic.run_id}",
            nodes=diagnostic.nodes,
            attempts=diagnostic.attempts,
            timeline=diagnostic.backoff_timeline(),
            crash_events=diagnostic.crash_events,
            warnings=diagnostic.warnings,
            revisions=diagnostic.revisions,
            settings=diagnostic.settings,
            topology_mermaid=diagnostic.topology_mermaid,
        )
