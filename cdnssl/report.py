"""
Failure report rendering.

The report is the alert consumers' contract: an HTML document with one
table row (domain, error) per residual failure.
"""

import html
import time
from pathlib import Path
from typing import List, Optional, Tuple

from .helpers import format_timestamp
from .logger import get_logger
from .pipeline import FailureRecord

REPORT_SUBJECT = "[CDN SSL] Automated certificate renewal alert"

DEFAULT_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Failed Domain Report</title>
    <style>
        body { font-family: Arial, sans-serif; margin: 20px; padding: 20px; }
        .container { max-width: 600px; margin: auto; }
        h2 { color: #d9534f; text-align: center; }
        table { width: 100%; border-collapse: collapse; margin-top: 20px; }
        th, td { border: 1px solid #ddd; padding: 10px; text-align: left; }
        th { background-color: #f8d7da; }
        tr:nth-child(even) { background-color: #f2f2f2; }
        .footer { margin-top: 20px; font-size: 14px; color: #777; text-align: center; }
    </style>
</head>
<body>
    <div class="container">
        <h2>Failed Domain Report</h2>
        <p>{{count}} domain(s) could not be renewed ({{generated_at}}).</p>
        <table>
            <tr>
                <th>Domain</th>
                <th>Error</th>
            </tr>
{{rows}}
        </table>
        <div class="footer">This message was sent automatically, please do not reply.</div>
    </div>
</body>
</html>
"""

ROW_TEMPLATE = """            <tr>
                <td>{domain}</td>
                <td>{cause}</td>
            </tr>"""


def load_template(template_path: Optional[str] = None) -> str:
    """
    Load the report template, falling back to the built-in one.

    Args:
        template_path: Optional path to an HTML template file

    Returns:
        Template text
    """
    if not template_path:
        return DEFAULT_TEMPLATE

    path = Path(template_path)
    if not path.exists():
        get_logger().warning(f"Report template not found at {template_path}, using default")
        return DEFAULT_TEMPLATE

    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def render_report_rows(failures: List[FailureRecord]) -> str:
    return "\n".join(
        ROW_TEMPLATE.format(
            domain=html.escape(failure.domain),
            cause=html.escape(failure.cause_text),
        )
        for failure in failures
    )


def render_failure_report(
    failures: List[FailureRecord],
    template: Optional[str] = None,
    generated_at: Optional[float] = None,
) -> Tuple[str, str, str]:
    """
    Render the alert for a cycle's residual failures.

    Args:
        failures: Residual failures, one row each
        template: HTML template (defaults to the built-in one)
        generated_at: Unix time shown in the report (defaults to now)

    Returns:
        Tuple of (subject, text_body, html_body)
    """
    if generated_at is None:
        generated_at = time.time()
    timestamp = format_timestamp(generated_at)

    html_body = (template or DEFAULT_TEMPLATE)
    html_body = html_body.replace("{{count}}", str(len(failures)))
    html_body = html_body.replace("{{generated_at}}", html.escape(timestamp))
    html_body = html_body.replace("{{rows}}", render_report_rows(failures))

    lines = [f"{len(failures)} domain(s) could not be renewed ({timestamp}):", ""]
    lines.extend(f"- {failure.domain}: {failure.cause_text}" for failure in failures)
    text_body = "\n".join(lines) + "\n"

    return REPORT_SUBJECT, text_body, html_body
