"""
HTML Summary Report

Assembles the results of a run into a single self-contained HTML page:
cleaning step counts, the per-region summary table, the run parameters and
the figures (embedded as base64 so the page can be shared on its own).

Example Usage:
    >>> from gbifregions.reports import generate_html_report
    >>> generate_html_report(
    ...     output_dir=Path("results"),
    ...     cleaning_stats=cleaned.stats,
    ...     summary=aggregated.summary,
    ... )
"""

from typing import Dict, List, Optional, Any
from pathlib import Path
from datetime import datetime
import base64
import logging

import numpy as np
import pandas as pd
from jinja2 import Template

from .utils import write_text

logger = logging.getLogger(__name__)

REPORT_FILENAME = "summary_report.html"


HTML_REPORT_CSS = """
<style>
    body { font-family: -apple-system, "Segoe UI", Helvetica, Arial, sans-serif;
           margin: 0; background: #f5f6f8; color: #222; }
    .container { max-width: 1100px; margin: 0 auto; padding: 24px; }
    .header { border-bottom: 3px solid #5AB4AC; margin-bottom: 20px; }
    .header h1 { margin-bottom: 4px; }
    .subtitle, .timestamp { color: #666; font-size: 0.9em; }
    .quick-stats { display: flex; flex-wrap: wrap; gap: 12px; margin: 16px 0; }
    .quick-stat { background: #fff; border-radius: 6px; padding: 12px 18px;
                  box-shadow: 0 1px 3px rgba(0,0,0,0.08); min-width: 120px; }
    .quick-stat .number { font-size: 1.6em; font-weight: 600; color: #2c7a74; }
    .quick-stat .label { font-size: 0.8em; color: #666; text-transform: uppercase; }
    .section { background: #fff; border-radius: 6px; padding: 16px 24px;
               margin-bottom: 20px; box-shadow: 0 1px 3px rgba(0,0,0,0.08); }
    .table-container { overflow-x: auto; }
    table { border-collapse: collapse; width: 100%; font-size: 0.9em; }
    th, td { padding: 6px 10px; border-bottom: 1px solid #e5e5e5; text-align: left; }
    th { background: #f0f4f4; }
    .figure img { max-width: 100%; border: 1px solid #ddd; }
    .figure .caption { color: #666; font-size: 0.85em; margin: 4px 0 16px; }
    .alert { padding: 10px 14px; border-radius: 4px; }
    .alert-info { background: #e8f4fd; }
    .alert-warning { background: #fff4e0; }
    .footer { color: #888; font-size: 0.8em; text-align: center; margin-top: 30px; }
</style>
"""

HTML_REPORT_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="generator" content="GBIFRegions">
    <title>{{ title }} - GBIFRegions Report</title>
    {{ css | safe }}
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>{{ title }}</h1>
            <div class="subtitle">GBIFRegions occurrence summary</div>
            <div class="timestamp">Generated: {{ timestamp }}</div>
        </div>

        {% if quick_stats %}
        <div class="quick-stats">
            {% for stat in quick_stats %}
            <div class="quick-stat">
                <div class="number">{{ stat.value }}</div>
                <div class="label">{{ stat.label }}</div>
            </div>
            {% endfor %}
        </div>
        {% endif %}

        {{ content | safe }}

        <div class="footer">GBIFRegions v{{ version }}</div>
    </div>
</body>
</html>
"""


class HTMLReportBuilder:
    """
    Builder for the HTML summary report.

    Sections are HTML fragments rendered in the order they are added.
    """

    def __init__(self, title: str, version: str = "0.1.0"):
        self.title = title
        self.version = version
        self.sections: List[str] = []
        self.quick_stats: List[Dict[str, str]] = []

    def add_quick_stat(self, value: str, label: str):
        """Add a quick stat to the header bar."""
        self.quick_stats.append({'value': value, 'label': label})

    def add_section(self, content: str):
        """Add a section to the report."""
        self.sections.append(content)

    def render(self) -> str:
        """Render the complete HTML document."""
        template = Template(HTML_REPORT_TEMPLATE)
        return template.render(
            title=self.title,
            version=self.version,
            timestamp=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            css=HTML_REPORT_CSS,
            quick_stats=self.quick_stats,
            content='\n'.join(self.sections),
        )


def _format_number(value, decimals: int = 2) -> str:
    if value is None or pd.isna(value):
        return "N/A"
    if isinstance(value, (int, np.integer)):
        return f"{value:,}"
    return f"{value:,.{decimals}f}"


def _dataframe_to_html(df: pd.DataFrame, max_rows: int = 200) -> str:
    if df.empty:
        return '<p class="alert alert-info">No data available</p>'

    n_total = len(df)
    html = '<div class="table-container">\n'
    html += df.head(max_rows).to_html(index=False, border=0, escape=True)
    html += '</div>\n'
    if n_total > max_rows:
        html += f'<p class="caption">Showing first {max_rows} rows of {n_total} total</p>\n'
    return html


def _encode_image_to_base64(image_path: Path) -> Optional[str]:
    """Encode an image as a data URI, or None if it cannot be read."""
    mime_types = {
        '.png': 'image/png',
        '.svg': 'image/svg+xml',
    }
    mime_type = mime_types.get(image_path.suffix.lower())
    if mime_type is None or not image_path.exists():
        return None

    try:
        encoded = base64.b64encode(image_path.read_bytes()).decode('utf-8')
    except OSError as e:
        logger.warning(f"Failed to encode image {image_path}: {e}")
        return None
    return f"data:{mime_type};base64,{encoded}"


def _build_cleaning_section(stats: Dict[str, int]) -> str:
    labels = [
        ('n_input', 'Input records'),
        ('n_missing_coordinates', 'Dropped: missing coordinates'),
        ('n_duplicates', 'Dropped: duplicate coordinates'),
        ('n_outside_bbox', 'Dropped: outside bounding box'),
        ('n_inside', 'Inside region boundary'),
        ('n_outside', 'Outside region boundary'),
        ('n_snapped', 'Snapped to boundary'),
        ('n_dropped_outliers', 'Dropped: outside boundary'),
        ('n_output', 'Cleaned records'),
    ]
    rows = pd.DataFrame(
        [(label, _format_number(stats.get(key))) for key, label in labels if key in stats],
        columns=['Step', 'Records'],
    )
    return (
        '<div class="section" id="section-cleaning">\n'
        '<h2>Coordinate Cleaning</h2>\n'
        + _dataframe_to_html(rows)
        + '</div>\n'
    )


def _build_regions_section(summary: pd.DataFrame) -> str:
    html = '<div class="section" id="section-regions">\n<h2>Regions</h2>\n'
    if not summary.empty and 'n_occurrences' in summary.columns:
        n_empty = int((summary['n_occurrences'] == 0).sum())
        html += (
            f'<p>{len(summary)} regions, {len(summary) - n_empty} with occurrences, '
            f'{n_empty} without.</p>\n'
        )
    html += _dataframe_to_html(summary)
    html += '</div>\n'
    return html


def _build_parameters_section(parameters: Dict[str, Any]) -> str:
    rows = []

    def _flatten(prefix, value):
        if isinstance(value, dict):
            for k, v in value.items():
                _flatten(f"{prefix}.{k}" if prefix else k, v)
        else:
            rows.append((prefix, str(value)))

    _flatten("", parameters)
    table = pd.DataFrame(rows, columns=['Parameter', 'Value'])
    return (
        '<div class="section" id="section-parameters">\n'
        '<h2>Parameters</h2>\n'
        + _dataframe_to_html(table)
        + '</div>\n'
    )


def _build_visualizations_section(plot_paths: List[Path]) -> str:
    html = '<div class="section" id="section-visualizations">\n<h2>Figures</h2>\n'
    n_embedded = 0
    for path in plot_paths:
        data_uri = _encode_image_to_base64(Path(path))
        if data_uri is None:
            continue
        caption = Path(path).stem.replace('_', ' ')
        html += (
            '<div class="figure">\n'
            f'<img src="{data_uri}" alt="{caption}">\n'
            f'<div class="caption">{caption}</div>\n'
            '</div>\n'
        )
        n_embedded += 1
    if n_embedded == 0:
        html += '<p class="alert alert-info">No figures were generated</p>\n'
    html += '</div>\n'
    return html


def generate_html_report(
    output_dir: Path,
    cleaning_stats,
    summary: pd.DataFrame,
    parameters: Optional[Dict[str, Any]] = None,
    plot_paths: Optional[List[Path]] = None,
    title: str = "Occurrences per region",
    version: str = "0.1.0",
) -> Optional[Path]:
    """
    Write ``summary_report.html`` into ``output_dir``.

    Parameters
    ----------
    output_dir : Path
        Run output directory
    cleaning_stats : CleaningStats or dict
        Step counts from the cleaner; None omits the cleaning section
    summary : pd.DataFrame
        Region summary table
    parameters : dict, optional
        Run configuration (``PipelineConfig.to_dict()``)
    plot_paths : list of Path, optional
        Figures to embed (PNG or SVG)
    title : str
        Report heading
    version : str
        Package version shown in the footer

    Returns
    -------
    Optional[Path]
        Path of the report, or None if it could not be generated
    """
    logger.info("Generating HTML summary report...")

    try:
        builder = HTMLReportBuilder(title=title, version=version)

        stats = None
        if cleaning_stats is not None:
            stats = cleaning_stats if isinstance(cleaning_stats, dict) else cleaning_stats.to_dict()
            builder.add_quick_stat(_format_number(stats.get('n_output', 0)), 'Cleaned records')
            builder.add_quick_stat(_format_number(stats.get('n_snapped', 0)), 'Snapped')

        if not summary.empty:
            builder.add_quick_stat(_format_number(len(summary)), 'Regions')
            builder.add_quick_stat(
                _format_number(int((summary['n_occurrences'] > 0).sum())), 'Regions with data'
            )

        if stats is not None:
            builder.add_section(_build_cleaning_section(stats))
        builder.add_section(_build_regions_section(summary))
        if parameters:
            builder.add_section(_build_parameters_section(parameters))
        builder.add_section(_build_visualizations_section(plot_paths or []))

        output_file = write_text(builder.render(), Path(output_dir) / REPORT_FILENAME)
        logger.info(f"HTML report saved: {output_file}")
        return output_file

    except Exception as e:
        logger.error(f"Failed to generate HTML report: {e}", exc_info=True)
        return None
