# Shared utilities for the workflow core

from iris_workflow.utils.logging import configure_logging, get_logger
from iris_workflow.utils.datetime_utils import utc_now, utc_iso, format_duration
from iris_workflow.utils.json_parser import extract_json_block, extract_html_block, parse_json_lenient

__all__ = [
    "configure_logging", "get_logger",
    "utc_now", "utc_iso", "format_duration",
    "extract_json_block", "extract_html_block", "parse_json_lenient",
]
