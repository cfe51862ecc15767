"""UI layer -- Rich dashboard and output formatters."""

from .dashboard import (
    ProgressDisplay,
    console,
    create_histogram,
    print_capabilities,
    print_client_info,
    print_final_results,
    print_header,
    print_metric_details,
    print_sample_table,
)
from .output import (
    create_result_json,
    format_csv_header,
    format_csv_row,
    format_text_result,
    save_json,
)

__all__ = [
    "ProgressDisplay",
    "console",
    "create_histogram",
    "create_result_json",
    "format_csv_header",
    "format_csv_row",
    "format_text_result",
    "print_capabilities",
    "print_client_info",
    "print_final_results",
    "print_header",
    "print_metric_details",
    "print_sample_table",
    "save_json",
]
