"""Report generation for recovery sweeps."""

import json
import csv
import io
from datetime import datetime

from .models import RecoveryReport, RecoveryAction

REPORT_FORMATS = ("json", "csv", "text", "detailed_text")


class RecoveryReportGenerator:
    """Generator for recovery reports in various formats."""

    def __init__(self, report: RecoveryReport):
        """Initialize the report generator.

        Args:
            report: The recovery report to generate output from.
        """
        self.report = report

    def render(self, format: str = "json", include_details: bool = True) -> str:
        """Render the report in one of REPORT_FORMATS.

        Raises:
            ValueError: If the format is not supported.
        """
        if format == "json":
            return self.to_json(include_details=include_details)
        if format == "csv":
            return self.to_csv()
        if format == "text":
            return self.to_summary_text()
        if format == "detailed_text":
            return self.to_detailed_text()
        raise ValueError(f"Unsupported format: {format}")

    def to_json(self, include_details: bool = True, indent: int = 2) -> str:
        """Generate JSON representation of the report.

        Args:
            include_details: If True, include every item. If False, only summary.
            indent: JSON indentation level.

        Returns:
            JSON string representation of the report.
        """
        data = self.report.to_summary_dict()
        if include_details:
            data["results"] = [item.model_dump(mode="json") for item in self.report.items]

        def json_serializer(obj):
            if isinstance(obj, datetime):
                return obj.isoformat()
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        return json.dumps(data, indent=indent, default=json_serializer)

    def to_csv(self) -> str:
        """Generate CSV with one row per candidate."""
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow([
            "reference", "meter_id", "amount_minor", "gateway_status",
            "action", "sale_id", "created_at", "error",
        ])
        for item in self.report.items:
            writer.writerow([
                item.reference,
                item.meter_id,
                item.amount_minor,
                item.gateway_status,
                item.action.value,
                item.sale_id or "",
                item.created_at.isoformat() if item.created_at else "",
                item.error or "",
            ])
        return output.getvalue()

    def to_summary_text(self) -> str:
        """Generate a human-readable text summary of the report."""
        summary = self.report.to_summary_dict()
        stats = summary["statistics"]

        lines = [
            "=" * 60,
            "RECOVERY SWEEP SUMMARY" + (" (DRY RUN)" if self.report.dry_run else ""),
            "=" * 60,
            f"Run ID: {summary['run_id'] or 'N/A'}",
            f"Triggered By: {summary['triggered_by']}",
            "",
            "Window:",
            f"  Since: {summary['since'] or 'any'}",
            f"  Until: {summary['until'] or 'any'}",
            "",
            "Statistics:",
            f"  Candidates: {stats['candidates']}",
            f"  Credited: {stats['credited']}",
            f"  Failed To Credit: {stats['failed']}",
            f"  Skipped: {stats['skipped']}",
            f"  Errors: {stats['errors']}",
            "",
            f"Started At: {summary['started_at']}",
            f"Completed At: {summary['completed_at'] or 'N/A'}",
            "",
            summary["message"],
            "=" * 60,
        ]
        return "\n".join(lines)

    def to_detailed_text(self) -> str:
        """Generate the summary followed by candidates grouped by action."""
        lines = [self.to_summary_text(), ""]

        for action in RecoveryAction:
            items = [item for item in self.report.items if item.action == action]
            if not items:
                continue
            lines.extend([f"{action.value.upper()} ({len(items)})", "-" * 40])
            for item in items:
                line = f"  {item.reference}  meter {item.meter_id}  amount {item.amount_minor}"
                if item.sale_id:
                    line += f"  sale id {item.sale_id}"
                if item.error:
                    line += f"  error: {item.error}"
                lines.append(line)
            lines.append("")

        return "\n".join(lines)
