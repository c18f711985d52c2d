"""Output formatting for CLI commands."""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sqlnow.core.types import CompiledDatabase, QuerySpec, TableSpec
from sqlnow.exceptions import SqlNowError

console = Console()


class OutputFormatter:
    """Formats output for terminal or JSON mode."""

    def __init__(self, json_mode: bool = False) -> None:
        """Initialize formatter.

        Args:
            json_mode: If True, output JSON instead of Rich formatting
        """
        self.json_mode = json_mode

    def print_compiled(self, compiled: CompiledDatabase) -> None:
        """Print tables, views and queries of a compiled database.

        Args:
            compiled: Compiler output to describe
        """
        if self.json_mode:
            print(
                json.dumps(
                    {
                        "name": compiled.name,
                        "version": compiled.latest_version,
                        "tables": [_table_row(t) for t in compiled.tables.values()],
                        "queries": [_query_row(q) for q in compiled.iter_queries()],
                    },
                    default=str,
                    indent=2,
                )
            )
            return

        console.print(f"\n[bold]Database:[/bold] {compiled.name}")
        console.print(f"Schema version: {compiled.latest_version}")

        tables = Table(
            title=f"Tables ({len(compiled.tables)})", show_header=True, header_style="bold cyan"
        )
        for col in ("Name", "Kind", "Columns", "Primary Key", "Cascade Delete", "Cascade Update"):
            tables.add_column(col)
        for row in (_table_row(t) for t in compiled.tables.values()):
            tables.add_row(
                row["name"],
                row["kind"],
                ", ".join(row["columns"]),
                ", ".join(row["primary_key"]),
                ", ".join(row["cascade_delete"]),
                ", ".join(row["cascade_update"]),
            )
        console.print(tables)

        queries = compiled.iter_queries()
        table = Table(
            title=f"Queries ({len(queries)})", show_header=True, header_style="bold cyan"
        )
        for col in ("Query", "Kind", "Parameters", "Result", "Invalidated By", "Affects"):
            table.add_column(col)
        for row in (_query_row(q) for q in queries):
            table.add_row(
                row["query"],
                row["kind"],
                ", ".join(row["parameters"]),
                row["result"] or "",
                ", ".join(row["invalidated_by"]),
                ", ".join(row["affects"]),
            )
        console.print(table)

    def print_success(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Print success message.

        Args:
            message: Success message
            details: Optional details to display
        """
        if self.json_mode:
            output = {"success": True, "message": message}
            if details:
                output.update(details)
            print(json.dumps(output, default=str, indent=2))
        else:
            console.print(f"✓ {message}", style="green")
            if details:
                for key, value in details.items():
                    console.print(f"  {key}: {value}", style="dim")

    def print_error(self, error: Exception) -> None:
        """Print error message.

        Args:
            error: Exception to display
        """
        if self.json_mode:
            if isinstance(error, SqlNowError):
                print(json.dumps(error.to_dict(), default=str, indent=2))
            else:
                print(json.dumps({"error": str(error)}, indent=2))
        else:
            error_text = str(error)
            if isinstance(error, SqlNowError) and error.context:
                context_str = "\n".join(f"{k}: {v}" for k, v in error.context.items())
                error_text = f"{error_text}\n\n{context_str}"

            panel = Panel(
                error_text,
                title=f"[red]{type(error).__name__}[/red]",
                border_style="red",
            )
            console.print(panel)


def _table_row(table: TableSpec) -> dict[str, Any]:
    return {
        "name": table.name,
        "kind": "view" if table.is_view else "table",
        "columns": [
            f"{c.name} {c.property_type}{'' if not c.nullable else '?'}" for c in table.columns
        ],
        "primary_key": table.primary_key,
        "cascade_delete": table.cascade_notify.delete,
        "cascade_update": table.cascade_notify.update,
    }


def _query_row(query: QuerySpec) -> dict[str, Any]:
    return {
        "query": query.qualified_name,
        "kind": query.kind.value + (" returning" if query.returning else ""),
        "parameters": [
            f"{p.name}: {'list[' + p.property_type + ']' if p.is_collection else p.property_type}"
            for p in query.parameters
        ],
        "result": query.result_name,
        "invalidated_by": query.invalidation_tables,
        "affects": query.affected_tables,
    }
