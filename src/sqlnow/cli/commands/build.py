"""Compile and describe commands."""

from pathlib import Path
from typing import Annotated

import typer

from sqlnow.cli.context import CLIContext
from sqlnow.cli.output import OutputFormatter


def compile_command(
    ctx: typer.Context,
    root: Annotated[
        str | None,
        typer.Argument(help="SQL source directory (default: $SQLNOW_SQL_DIR or ./sql)"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the compiled models to this JSON file"),
    ] = None,
    name: Annotated[
        str | None,
        typer.Option("--name", "-n", help="Database name (default: directory name)"),
    ] = None,
) -> None:
    """Compile annotated SQL sources to JSON models."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        compiled = cli_ctx.compile(root, name=name)
        payload = compiled.model_dump_json(indent=2)
        if output is None:
            typer.echo(payload)
            return
        output.write_text(payload, encoding="utf-8")
        formatter.print_success(
            f"Compiled '{compiled.name}' to {output}",
            {
                "tables": len(compiled.tables),
                "queries": len(compiled.iter_queries()),
                "version": compiled.latest_version,
            },
        )
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)


def describe_command(
    ctx: typer.Context,
    root: Annotated[
        str | None,
        typer.Argument(help="SQL source directory (default: $SQLNOW_SQL_DIR or ./sql)"),
    ] = None,
) -> None:
    """Show tables, queries and their invalidation/affected tables."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        formatter.print_compiled(cli_ctx.compile(root))
    except Exception as e:
        formatter.print_error(e)
        raise typer.Exit(code=1)
