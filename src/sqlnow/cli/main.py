"""SQLNow CLI - Main entry point."""

from typing import Annotated

import typer

import sqlnow
from sqlnow.cli.commands import build
from sqlnow.cli.context import CLIContext
from sqlnow.core.types import PropertyNameGenerator

app = typer.Typer(
    name="sqlnow",
    help="SQLNow CLI - compile annotated SQL into typed, reactive query models",
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            "-j",
            help="Output as JSON (machine-readable)",
        ),
    ] = False,
    property_names: Annotated[
        PropertyNameGenerator,
        typer.Option(
            "--property-names",
            help="Default property name generator",
        ),
    ] = PropertyNameGenerator.PLAIN,
    loose_types: Annotated[
        bool,
        typer.Option(
            "--loose-types",
            help="Fall back to loosely typed columns instead of failing on unresolvable ones",
        ),
    ] = False,
) -> None:
    """Initialize CLI context with global options."""
    ctx.obj = CLIContext(
        json_output=json_output,
        property_names=property_names,
        strict_types=not loose_types,
    )


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"SQLNow v{sqlnow.__version__}")


app.command(name="compile")(build.compile_command)
app.command(name="describe")(build.describe_command)


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
