"""Warden CLI entry point."""

import click


@click.group()
def cli():
    """Warden: policy enforcement for schema-driven data access."""
    pass


# Register subcommands
from warden.cli.check_cmd import check  # noqa: E402
from warden.cli.schema_cmd import schema  # noqa: E402

cli.add_command(schema)
cli.add_command(check)
