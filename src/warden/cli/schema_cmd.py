"""Schema CLI commands."""

from pathlib import Path

import click

from warden.metadata.loader import SchemaLoader
from warden.metadata.validator import validate_schema_file


@click.group()
def schema():
    """Schema commands."""
    pass


@schema.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--strict",
    is_flag=True,
    default=False,
    help="Treat warnings as errors.",
)
def validate(path: Path, strict: bool):
    """Validate a YAML schema document."""
    issues = validate_schema_file(path, strict=strict)

    errors = [i for i in issues if i.severity == "error"]
    warnings = [i for i in issues if i.severity == "warning"]

    for issue in issues:
        colour = "red" if issue.severity == "error" else "yellow"
        click.echo(click.style(str(issue), fg=colour))

    if errors:
        click.echo(
            click.style(
                f"\n{len(errors)} error(s) found"
                + (f", {len(warnings)} warning(s)" if warnings else ""),
                fg="red",
                bold=True,
            )
        )
        raise SystemExit(1)

    if warnings:
        click.echo(click.style(f"{len(warnings)} warning(s) found.", fg="yellow"))

    loaded = SchemaLoader(path).load()
    models = sorted(loaded.meta.models)
    click.echo(f"\nLoaded {len(models)} models:")
    for name in models:
        info = loaded.meta.get_model(name)
        guarded = len(loaded.policy.guard.get(name, {}))
        extra = f", extends {info.base_types[0]}" if info.base_types else ""
        click.echo(f"  ✓ {name} ({len(info.fields)} fields, {guarded} guarded operations{extra})")

    click.echo(click.style("\nSchema is valid.", fg="green", bold=True))
