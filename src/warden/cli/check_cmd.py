"""Permission check CLI command."""

import asyncio
import json
from pathlib import Path

import click

from warden.client.memory import MemoryClient
from warden.enhance import enhance
from warden.errors import WardenError
from warden.metadata.loader import SchemaLoader
from warden.policy.types import CRUD_KINDS


def _parse_json(value: str | None, option: str) -> dict | None:
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"invalid JSON: {exc}", param_hint=option)
    if not isinstance(parsed, dict):
        raise click.BadParameter("expected a JSON object", param_hint=option)
    return parsed


@click.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--model", required=True, help="Model to check.")
@click.option("--operation", required=True, type=click.Choice(CRUD_KINDS), help="Operation to check.")
@click.option("--user", "user_json", default=None, help="User context as a JSON object.")
@click.option("--where", "where_json", default=None, help="Field values to pin, as a JSON object.")
def check(path: Path, model: str, operation: str, user_json: str | None, where_json: str | None):
    """Check whether an operation on a model can be permitted at all."""
    user = _parse_json(user_json, "--user")
    where = _parse_json(where_json, "--where")

    try:
        loaded = SchemaLoader(path).load()
        db = enhance(MemoryClient(loaded.meta), loaded.meta, loaded.policy, user=user, kinds=("policy",))
        args = {"operation": operation}
        if where:
            args["where"] = where
        allowed = asyncio.run(db.model(model).check(args))
    except WardenError as e:
        click.echo(click.style(f"Error: {e.message}", fg="red"), err=True)
        raise SystemExit(1)

    if allowed:
        click.echo(click.style(f"{operation} on {model}: allowed", fg="green"))
    else:
        click.echo(click.style(f"{operation} on {model}: denied", fg="red"))
