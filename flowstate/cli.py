"""Command line interface for inspecting and confirming flows."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import typer

from flowstate.config import load_config
from flowstate.errors import FlowStateError
from flowstate.manager import get_flow_manager
from flowstate.validation import FLOW_TYPE, complete_validation_flow

app = typer.Typer(help="CLI for flowstate flows")

# Command groups
flow_app = typer.Typer(help="Commands for inspecting flows")
validation_app = typer.Typer(help="Commands for tool call validation flows")

app.add_typer(flow_app, name="flow")
app.add_typer(validation_app, name="validation")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level"),
) -> None:
    """flowstate CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@flow_app.command("list")
def flow_list(
    flow_type: Optional[str] = typer.Option(None, "--type", help="Only list this flow type"),
    include_expired: bool = typer.Option(False, "--all", help="Include expired flows"),
) -> None:
    """
    List stored flows with their current status.

    Expired flows are hidden unless --all is given, in which case they are
    reported as EXPIRED.

    Example:
        flowstate flow list --type mcp_tool_validation
        # Output: u1:srv:tool:1700000000000    mcp_tool_validation    PENDING
    """
    manager = get_flow_manager()
    records = asyncio.run(
        manager.store.list_records(flow_type=flow_type, include_expired=include_expired)
    )
    if not records:
        typer.echo("No flows found")
        return
    now = manager.clock.now()
    for record in records:
        typer.echo(
            f"{record.flow_id}\t{record.flow_type}\t{record.effective_status(now).value}"
        )


@flow_app.command("show")
def flow_show(
    flow_id: str,
    flow_type: str = typer.Option(FLOW_TYPE, "--type", help="Flow type of the record"),
) -> None:
    """
    Show details for a single live flow.

    Example:
        flowstate flow show u1:srv:tool:1700000000000
        # Output: Flow u1:srv:tool:1700000000000 (mcp_tool_validation): COMPLETED
        #         Metadata: {"user_id": "u1", ...}
        #         Result: true
    """
    manager = get_flow_manager()
    record = asyncio.run(manager.get_flow_state(flow_id, flow_type))
    if record is None:
        typer.echo("Flow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Flow {record.flow_id} ({record.flow_type}): {record.status.value}")
    metadata = {k: v for k, v in record.metadata.items() if k != "state"}
    typer.echo(f"Metadata: {json.dumps(metadata, default=str)}")
    if record.result is not None:
        typer.echo(f"Result: {json.dumps(record.result, default=str)}")
    if record.error is not None:
        typer.echo(f"Error: {record.error.kind}: {record.error.message}")
    typer.echo(f"Created: {record.created_at.isoformat()}")
    typer.echo(f"Expires: {record.expires_at.isoformat()}")


@flow_app.command("sweep")
def flow_sweep() -> None:
    """Remove expired flows from the configured store."""
    manager = get_flow_manager()
    removed = asyncio.run(manager.sweep())
    typer.echo(f"Removed {removed} expired flows")


@validation_app.command("confirm")
def validation_confirm(validation_id: str) -> None:
    """
    Confirm a pending tool call validation out-of-band.

    Example:
        flowstate validation confirm u1:srv:tool:1700000000000
    """
    manager = get_flow_manager()
    try:
        asyncio.run(complete_validation_flow(validation_id, manager))
    except FlowStateError as exc:
        typer.secho(f"Failed to confirm validation: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Validation {validation_id} confirmed")


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
) -> None:
    """Serve the validation HTTP API with uvicorn."""
    import uvicorn

    from flowstate.api import create_app

    config = load_config()
    uvicorn.run(
        create_app(config),
        host=host or config.server.host,
        port=port or config.server.port,
    )


if __name__ == "__main__":
    app()
