import logging
from typing import Optional

import typer

from eksforge.errors import EksforgeError
from eksforge.logging import OutputSink
from eksforge.modules.teardown import build_delete_plan, delete_cluster
from eksforge.providers import get_provider

app = typer.Typer()


@app.command("cluster")
def delete_cluster_cmd(
    name: str = typer.Option(..., "--name", "-n", help="EKS cluster name"),
    region: Optional[str] = typer.Option(None, "--region", "-r", help="AWS region"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="AWS credentials profile"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be deleted without removing"),
):
    """Delete a cluster and every stack eksforge created for it."""
    provider = get_provider(region, profile)
    sink = OutputSink()

    if dry_run:
        print(build_delete_plan(provider, name, sink).describe())
        raise typer.Exit()

    if not yes:
        confirm = typer.confirm(f"Are you sure you want to delete cluster '{name}' in {provider.region}?", default=False)
        if not confirm:
            print("❌ Deletion cancelled.")
            raise typer.Exit()

    try:
        failures = delete_cluster(provider, name, sink)
    except EksforgeError as e:
        logging.error(f"❌ {e}")
        raise typer.Exit(code=1)
    if failures:
        raise typer.Exit(code=1)
