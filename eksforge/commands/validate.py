import typer

from eksforge.errors import EksforgeError
from eksforge.models import validate_spec
from eksforge.modules.planner import check_capabilities
from eksforge.schema import load_cluster_config

app = typer.Typer()


@app.command("cluster")
def validate_cluster(file: str = typer.Option(..., "--config-file", "-f", help="Cluster config file")):
    """Validate a cluster config file against the schema and its invariants."""
    print(f"🧪 Validating cluster file: {file}")
    try:
        spec = validate_spec(load_cluster_config(file))
        check_capabilities(spec)
    except EksforgeError as e:
        print(f"❌ {e}")
        raise typer.Exit(code=1)
    print(f"✅ {spec.metadata.log_string()} (Kubernetes {spec.metadata.version}) is valid.")
