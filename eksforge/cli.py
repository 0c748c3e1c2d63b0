import logging
import sys

import typer

from eksforge.commands import create, delete, validate

app = typer.Typer(help="eksforge - EKS cluster provisioning CLI")

debug_mode = False


def setup_logging(debug: bool = False):
    """Configure logging based on debug mode."""
    log_level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler()
        ]
    )
    # Disable debug logging for noisy libraries
    if not debug:
        for noisy in ('botocore', 'boto3', 'urllib3', 'kubernetes'):
            logging.getLogger(noisy).setLevel(logging.WARNING)


app.add_typer(create.app, name="create", help="Create resources")
app.add_typer(delete.app, name="delete", help="Delete resources")
app.add_typer(validate.app, name="validate", help="Validate cluster config files")


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """eksforge - EKS cluster provisioning CLI."""
    global debug_mode
    debug_mode = debug
    setup_logging(debug)
    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.debug("Debug mode enabled")


def run():
    try:
        app()
    except Exception as e:
        if debug_mode:
            import traceback
            logging.error(f"Unhandled exception: {e}\n{traceback.format_exc()}")
        else:
            logging.error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
