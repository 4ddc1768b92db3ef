"""CLI entry point for memory-curator."""

import sys
from pathlib import Path

import click

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cli.commands.memory import memory
from cli.commands.refine import refine
from cli.config import get_paths, load_config
from cli.logging_config import setup_logging


@click.group()
@click.version_option(version="0.1.0")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Memory curator - audited, reversible curation of agent memories."""
    config = load_config()
    log_config = config["logging"]
    setup_logging(
        json_mode=log_config["json_mode"],
        level="DEBUG" if verbose else log_config["level"],
        log_file=get_paths(config)["log_file"],
        file_level=log_config["file_level"],
    )


cli.add_command(memory)
cli.add_command(refine)


if __name__ == "__main__":
    cli()
