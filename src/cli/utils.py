"""Shared CLI utilities."""

import structlog
from rich.console import Console

console = Console()
logger = structlog.get_logger()


def get_components():
    """Initialize stores from config. All three share one SQLite database."""
    from cli.config import get_paths, load_config
    from memory import AuditTrail, MemoryStore, OwnerSettingsStore, TokenAccountant

    config = load_config()
    paths = get_paths(config)
    memory_cfg = config["memory"]

    store = MemoryStore(
        paths["db_path"],
        accountant=TokenAccountant(memory_cfg["chars_per_token"]),
        max_content_chars=memory_cfg["max_content_chars"],
    )
    audit = AuditTrail(paths["db_path"])
    owners = OwnerSettingsStore(
        paths["db_path"], default_threshold=config["refinement"]["default_threshold"]
    )

    return {
        "config": config,
        "paths": paths,
        "store": store,
        "audit": audit,
        "owners": owners,
    }
