from fastmcp.utilities.logging import configure_logging, get_logger

BASE_LOGGER = get_logger("web_access_mcp")


def setup_logging(level: str = "INFO") -> None:
    """Configure the fastmcp log handler and stop records from being printed twice."""
    configure_logging(level=level)  # pyright: ignore[reportArgumentType]

    if BASE_LOGGER.parent is not None:
        BASE_LOGGER.parent.propagate = False
