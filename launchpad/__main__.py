"""
Entry point for running launchpad via `python -m launchpad`.

Configures logging and starts the FastAPI server with uvicorn.
"""

import uvicorn

from .config import config
from .main import configure_logging


def main():
    """Run the launchpad server."""
    config.ensure_dirs()
    configure_logging(config)
    uvicorn.run(
        "launchpad.main:create_app",
        factory=True,
        host=config.host,
        port=config.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
