"""ASGI entry point for the workflow engine.

Serve with ``uvicorn flowrunner.main:app`` or ``python -m flowrunner.main``.
"""

import uvicorn

from .config import load_config
from .factory import create_app

config = load_config()
app = create_app(config)


if __name__ == "__main__":
    uvicorn.run("flowrunner.main:app", **config.get_uvicorn_config())
