from __future__ import annotations

import os

import uvicorn

from app.api.router import create_app
from app.utils.config import get_data_root, get_log_dir
from app.utils.logging import configure_logging

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4000


def prepare_data_directories() -> None:
    data_root = get_data_root()
    data_root.mkdir(parents=True, exist_ok=True)
    get_log_dir(data_root).mkdir(parents=True, exist_ok=True)


def main() -> None:
    prepare_data_directories()
    configure_logging()
    app = create_app()
    uvicorn.run(
        app,
        host=os.getenv("HOST", DEFAULT_HOST),
        port=int(os.getenv("PORT", DEFAULT_PORT)),
    )


if __name__ == "__main__":
    main()
