# src/simchain/api/__main__.py
from __future__ import annotations

import os

import uvicorn

from simchain.env import load_dotenv_if_present


def main() -> None:
    # .env must be applied before the app config reads SIMCHAIN_* vars.
    load_dotenv_if_present()

    from simchain.api.app import create_app
    from simchain.runtime.app_config import load_app_config

    cfg = load_app_config()
    uvicorn.run(
        create_app(),
        host=os.getenv("SIMCHAIN_API_HOST", cfg.api_host),
        port=int(os.getenv("SIMCHAIN_API_PORT", str(cfg.api_port))),
        log_level=cfg.log_level.lower(),
    )


if __name__ == "__main__":
    main()
