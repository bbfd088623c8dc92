"""Run the service locally: ``python -m tempadmin``."""

from __future__ import annotations

import uvicorn

from tempadmin.settings import Settings


def main() -> None:
    settings = Settings.from_env()
    # Loopback by default: the requester surface has no authentication of its own
    uvicorn.run("tempadmin.main:app", host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
