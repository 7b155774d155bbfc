from __future__ import annotations

import uvicorn

from labledger.apps.api.main import create_app
from labledger.core.config import get_settings


def main() -> None:
    # Serve the API with env-driven host/port for compose and local runs.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
