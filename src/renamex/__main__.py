"""Run the RenameX server with uvicorn."""

from __future__ import annotations

import uvicorn

from renamex.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run("renamex.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
