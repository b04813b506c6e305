#!/usr/bin/env python3
"""Start the AppUpdater web API."""

import uvicorn

from updater.config import SettingsStore
from updater.logging_config import setup_logging


def main(store: SettingsStore | None = None) -> None:
    """Serve the API on the host and port from the settings file."""
    web = (store or SettingsStore()).load_settings().web
    setup_logging("info")

    print("🚀 Starting AppUpdater Web API...")
    print(f"📍 URL: http://{web.host}:{web.port}")
    print(f"📄 API docs: http://{web.host}:{web.port}/docs")
    print("🛑 Press Ctrl+C to stop")
    print()

    uvicorn.run(
        "apps.web.main:app",
        host=web.host,
        port=web.port,
        reload=web.reload,
        reload_dirs=["apps", "updater"] if web.reload else None,
    )


if __name__ == "__main__":
    main()
