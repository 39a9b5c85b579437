"""
Run the EarnKit API server.

Serves the SDK ledger endpoints and the developer dashboard API:
  python run_api.py

Apply migrations first (see scripts/migrate.py).
"""

import os

import uvicorn

from earnkit.api import create_api_app


def main():
    """Run the API server."""
    app = create_api_app()

    # Get port from environment or default
    port = int(os.environ.get("API_PORT", 3000))
    host = os.environ.get("API_HOST", "0.0.0.0")

    print(f"Starting EarnKit API on {host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
