"""
REST API module for EarnKit.
Serves the SDK's ledger endpoints and the developer dashboard.
"""

from .routes import router, create_api_app

__all__ = ["router", "create_api_app"]
