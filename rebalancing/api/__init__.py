"""HTTP transport for the rebalancing service."""

from .routes import build_router, create_app, run_trigger_loop, status_for_error

__all__ = ["build_router", "create_app", "run_trigger_loop", "status_for_error"]
