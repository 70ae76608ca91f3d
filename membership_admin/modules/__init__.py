"""Feature modules exposing HTTP routers."""
