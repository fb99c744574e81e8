"""
Core package of the Mailing Workshop service.

``core.app_state`` builds the FastAPI application and registers the
routers; ``core.security`` resolves the caller identity. The application
is imported explicitly (``from core.app_state import app``) so routers can
depend on ``core.security`` without a circular import.
"""
