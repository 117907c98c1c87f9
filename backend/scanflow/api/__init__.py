"""API package.

This exposes router modules to simplify test imports like:
	from scanflow.api.routes.capture_sessions import router
"""

__all__ = [
	"routes",
]
