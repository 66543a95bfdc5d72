"""HTTP surface for starting, following and replaying runs."""

from agentrun.api.server import create_app

__all__ = ["create_app"]
