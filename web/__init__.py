"""HTTP secret endpoint for layerbuild.

Builds fetch secrets from this service instead of baking them into
build arguments or image layers.
"""

from web.app import create_app
from web.server import SecretServer

__all__ = ["SecretServer", "create_app"]
