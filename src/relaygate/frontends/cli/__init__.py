"""CLI frontend for relaygate.

Commands:
    relaygate serve     Run the gateway

Example:
    $ relaygate serve --port 8080 --admin-token secret
"""

from relaygate.frontends.cli.main import main

__all__ = ["main"]
