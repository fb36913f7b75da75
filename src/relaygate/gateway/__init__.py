"""Relaygate gateway - translation between API dialects.

Components:
- Classifier: decides the dialect of a request and extracts its credential
- Admission: rate limiting and scan detection ahead of any forwarding
- Transforms: request, response and stream conversion
- Clients: upstream HTTP client with retry
- Relay: websocket relay for realtime sessions

Usage (via compose.py convenience functions):
    from relaygate.compose import create_gateway
    import asyncio

    asyncio.run(create_gateway(port=8080, admin_token="secret"))

Usage (direct):
    from relaygate.gateway import GatewayConfig, GatewayServer
    import asyncio

    async def main():
        server = GatewayServer(config=GatewayConfig(port=8080))
        await server.serve()

    asyncio.run(main())
"""

from relaygate.gateway.server import GatewayConfig, GatewayServer

__all__ = ["GatewayConfig", "GatewayServer"]
