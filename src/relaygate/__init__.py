"""Relaygate - OpenAI-compatible gateway for the native generative API.

Clients written against the OpenAI Chat Completions, Embeddings and Models
APIs talk to relaygate; relaygate translates each request to the native
generateContent dialect, forwards it and translates the answer back.
Native-dialect requests and realtime websocket sessions are relayed as-is.

Layers:
    core/       Logging configuration
    gateway/    Classifier, admission control, transforms, upstream client, server
    frontends/  Command-line interface

Quick Start:
    >>> from relaygate.compose import create_gateway
    >>> import asyncio
    >>> asyncio.run(create_gateway(port=8080))
"""

from relaygate.__version__ import __version__

__all__ = ["__version__"]
