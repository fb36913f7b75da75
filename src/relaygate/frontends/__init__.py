"""Frontends - user interfaces for relaygate.

Submodules:
    cli/    Command-line interface
"""
