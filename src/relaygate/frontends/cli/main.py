"""CLI entry point."""

from __future__ import annotations

import asyncio
import sys

import rich_click as click

from relaygate.compose import create_gateway
from relaygate.core.logging_config import configure_logging

click.rich_click.USE_RICH_MARKUP = True
click.rich_click.USE_MARKDOWN = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = "Try running '--help' for more information."
click.rich_click.MAX_WIDTH = 100


@click.group()
@click.version_option(package_name="relaygate")
def cli() -> None:
    """Relaygate - OpenAI-compatible gateway for the native generative API.

    **Commands:**

        relaygate serve    Run the gateway
    """
    pass


@cli.command()
@click.option("--host", default=None, help="Host to bind (or RELAYGATE_HOST)")
@click.option("--port", type=int, default=None, help="Port to bind (or RELAYGATE_PORT)")
@click.option(
    "--upstream-url",
    default=None,
    help="Upstream API base URL (or RELAYGATE_UPSTREAM_URL)",
)
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    default=None,
    help="YAML config file (or RELAYGATE_CONFIG)",
)
@click.option(
    "--admin-token",
    default=None,
    help="Bearer token for /admin/security/* (or RELAYGATE_ADMIN_TOKEN)",
)
@click.option(
    "--debug-dir",
    default=None,
    help="Save translated request/response bodies here (or RELAYGATE_DEBUG_DIR)",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level (or RELAYGATE_LOG_LEVEL)",
)
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default=None,
    help="Log format (or RELAYGATE_LOG_FORMAT)",
)
def serve(
    host: str | None,
    port: int | None,
    upstream_url: str | None,
    config_file: str | None,
    admin_token: str | None,
    debug_dir: str | None,
    log_level: str | None,
    log_format: str | None,
) -> None:
    """Run the gateway until interrupted.

    Settings resolve as: option > environment variable > config file > default.

    **Examples:**

        relaygate serve

        relaygate serve --port 8080 --admin-token secret

        relaygate serve --config relaygate.yaml --log-format json
    """
    configure_logging(level=log_level, format=log_format)  # type: ignore[arg-type]
    try:
        asyncio.run(
            create_gateway(
                host=host,
                port=port,
                upstream_url=upstream_url,
                admin_token=admin_token,
                debug_dir=debug_dir,
                config_file=config_file,
            )
        )
    except KeyboardInterrupt:
        click.echo("Gateway stopped")
    except (OSError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
