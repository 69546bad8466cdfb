"""CLI entry point."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import rich_click as click

# Configure rich-click styling
click.rich_click.USE_RICH_MARKUP = True
click.rich_click.USE_MARKDOWN = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = "Try running '--help' for more information."
click.rich_click.ERRORS_EPILOGUE = ""
click.rich_click.MAX_WIDTH = 100


def _load_json(file: str | None) -> Any:
    """Read a JSON document from a file, or stdin when no file is given."""
    try:
        text = Path(file).read_text() if file else sys.stdin.read()
        return json.loads(text)
    except (OSError, json.JSONDecodeError) as e:
        raise click.ClickException(f"Cannot read request JSON: {e}") from e


@click.group()
@click.version_option(package_name="switchboard")
def cli() -> None:
    """switchboard - Anthropic Messages API gateway for OpenAI-compatible backends.

    **Commands:**

        switchboard serve          Run the gateway server

        switchboard translate      Show the upstream request for a source request

        switchboard count-tokens   Estimate input tokens for a request
    """
    pass


@cli.command()
@click.option("--config", "config_file", default=None, help="YAML config file")
@click.option("--host", default=None, help="Host to bind (default: 127.0.0.1)")
@click.option("--port", type=int, default=None, help="Port to bind (default: 8082)")
@click.option("--upstream-base-url", default=None, help="Upstream API root")
@click.option("--upstream-api-key", default=None, help="Upstream API key")
@click.option("--upstream-model", default=None, help="Model name sent upstream")
@click.option("--request-timeout", type=float, default=None, help="Upstream timeout in seconds")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
@click.option(
    "--env",
    "environment",
    type=click.Choice(["development", "production"]),
    default=None,
    help="Environment mode (production hides internal error details)",
)
@click.option("--debug-dir", default=None, help="Save request/response payloads here")
@click.option(
    "--env-file", default=".env", show_default=True, help="dotenv file to load if present"
)
def serve(config_file: str | None, env_file: str, **options: Any) -> None:
    """Run the gateway server.

    Options override environment variables, which override the config file.

    **Examples:**

        switchboard serve --upstream-base-url http://localhost:4000 --upstream-model gpt-4o

        UPSTREAM_API_KEY=sk-... switchboard serve --port 8082

        switchboard serve --config switchboard.yaml
    """
    from switchboard.config import load_config, load_env_file
    from switchboard.gateway.server import GatewayServer
    from switchboard.logging_config import configure_logging

    load_env_file(env_file)
    try:
        config = load_config(config_file, **options)
    except (OSError, ValueError) as e:
        raise click.ClickException(str(e)) from e

    configure_logging(
        level=config.log_level,
        format="json" if config.is_production else "text",
    )

    server = GatewayServer(config=config)
    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        pass


@cli.command()
@click.argument("file", required=False)
@click.option("--model", "-m", default=None, help="Upstream model (default: from config)")
@click.option("--config", "config_file", default=None, help="YAML config file")
def translate(file: str | None, model: str | None, config_file: str | None) -> None:
    """Print the upstream request a source request translates to.

    Reads an Anthropic Messages request from FILE (or stdin), validates it
    and prints the OpenAI Chat Completions request the gateway would send.

    **Examples:**

        switchboard translate request.json

        cat request.json | switchboard translate --model gpt-4o-mini
    """
    from switchboard.config import load_config, load_env_file
    from switchboard.gateway.transforms import (
        AnthropicTransformer,
        OpenAITransformer,
        validate_request,
    )

    body = _load_json(file)
    errors = validate_request(body)
    if errors:
        raise click.ClickException("; ".join(str(e) for e in errors))

    if model is None:
        try:
            load_env_file()
            model = load_config(config_file).upstream_model
        except (OSError, ValueError) as e:
            raise click.ClickException(str(e)) from e

    chat_request = AnthropicTransformer().to_internal(body)
    result = OpenAITransformer().to_upstream(chat_request, model)
    click.echo(json.dumps(result, indent=2, ensure_ascii=False))


@cli.command("count-tokens")
@click.argument("file", required=False)
def count_tokens(file: str | None) -> None:
    """Estimate input tokens for a request (about 4 characters per token).

    **Examples:**

        switchboard count-tokens request.json
    """
    from switchboard.gateway.tokens import estimate_input_tokens

    body = _load_json(file)
    messages = body.get("messages") if isinstance(body, dict) else None
    if not isinstance(messages, list):
        raise click.ClickException("messages must be an array")

    click.echo(json.dumps({"input_tokens": estimate_input_tokens(messages, body.get("system"))}))


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
