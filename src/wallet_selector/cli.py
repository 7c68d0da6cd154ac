"""
Command-line interface for the wallet selector.

Usage:
    wallet-selector prepare request.json
    wallet-selector format "openid4vp://?client_id=..." --wallet-url https://wallet.example/authorize
    wallet-selector resolve-jar https://verifier.example/request.jwt
    cat response.json | wallet-selector validate-response -
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from wallet_selector import __version__
from wallet_selector.config import Settings
from wallet_selector.errors import ValidationError, WalletSelectorError
from wallet_selector.jar import JARResolver, decode_jar
from wallet_selector.logging_config import configure_logging
from wallet_selector.models import NormalizedAuthorizationRequest, WalletResponse
from wallet_selector.protocols import default_registry, stable_json


console = Console()

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_ERROR = 2


def load_source(source: str) -> Any:
    """Load request or response data from a file, stdin, or the argument itself.

    Args:
        source: File path, "-" for stdin, or an authorization request URL.

    Returns:
        Parsed JSON, or the text unchanged when it is not JSON.
    """
    if source == "-":
        text = sys.stdin.read()
    elif "://" in source or source.startswith("?") or source.lstrip().startswith("{"):
        text = source
    else:
        path = Path(source)
        if not path.exists():
            raise click.ClickException(f"File not found: {source}")
        text = path.read_text(encoding="utf-8")

    stripped = text.strip()
    if stripped.startswith("{"):
        return json.loads(stripped)
    return stripped


def _request_table(request: Any) -> Table:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="dim")
    table.add_column("Value")

    data = request.to_dict() if isinstance(request, NormalizedAuthorizationRequest) else request
    for name, value in data.items():
        if isinstance(value, (dict, list)):
            value = stable_json(value)
        table.add_row(name, escape(str(value)))
    return table


def _response_table(response: WalletResponse) -> Table:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="dim")
    table.add_column("Value")

    table.add_row("Status", "[bold green]VALID[/]")
    table.add_row("Protocol", response.protocol)
    submission = response.presentation_submission
    if submission is not None:
        table.add_row("Submission", submission.id)
        table.add_row("Definition", submission.definition_id)
        for descriptor in submission.descriptor_map:
            table.add_row("Descriptor", f"{descriptor.id} ({descriptor.format}) {descriptor.path}")
    elif response.protocol.startswith("openid4vp"):
        table.add_row("Submission", "[yellow]missing[/]")
    return table


def _fail(error: Exception, json_output: bool) -> None:
    code = EXIT_INVALID if isinstance(error, ValidationError) else EXIT_ERROR
    if json_output:
        payload: dict[str, Any] = {"error": str(error)}
        if isinstance(error, WalletSelectorError):
            payload["code"] = error.code
        console.print_json(data=payload)
    else:
        console.print(f"[red]Error:[/] {escape(str(error))}")
    sys.exit(code)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.version_option(__version__)
@click.pass_context
def main(ctx: click.Context, verbose: bool, json_logs: bool) -> None:
    """Inspect and check Digital Credentials API requests and wallet responses."""
    settings = Settings.from_env()
    configure_logging("DEBUG" if verbose else settings.log_level, json_output=json_logs)
    ctx.obj = settings


@main.command()
@click.argument("source")
@click.option("--protocol", default="openid4vp", show_default=True, help="Protocol identifier")
@click.option("--json-output", is_flag=True, help="Output result as JSON")
@click.pass_obj
def prepare(settings: Settings, source: str, protocol: str, json_output: bool) -> None:
    """Normalize a credential request.

    SOURCE is a JSON file, an authorization request URL, or "-" for stdin.
    """
    try:
        request = default_registry(settings).prepare_request(protocol, load_source(source))
    except (WalletSelectorError, ValueError) as e:
        _fail(e, json_output)
        return

    data = request.to_dict() if isinstance(request, NormalizedAuthorizationRequest) else request
    if json_output:
        console.print_json(data=data)
    else:
        console.print(Panel(_request_table(request), title=f"Prepared {protocol} request", border_style="green"))
    sys.exit(EXIT_OK)


@main.command("format")
@click.argument("source")
@click.option("--wallet-url", required=True, help="Wallet authorization endpoint")
@click.option("--protocol", default="openid4vp", show_default=True, help="Protocol identifier")
@click.pass_obj
def format_request(settings: Settings, source: str, wallet_url: str, protocol: str) -> None:
    """Print the wallet invocation URL for a credential request."""
    try:
        registry = default_registry(settings)
        prepared = registry.prepare_request(protocol, load_source(source))
        invocation = registry.format_for_wallet(protocol, prepared, wallet_url)
    except (WalletSelectorError, ValueError) as e:
        _fail(e, json_output=False)
        return

    click.echo(invocation.authorization_url)
    sys.exit(EXIT_OK)


@main.command("resolve-jar")
@click.argument("request_uri")
@click.option("--timeout", type=float, default=None, help="HTTP request timeout in seconds")
@click.option("--no-ssl-verify", is_flag=True, help="Disable SSL certificate verification")
@click.pass_obj
def resolve_jar(settings: Settings, request_uri: str, timeout: float | None, no_ssl_verify: bool) -> None:
    """Fetch and decode a signed authorization request.

    The signature is not verified.
    """
    resolver = JARResolver(
        timeout=timeout if timeout is not None else settings.http_timeout,
        verify_ssl=settings.verify_ssl and not no_ssl_verify,
    )
    try:
        token = asyncio.run(resolver.fetch(request_uri))
        header, payload = decode_jar(token)
    except WalletSelectorError as e:
        _fail(e, json_output=False)
        return

    console.print_json(data={"header": header, "payload": payload})
    sys.exit(EXIT_OK)


@main.command("validate-response")
@click.argument("source")
@click.option("--protocol", default="openid4vp", show_default=True, help="Protocol identifier")
@click.option("--json-output", is_flag=True, help="Output result as JSON")
@click.pass_obj
def validate_response(settings: Settings, source: str, protocol: str, json_output: bool) -> None:
    """Validate a wallet response.

    SOURCE is a JSON file or "-" for stdin.
    """
    try:
        response = default_registry(settings).validate_response(protocol, load_source(source))
    except (WalletSelectorError, ValueError) as e:
        _fail(e, json_output)
        return

    if json_output:
        submission = response.presentation_submission
        console.print_json(data={
            "valid": True,
            "protocol": response.protocol,
            "presentation_submission": {
                "id": submission.id,
                "definition_id": submission.definition_id,
                "descriptor_map": [
                    {"id": d.id, "format": d.format, "path": d.path}
                    for d in submission.descriptor_map
                ],
            } if submission else None,
        })
    else:
        console.print(Panel(_response_table(response), title="Wallet Response", border_style="green"))
    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
