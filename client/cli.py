"""Command line simulator for a headless device: register, pair, call the API."""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer

from client.config import client_settings
from client.errors import PairingClientError
from client.pairing import PairingClient

app = typer.Typer(help="Pair this device with a web account and manage its token.")

_api_option = typer.Option(None, "--api", help="API base URL, e.g. http://127.0.0.1:8080/api/v1")
_storage_option = typer.Option(None, "--storage", help="Path of the client state file")


def _client(api: Optional[str], storage: Optional[Path]) -> PairingClient:
    settings = client_settings.model_copy(
        update={k: v for k, v in {"api_base_url": api, "storage_path": storage}.items() if v is not None}
    )
    return PairingClient.from_settings(settings)


def _when(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _redact(value: str) -> str:
    if len(value) <= 12:
        return "*" * len(value)
    return value[:6] + "..." + value[-4:]


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except PairingClientError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Log progress to stderr")):
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING)


@app.command("register")
def register_cmd(api: Optional[str] = _api_option, storage: Optional[Path] = _storage_option):
    """Register this device and print its pairing code."""

    async def run():
        async with _client(api, storage) as client:
            info = await client.register_device()
            typer.echo(f"Device ID: {info.device_id}")
            typer.echo(f"Code:      {info.code}")
            typer.echo(f"Expires:   {_when(info.expires_at)}")
            if client.web_base_url:
                typer.echo(f"Open:      {client.build_pairing_url(info.code)}")

    _run(run())


@app.command("pair")
def pair_cmd(
    api: Optional[str] = _api_option,
    storage: Optional[Path] = _storage_option,
    max_wait: Optional[float] = typer.Option(None, "--max-wait", help="Seconds to wait for approval"),
):
    """Register if needed, then wait until the code is approved in the browser."""

    def show(code: str, url: Optional[str]) -> None:
        typer.echo(f"Pairing code: {code}")
        if url:
            typer.echo(f"Approve this device at: {url}")
        typer.echo("Waiting for approval...")

    async def run():
        async with _client(api, storage) as client:
            token = await client.pair(show, max_wait=max_wait)
            if token is None:
                typer.secho("Not paired: nobody approved the code in time.", fg=typer.colors.YELLOW)
                raise typer.Exit(code=2)
            typer.secho("Device paired.", fg=typer.colors.GREEN)
            typer.echo(f"Token expires: {_when(token.expires_at)}")

    _run(run())


@app.command("status")
def status_cmd(api: Optional[str] = _api_option, storage: Optional[Path] = _storage_option):
    """Show the stored registration and token."""
    client = _client(api, storage)
    state = client.state
    typer.echo(f"Status: {state.status}")

    info = client.get_device_info()
    if info:
        typer.echo(f"Registration: {info.device_id} code={info.code} expires={_when(info.expires_at)}")

    token = client.get_stored_token()
    if token:
        typer.echo(f"Token: {_redact(token.token)} device={token.device_id} expires={_when(token.expires_at)}")
    elif not info:
        typer.echo("Not registered. Run: devicepair pair")


@app.command("ping")
def ping_cmd(api: Optional[str] = _api_option, storage: Optional[Path] = _storage_option):
    """Call the API with the device token, refreshing it when due."""

    async def run():
        async with _client(api, storage) as client:
            resp = await client.authorized_fetch("GET", "/ping")
            resp.raise_for_status()
            data = resp.json()
            typer.echo(f"OK: device {data['deviceId']} belongs to {data['userEmail']}")

    _run(run())


@app.command("refresh")
def refresh_cmd(api: Optional[str] = _api_option, storage: Optional[Path] = _storage_option):
    """Rotate the device token now."""

    async def run():
        async with _client(api, storage) as client:
            token = await client.refresh(force=True)
            typer.echo(f"Token rotated, expires {_when(token.expires_at)}")

    _run(run())


@app.command("logout")
def logout_cmd(api: Optional[str] = _api_option, storage: Optional[Path] = _storage_option):
    """Forget the device token here and on the server."""

    async def run():
        async with _client(api, storage) as client:
            await client.logout()
            typer.echo("Logged out.")

    _run(run())


@app.command("clear")
def clear_cmd(
    storage: Optional[Path] = _storage_option,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete everything stored for this install, including its identity."""
    if not yes:
        typer.confirm("This forgets the install id, registration and token. Continue?", abort=True)
    client = _client(None, storage)
    client.clear_all()
    typer.echo("Cleared.")


if __name__ == "__main__":
    app()
