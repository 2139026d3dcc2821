"""
Command-line interface tools for the presence relay service.
"""

import asyncio
import json
from collections.abc import Coroutine
from datetime import datetime
from typing import Any

import httpx
import typer

from .models import Mood, PresenceState

DEFAULT_BASE_URL = "http://localhost:8000"

app = typer.Typer(help="Presence relay CLI tools")


# MARK: - CLI Entry Points


def cli_heartbeat() -> None:
    """Entry point for presence-heartbeat CLI command."""
    typer.run(heartbeat)


def cli_get_presence() -> None:
    """Entry point for presence-get CLI command."""
    typer.run(get_presence)


def cli_leave() -> None:
    """Entry point for presence-leave CLI command."""
    typer.run(leave)


def cli_watch() -> None:
    """Entry point for presence-watch CLI command."""
    typer.run(watch)


# MARK: - Commands


@app.command()
def heartbeat(
    session_id: str = typer.Argument(..., help="Session identifier (8-64 chars)"),
    mood: Mood | None = typer.Option(None, "--mood", "-m", help="Mood to report"),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the presence service"
    ),
) -> None:
    """Announce a session as present, optionally with a mood."""

    async def _heartbeat() -> None:
        payload: dict[str, str] = {"sessionId": session_id}
        if mood is not None:
            payload["mood"] = mood.value

        async with _client(base_url) as client:
            response = await client.post("/api/heartbeat", json=payload)
            response.raise_for_status()
            print(f"Heartbeat sent for {session_id}")

    _run_with_error_handling(_heartbeat(), base_url)


@app.command()
def get_presence(
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the presence service"
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output raw JSON"),
) -> None:
    """Get the current presence count and mood distribution."""

    async def _get_presence() -> None:
        async with _client(base_url) as client:
            state = await _fetch_presence(client)

            if json_output:
                print(json.dumps(state.model_dump(), indent=2))
                return

            print(_format_presence(state))

    _run_with_error_handling(_get_presence(), base_url)


@app.command()
def leave(
    session_id: str = typer.Argument(..., help="Session identifier to remove"),
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the presence service"
    ),
) -> None:
    """Remove a session's presence immediately."""

    async def _leave() -> None:
        async with _client(base_url) as client:
            response = await client.request(
                "DELETE", "/api/presence", json={"sessionId": session_id}
            )
            response.raise_for_status()
            print(f"Session {session_id} left")

    _run_with_error_handling(_leave(), base_url)


@app.command()
def watch(
    base_url: str = typer.Option(
        DEFAULT_BASE_URL, "--url", "-u", help="Base URL of the presence service"
    ),
    interval: float = typer.Option(
        5.0, "--interval", "-i", help="Seconds between polls"
    ),
) -> None:
    """Poll the presence state and print it whenever it changes."""

    async def _watch() -> None:
        print(f"Watching {base_url}/api/presence... (Ctrl+C to stop)")

        last_seen: PresenceState | None = None
        async with _client(base_url) as client:
            while True:
                state = await _fetch_presence(client)
                if state != last_seen:
                    print(_format_presence(state, at=datetime.now()))
                    last_seen = state
                await asyncio.sleep(interval)

    _run_with_error_handling(_watch(), base_url)


# MARK: - Private Helpers


def _client(base_url: str) -> httpx.AsyncClient:
    """Create the HTTP client used by every command."""
    return httpx.AsyncClient(base_url=base_url)


async def _fetch_presence(client: httpx.AsyncClient) -> PresenceState:
    response = await client.get("/api/presence")
    response.raise_for_status()
    return PresenceState.model_validate(response.json())


def _format_presence(state: PresenceState, at: datetime | None = None) -> str:
    """Format presence as a one-line summary with optional timestamp."""
    noun = "person" if state.count == 1 else "people"
    summary = f"{state.count} {noun} present"

    if state.moods:
        breakdown = ", ".join(
            f"{mood}: {count}" for mood, count in sorted(state.moods.items())
        )
        summary = f"{summary} ({breakdown})"

    if at is None:
        return summary
    return f"{at.strftime('%H:%M:%S')} > {summary}"


def _run_with_error_handling(coro: Coroutine[Any, Any, Any], base_url: str) -> None:
    """Run an async coroutine with standardized error handling."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        print("\nStopped")
        raise typer.Exit(0)
    except httpx.ConnectError:
        print(f"Error: Could not connect to {base_url}")
        raise typer.Exit(1)
    except httpx.HTTPStatusError as e:
        detail = _error_detail(e.response)
        suffix = f": {detail}" if detail else ""
        print(f"Error: HTTP {e.response.status_code}{suffix}")
        raise typer.Exit(1)
    except Exception as e:
        error_msg = str(e) if str(e) else f"Unknown error of type {type(e).__name__}"
        print(f"Error: {error_msg}")
        raise typer.Exit(1)


def _error_detail(response: httpx.Response) -> str | None:
    """Pull the ``error`` message out of an error response body, if any."""
    try:
        return response.json().get("error")
    except (ValueError, AttributeError):
        return None


if __name__ == "__main__":
    app()
