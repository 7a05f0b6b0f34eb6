"""Code Remote CLI - run the server and talk to a running instance."""

import json
import os
import re
import subprocess
import time
import uuid
from pathlib import Path

import httpx
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from app.core.signature import EVENT_HEADER, SIGNATURE_HEADER, TIMESTAMP_HEADER, sign

# Load .env file from project root (parent of app/ directory)
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path)

app = typer.Typer(help="Code Remote CLI")
sessions_app = typer.Typer(help="Session management commands")
webhook_app = typer.Typer(help="Send signed test webhooks")
app.add_typer(sessions_app, name="sessions")
app.add_typer(webhook_app, name="webhook")

console = Console()

# Configuration
API_BASE_URL = os.getenv("CODE_REMOTE_URL", "http://localhost:3001")
API_KEY = os.getenv("API_SECRET_KEY", "dev-secret-key")
WEBHOOK_SECRET = os.getenv("ASTRID_WEBHOOK_SECRET")


def get_client() -> httpx.Client:
    """Get configured HTTP client."""
    return httpx.Client(
        base_url=API_BASE_URL,
        headers={"X-API-Key": API_KEY},
        timeout=30.0,
    )


def get_current_repo() -> str:
    """Get ``owner/repo`` of the git repository in the current directory.

    Raises:
        typer.Exit: If not in a git repository or no GitHub remote found
    """
    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        console.print("[red]✗[/red] Not in a git repository or no remote 'origin' found")
        console.print("  Either run from a git repo or specify --repo explicitly")
        raise typer.Exit(1) from None

    remote_url = result.stdout.strip()
    # Handles https://github.com/org/repo.git and git@github.com:org/repo.git
    match = re.search(r"github\.com[:/](.+/.+?)(?:\.git)?$", remote_url)
    if not match:
        console.print("[red]✗[/red] Could not parse GitHub repo from remote URL")
        console.print(f"  Remote: {remote_url}")
        raise typer.Exit(1)
    return match.group(1)


@app.command("serve")
def serve(
    host: str = typer.Option(None, "--host", help="Bind address (defaults to HOST)"),
    port: int = typer.Option(None, "--port", help="Port (defaults to PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the webhook server."""
    import uvicorn

    from app.core.config import settings

    uvicorn.run(
        "app.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


@app.command("health")
def health():
    """Show provider availability and active sessions."""
    with get_client() as client:
        response = client.get("/health")
        response.raise_for_status()
        data = response.json()

    color = "green" if data["status"] == "healthy" else "yellow"
    console.print(f"Status: [{color}]{data['status']}[/{color}]")
    for provider, available in data["providers"].items():
        mark = "[green]✓[/green]" if available else "[red]✗[/red]"
        console.print(f"  {mark} {provider}")
    console.print(f"Active sessions: {data['activeSessions']}")


@sessions_app.command("list")
def list_sessions():
    """List sessions."""
    with get_client() as client:
        response = client.get("/sessions")
        response.raise_for_status()
        data = response.json()

    sessions = data["sessions"]
    if not sessions:
        console.print("[yellow]No sessions found[/yellow]")
        return

    table = Table(title=f"Sessions ({data['count']})")
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Status", style="magenta")
    table.add_column("Provider")
    table.add_column("Title", style="white")
    table.add_column("Messages", justify="right")
    table.add_column("Updated", style="dim")

    for session in sessions:
        title = session["title"]
        title = title[:50] + "..." if len(title) > 50 else title
        table.add_row(
            session["task_id"][:8],
            session["status"],
            session["provider"],
            title,
            str(session["message_count"]),
            session["updated_at"][:19],
        )

    console.print(table)


@sessions_app.command("delete")
def delete_session(task_id: str = typer.Argument(..., help="Task ID")):
    """Delete a task's session."""
    with get_client() as client:
        response = client.delete(f"/sessions/{task_id}")

    if response.status_code == 404:
        console.print(f"[red]✗[/red] No session for task {task_id}")
        raise typer.Exit(1)
    response.raise_for_status()

    data = response.json()
    console.print(f"[green]✓[/green] {data['message']} (was {data['previous_status']})")


@sessions_app.command("reset-stuck")
def reset_stuck():
    """Mark sessions running for more than an hour as interrupted."""
    with get_client() as client:
        response = client.post("/sessions/reset-stuck")
        response.raise_for_status()
        data = response.json()

    console.print(f"[green]✓[/green] {data['message']}")
    for task_id in data["reset_task_ids"]:
        console.print(f"  {task_id}")


def build_payload(
    task_id: str,
    title: str,
    description: str,
    repo: str | None,
    agent_email: str,
    comment: str | None = None,
) -> dict:
    """Build a webhook body shaped like the task tracker's."""
    payload = {
        "task": {"id": task_id, "title": title, "description": description},
        "list": {"id": "cli", "name": "CLI", "githubRepositoryId": repo},
        "aiAgent": {"email": agent_email},
        "comments": [],
    }
    if comment is not None:
        payload["comment"] = {"content": comment, "authorName": "CLI"}
        payload["comments"] = [{"content": comment, "authorName": "CLI"}]
    return payload


def send_signed(event: str, payload: dict) -> None:
    if not WEBHOOK_SECRET:
        console.print("[red]✗[/red] ASTRID_WEBHOOK_SECRET is not set")
        raise typer.Exit(1)

    body = json.dumps(payload)
    timestamp = str(int(time.time() * 1000))
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: f"sha256={sign(body, WEBHOOK_SECRET, timestamp)}",
        TIMESTAMP_HEADER: timestamp,
        EVENT_HEADER: event,
    }

    with get_client() as client:
        response = client.post("/webhook", content=body, headers=headers)

    if response.status_code != 200:
        console.print(f"[red]✗[/red] {response.status_code}: {response.text}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] {event} accepted for task [bold]{payload['task']['id']}[/bold]")


@webhook_app.command("assign")
def send_assigned(
    title: str = typer.Argument(..., help="Task title"),
    description: str = typer.Option("", "--description", "-d", help="Task description"),
    repo: str = typer.Option(
        None, "--repo", help="GitHub repo (owner/name, defaults to current git repo)"
    ),
    no_repo: bool = typer.Option(False, "--no-repo", help="Run without a repository"),
    agent: str = typer.Option("claude@astrid.cc", "--agent", help="Agent email"),
    task_id: str = typer.Option(None, "--task-id", help="Task ID (random if omitted)"),
):
    """Send a signed task.assigned event."""
    if not no_repo and repo is None:
        repo = get_current_repo()
    payload = build_payload(
        task_id or str(uuid.uuid4()), title, description, None if no_repo else repo, agent
    )
    send_signed("task.assigned", payload)


@webhook_app.command("comment")
def send_comment(
    task_id: str = typer.Argument(..., help="Task ID"),
    content: str = typer.Argument(..., help="Comment text"),
    agent: str = typer.Option("claude@astrid.cc", "--agent", help="Agent email"),
):
    """Send a signed comment.created event."""
    payload = build_payload(task_id, "", "", None, agent, comment=content)
    send_signed("comment.created", payload)


if __name__ == "__main__":
    app()
