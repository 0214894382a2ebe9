"""
Granite Bank facilitator console.

Talks to a running server over HTTP and renders snapshots with rich:

    granite-console status
    granite-console phase phase2
    granite-console event LIBOR_RISE
    granite-console boe rescue
    granite-console notify "Two minutes left in this phase"
"""

import argparse
import json
import sys
import urllib.error
import urllib.request

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


PHASE_COLORS = {
    "lobby": "dim",
    "phase1": "cyan",
    "phase2": "yellow",
    "phase3": "red",
    "phase4": "magenta",
    "end": "green",
}

STATUS_COLORS = {"STABLE": "green", "RESCUED": "cyan", "COLLAPSED": "bold red"}

FEED_STYLES = {
    "info": "white",
    "phase": "cyan",
    "alert": "yellow",
    "critical": "bold red",
    "broadcast": "magenta",
}


class ConsoleError(Exception):
    """Server unreachable or returned an error envelope."""

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code
        super().__init__(message)


class GraniteClient:
    """Minimal JSON client for the Granite Bank API."""

    def __init__(self, base_url: str = "http://127.0.0.1:8000", timeout: int = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _make_request(self, endpoint: str, data: dict | None = None, method: str = "POST") -> dict:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        if method == "GET":
            req = urllib.request.Request(url, headers={"Accept": "application/json"})
        else:
            req = urllib.request.Request(
                url,
                data=json.dumps(data or {}).encode("utf-8"),
                headers={"Content-Type": "application/json"},
                method=method,
            )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            try:
                body = json.loads(e.read().decode("utf-8"))
            except (ValueError, UnicodeDecodeError):
                body = {}
            raise ConsoleError(body.get("error") or f"HTTP {e.code}", body.get("code")) from e
        except urllib.error.URLError as e:
            raise ConsoleError(f"Cannot reach {self.base_url}: {e.reason}") from e

    def snapshot(self) -> dict:
        return self._make_request("api/state", method="GET")["snapshot"]

    def session(self) -> dict:
        return self._make_request("api/session", method="GET")["session"]

    def set_phase(self, phase: str) -> dict:
        return self._make_request("api/gm/phase", {"phase": phase})["snapshot"]

    def trigger_event(self, key: str) -> dict:
        return self._make_request("api/gm/event", {"event_key": key})["snapshot"]

    def decide(self, decision: str) -> dict:
        return self._make_request("api/gm/boe", {"decision": decision})["snapshot"]

    def notify(self, message: str) -> dict:
        return self._make_request("api/gm/notify", {"message": message})

    def reveal(self) -> dict:
        return self._make_request("api/gm/reveal")["snapshot"]

    def rotate_join(self) -> dict:
        return self._make_request("api/session/rotate-join")["session"]

    def reset(self) -> dict:
        return self._make_request("api/session/reset")["session"]


# -----------------------------------------------------------------------------
# Rendering
# -----------------------------------------------------------------------------

def _money(value: float) -> str:
    if abs(value) >= 1_000_000:
        return f"£{value / 1_000_000:,.1f}m"
    return f"£{value:,.0f}"


def render_status_panel(snapshot: dict) -> Panel:
    """One-line session status: code, phase, bank status, headcount."""
    session = snapshot["session"]
    counts = snapshot["counts"]
    phase = session["phase"]
    phase_color = PHASE_COLORS.get(phase, "white")
    status = session["bank_status"]
    status_color = STATUS_COLORS.get(status, "white")

    parts = [
        f"[bold cyan]{session['code']}[/bold cyan]",
        f"Phase: [{phase_color}]{phase.upper()}[/{phase_color}]",
        f"Bank: [{status_color}]{status}[/{status_color}]",
        f"Depositors: {counts['depositors']}/{counts['depositor_target']}",
        f"Wholesale: {counts['wholesale']}/{counts['wholesale_target']}",
    ]
    if session["resolution_pending"]:
        parts.append("[bold yellow]AWAITING BoE DECISION[/bold yellow]")

    return Panel(Text.from_markup(" │ ".join(parts)), border_style="blue", padding=(0, 1))


def render_metrics_table(snapshot: dict) -> Table:
    metrics = snapshot["metrics"]
    lcr_color = "green" if metrics["lcr"] >= 100 else "red"
    hours_color = "green" if metrics["survival_hours"] > 48 else "red"

    table = Table(title="Liquidity", show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="dim")
    table.add_column("Value", justify="right")
    table.add_row("LCR", f"[{lcr_color}]{metrics['lcr']:.1f}%[/{lcr_color}]")
    table.add_row("NSFR", f"{metrics['nsfr']:.1f}%")
    table.add_row("Buffer", _money(metrics["liquidity_buffer"]))
    table.add_row("Survival", f"[{hours_color}]{metrics['survival_hours']}h[/{hours_color}]")
    table.add_row("Wholesale dependency", f"{metrics['wholesale_dependency_pct']:.1f}%")
    table.add_row("LIBOR", f"{metrics['libor_pct']:.2f}%")
    table.add_row("Panic", f"{metrics['panic_meter']:.0f}")
    table.add_row("Scenario", metrics["scenario"])
    table.add_row("Refusals / withdrawals", f"{metrics['wholesale_refusals']} / {metrics['depositor_withdrawals']}")
    return table


def render_gap_table(snapshot: dict) -> Table:
    table = Table(title="Maturity gap")
    table.add_column("Bucket")
    table.add_column("Assets", justify="right")
    table.add_column("Liabilities", justify="right")
    table.add_column("Net", justify="right")
    table.add_column("Cumulative", justify="right")
    for row in snapshot["gap_table"]:
        cumulative = row["cumulative_gap"]
        style = "red" if cumulative < 0 else "green"
        table.add_row(
            row["bucket"],
            _money(row["assets"]),
            _money(row["liabilities"]),
            _money(row["net_gap"]),
            f"[{style}]{_money(cumulative)}[/{style}]",
        )
    return table


def render_leaderboard(snapshot: dict, limit: int = 10) -> Table:
    table = Table(title="Leaderboard")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Name")
    table.add_column("Role")
    table.add_column("Score", justify="right")
    table.add_column("Label")
    for idx, row in enumerate(snapshot["leaderboard"][:limit], start=1):
        table.add_row(str(idx), row["display_name"], row["role"], f"{row['score']:,}", row["label"])
    return table


def render_feed(snapshot: dict, limit: int = 8) -> Panel:
    lines = Text()
    for entry in snapshot["event_feed"][:limit]:
        lines.append(entry["text"] + "\n", style=FEED_STYLES.get(entry["type"], "white"))
    if not lines.plain:
        lines.append("No events yet", style="dim")
    return Panel(lines, title="[bold]FEED[/bold]", title_align="left", border_style="blue")


def render_dashboard(snapshot: dict) -> Group:
    return Group(
        render_status_panel(snapshot),
        render_metrics_table(snapshot),
        render_gap_table(snapshot),
        render_leaderboard(snapshot),
        render_feed(snapshot),
    )


def render_session(session: dict) -> Panel:
    """Facilitator session card with the live join token."""
    body = Text.from_markup(
        f"Code: [bold cyan]{session['code']}[/bold cyan]\n"
        f"Join token: [bold]{session['join_token']}[/bold]\n"
        f"Expires: {session['join_expires_at']}\n"
        f"Participants: {session['participants']}"
    )
    return Panel(body, title="[bold]SESSION[/bold]", title_align="left", border_style="cyan")


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Granite Bank facilitator console")
    parser.add_argument("--url", default="http://127.0.0.1:8000", help="API base URL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show the live dashboard")
    sub.add_parser("session", help="Show session code and join token")
    sub.add_parser("reveal", help="Reveal participant names")
    sub.add_parser("rotate", help="Rotate the join QR token")
    sub.add_parser("reset", help="Start a fresh session")

    phase = sub.add_parser("phase", help="Advance to the next phase")
    phase.add_argument("target")

    event = sub.add_parser("event", help="Fire a scenario event")
    event.add_argument("key")

    boe = sub.add_parser("boe", help="Record the central bank decision")
    boe.add_argument("decision", choices=["rescue", "collapse"])

    notify = sub.add_parser("notify", help="Broadcast a message to the room")
    notify.add_argument("message")
    return parser


def run_command(args: argparse.Namespace, client: GraniteClient, console: Console) -> None:
    command = args.command
    if command == "status":
        console.print(render_dashboard(client.snapshot()))
    elif command == "session":
        console.print(render_session(client.session()))
    elif command == "rotate":
        console.print(render_session(client.rotate_join()))
    elif command == "reset":
        console.print(render_session(client.reset()))
    elif command == "phase":
        console.print(render_dashboard(client.set_phase(args.target)))
    elif command == "event":
        console.print(render_dashboard(client.trigger_event(args.key)))
    elif command == "boe":
        console.print(render_dashboard(client.decide(args.decision)))
    elif command == "reveal":
        console.print(render_leaderboard(client.reveal()))
    elif command == "notify":
        client.notify(args.message)
        console.print("[green]Broadcast sent.[/green]")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    console = Console()
    try:
        run_command(args, GraniteClient(args.url), console)
    except ConsoleError as e:
        code = f" [{e.code}]" if e.code else ""
        console.print(f"[bold red]Error{code}:[/bold red] {e.message}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
