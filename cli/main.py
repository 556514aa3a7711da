"""
Policy Decision Point - Interactive CLI
=======================================

Command-line interface for running and inspecting the authorization
decision point.

Features:
- Catalog store setup and demo data
- Role catalog inspection
- Evaluation of JSON requests, with latency and cache statistics
- Audit log queries and SIEM export
- Predefined policy scenarios

Built with Typer and Rich.
"""

import json
import logging
import statistics
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

# Initialize CLI app and console
app = typer.Typer(
    name="authz-policy",
    help="Authorization Policy Decision Point - RBAC, regional ABAC, PII and MFA gates",
    add_completion=False
)

console = Console()

# Sub-commands
catalog_app = typer.Typer(help="Inspect the role catalog")
audit_app = typer.Typer(help="View audit logs")
test_app = typer.Typer(help="Test access decisions")

app.add_typer(catalog_app, name="catalog")
app.add_typer(audit_app, name="audit")
app.add_typer(test_app, name="test")


def get_session():
    """Get a database session."""
    from models.database import get_session
    return get_session()


def setup_logging(verbose: bool = False):
    """Route library logging through Rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def print_banner():
    """Display application banner."""
    banner = """
    ╔═══════════════════════════════════════════════════════════╗
    ║            AUTHORIZATION POLICY DECISION POINT            ║
    ║                                                           ║
    ║   RBAC + Regional ABAC + PII Sensitivity + MFA Step-Up    ║
    ║        Case-bound escalation, sharded decision cache      ║
    ╚═══════════════════════════════════════════════════════════╝
    """
    console.print(Panel(banner, style="bold blue"))


def load_catalog_provider():
    """
    Catalog provider backed by the SQL store.

    Falls back to the built-in demo catalog when the store holds no roles.
    """
    from core.catalog import RoleCatalogProvider, load_catalog_from_session
    from models.database import init_db
    from scenarios.demo_data import demo_catalog

    init_db()
    with get_session() as session:
        snapshot = load_catalog_from_session(session)

    if not snapshot.roles:
        console.print("[yellow]Catalog store is empty; using the built-in demo catalog.[/yellow]")
        snapshot = demo_catalog()
    return RoleCatalogProvider(snapshot)


def build_engine(audit: bool = True, use_cache: bool = True):
    """Policy engine wired to the SQL catalog and, optionally, the SQL audit store."""
    from core.audit import DatabaseAuditSink
    from core.config import PolicyConfig
    from core.engine import PolicyEngine

    sink = DatabaseAuditSink() if audit else None
    return PolicyEngine(
        load_catalog_provider(),
        config=PolicyConfig.from_env(),
        audit_sink=sink,
        use_cache=use_cache,
        audit_workers=0,
    )


def show_decision(decision, title: str = "Access Decision"):
    """Render a decision as a panel plus obligation and metadata tables."""
    payload = decision.to_dict()
    if decision.allowed:
        headline = "[bold green]ACCESS GRANTED[/bold green]"
    else:
        headline = "[bold red]ACCESS DENIED[/bold red]"

    reasons = "\n".join(f"  - {reason}" for reason in payload["reasons"])
    console.print(Panel(
        f"{headline}\n\n[bold]Reasons:[/bold]\n{reasons}",
        title=title,
        box=box.DOUBLE
    ))

    for name in ("obligations", "metadata"):
        values = payload[name]
        if not values:
            continue
        table = Table(title=name.capitalize(), box=box.SIMPLE)
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="green")
        for key in sorted(values):
            value = values[key]
            if isinstance(value, (dict, list)):
                value = json.dumps(value)
            table.add_row(key, str(value))
        console.print(table)


def _parse_since(hours: Optional[int]) -> Optional[datetime]:
    if hours is None:
        return None
    return datetime.now(timezone.utc) - timedelta(hours=hours)


# ============================================================================
# Database Commands
# ============================================================================

@app.command()
def init():
    """Initialize the database with schema."""
    from models.database import init_db
    init_db()
    console.print("[green]Database initialized successfully![/green]")


@app.command()
def reset():
    """Reset database (WARNING: destroys all data)."""
    if typer.confirm("This will delete the catalog and all audit logs. Are you sure?"):
        from models.database import reset_db
        reset_db()
        console.print("[yellow]Database reset complete.[/yellow]")


@app.command()
def demo():
    """Load the demo role catalog and regions."""
    from scenarios import load_demo_data
    counts = load_demo_data()
    console.print(
        f"[green]Demo data loaded: {counts['roles']} roles, "
        f"{counts['permissions']} permissions, {counts['regions']} regions.[/green]"
    )
    console.print("\nTry these commands to explore:")
    console.print("  [cyan]python main.py catalog list[/cyan]")
    console.print("  [cyan]python main.py test access --role ground_ops --region reg-ncr-manila-001 --action assign_driver[/cyan]")
    console.print("  [cyan]python main.py test scenario all[/cyan]")


# ============================================================================
# Catalog Commands
# ============================================================================

@catalog_app.command("list")
def list_roles():
    """List catalog roles, their levels and permissions."""
    provider = load_catalog_provider()
    snapshot = provider.snapshot()

    console.print(f"[dim]Catalog version {snapshot.version}[/dim]\n")
    for role in sorted(snapshot.roles.values(), key=lambda r: r.level):
        tree = Tree(f"[bold cyan]{role.name}[/bold cyan] (level {role.level})")
        if role.description:
            tree.add(f"[dim]{role.description}[/dim]")
        if role.permissions:
            perms_branch = tree.add("[green]Permissions[/green]")
            for perm in sorted(role.permissions):
                perms_branch.add(perm)
        else:
            tree.add("[yellow]No permissions[/yellow]")
        console.print(tree)
        console.print()


@catalog_app.command("regions")
def list_regions():
    """List registered regions."""
    from models.database import init_db
    from models.entities import Region

    init_db()
    with get_session() as session:
        regions = session.query(Region).order_by(Region.region_id).all()

        table = Table(title="Registered Regions", box=box.ROUNDED)
        table.add_column("Region ID", style="cyan")
        table.add_column("Name", style="green")
        table.add_column("Active", justify="center")

        for region in regions:
            active = "[green]Yes[/green]" if region.is_active else "[red]No[/red]"
            table.add_row(region.region_id, region.name or "-", active)

        console.print(table)


# ============================================================================
# Evaluation Commands
# ============================================================================

@app.command()
def evaluate(
    request_file: str = typer.Option(..., "--request", "-r", help="JSON file holding one request"),
    repeat: int = typer.Option(1, "--repeat", "-n", min=1, help="Evaluate the request N times"),
    audit: bool = typer.Option(True, "--audit/--no-audit", help="Write audited decisions to the audit store"),
    cache: bool = typer.Option(True, "--cache/--no-cache", help="Use the decision cache")
):
    """Evaluate a request read from a JSON file."""
    from core.errors import PolicyConfigurationError

    try:
        with open(request_file) as f:
            request = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        console.print(f"[red]Could not read request file: {exc}[/red]")
        raise typer.Exit(code=1)

    engine = build_engine(audit=audit, use_cache=cache)
    timings: List[float] = []
    try:
        decision = None
        for _ in range(repeat):
            started = time.perf_counter()
            decision = engine.evaluate(request)
            timings.append((time.perf_counter() - started) * 1000.0)
    except PolicyConfigurationError as exc:
        console.print(f"[red]Policy engine unavailable: {exc}[/red]")
        raise typer.Exit(code=2)
    finally:
        engine.close()

    show_decision(decision)

    if repeat > 1:
        ordered = sorted(timings)
        p95 = ordered[max(0, int(round(0.95 * len(ordered))) - 1)]
        cache_stats: Dict[str, Any] = engine.cache.stats() if engine.cache is not None else {}
        console.print(Panel(
            f"""
[bold]Evaluations:[/bold] {repeat}
[bold]Mean:[/bold] {statistics.mean(timings):.2f} ms
[bold]p95:[/bold] {p95:.2f} ms
[bold]Max:[/bold] {ordered[-1]:.2f} ms
[bold]Cache hits:[/bold] {cache_stats.get('hits', 0)} / {cache_stats.get('hits', 0) + cache_stats.get('misses', 0)}
""",
            title="Latency",
            box=box.ROUNDED
        ))


# ============================================================================
# Test Commands
# ============================================================================

@test_app.command("access")
def test_access(
    role: str = typer.Option(..., "--role", help="Demo user, by role name"),
    region: str = typer.Option(..., "--region", help="Resource region"),
    action: str = typer.Option(..., "--action", "-a", help="Action to test"),
    data_class: str = typer.Option("internal", "--data-class", help="internal, confidential or restricted"),
    pii: bool = typer.Option(False, "--pii", help="Resource contains PII"),
    case_id: str = typer.Option(None, "--case", help="Case ID for cross-region escalation"),
    mfa: bool = typer.Option(False, "--mfa", help="Present MFA verified just now"),
    channel: str = typer.Option("ui", "--channel", help="ui, api or batch")
):
    """Test an access decision for one of the demo users."""
    from scenarios.demo_data import build_request, demo_users

    users = demo_users()
    if role not in users:
        console.print(f"[red]No demo user for role '{role}'[/red]")
        console.print(f"Available: {', '.join(sorted(users))}")
        raise typer.Exit(code=1)

    context: Dict[str, Any] = {"channel": channel}
    if case_id:
        context["caseId"] = case_id
    if mfa:
        context.update({
            "mfaPresent": True,
            "mfaTimestamp": datetime.now(timezone.utc).isoformat(),
            "mfaMethod": "totp",
        })

    request = build_request(users[role], region, action, data_class=data_class, contains_pii=pii, **context)

    engine = build_engine(audit=True, use_cache=False)
    try:
        decision = engine.evaluate(request)
    finally:
        engine.close()

    console.print(f"User: [cyan]{request['user']['id']}[/cyan] ({role})")
    console.print(f"Action: [magenta]{action}[/magenta] in {region}\n")
    show_decision(decision)


@test_app.command("scenario")
def run_scenario(
    scenario_name: str = typer.Argument(
        "all", help="Scenario to run: regional, mfa, temporary_access, sensitivity, attacks, emergency, all"
    )
):
    """Run predefined policy scenarios."""
    from scenarios import run_scenarios
    run_scenarios(scenario_name)


# ============================================================================
# Audit Commands
# ============================================================================

@audit_app.command("logs")
def view_logs(
    limit: int = typer.Option(20, "--limit", "-l", help="Number of logs to show"),
    user: str = typer.Option(None, "--user", "-u", help="Filter by user ID"),
    decision: str = typer.Option(None, "--decision", "-d", help="Filter by decision (allow/deny)"),
    region: str = typer.Option(None, "--region", help="Filter by resource region")
):
    """View audit logs."""
    from core.audit import AuditLogger
    from models.database import init_db
    from models.policy import Effect

    dec = None
    if decision:
        try:
            dec = Effect(decision.lower())
        except ValueError:
            console.print(f"[red]Unknown decision '{decision}', use allow or deny[/red]")
            raise typer.Exit(code=1)

    init_db()
    with get_session() as session:
        audit_logger = AuditLogger(session)
        logs = audit_logger.get_logs(user_id=user, decision=dec, region_id=region, limit=limit)

        table = Table(title="Audit Logs", box=box.ROUNDED)
        table.add_column("Time", style="dim")
        table.add_column("User", style="cyan")
        table.add_column("Action")
        table.add_column("Region")
        table.add_column("Decision")
        table.add_column("Level")
        table.add_column("Reason")

        for log in logs:
            dec_style = "green" if log.decision == Effect.ALLOW else "red"
            reasons = json.loads(log.reasons) if log.reasons else []
            table.add_row(
                log.timestamp.strftime("%H:%M:%S") if log.timestamp else "-",
                log.user_id or "-",
                log.action or "-",
                log.region_id or "-",
                f"[{dec_style}]{log.decision.value}[/{dec_style}]",
                log.audit_level or "-",
                (reasons[-1] if reasons else "-")[:40]
            )

        console.print(table)


@audit_app.command("stats")
def audit_stats(hours: int = typer.Option(24, help="Analysis period in hours")):
    """Show decision statistics."""
    from core.audit import AuditLogger
    from models.database import init_db

    init_db()
    with get_session() as session:
        audit_logger = AuditLogger(session)
        stats = audit_logger.get_statistics(hours=hours)

        levels = "\n".join(
            f"  {level}: {count}" for level, count in sorted(stats['by_audit_level'].items())
        ) or "  -"
        top = sorted(stats['top_denial_reasons'].items(), key=lambda item: item[1], reverse=True)[:5]
        denial_lines = "\n".join(f"  {count} x {reason}" for reason, count in top) or "  -"

        console.print(Panel(
            f"""
[bold]Period:[/bold] Last {stats['period_hours']} hours

[bold]Total Decisions:[/bold] {stats['total_decisions']}
[bold]Allows:[/bold] [green]{stats['allows']}[/green] ({stats['allow_rate']:.1%})
[bold]Denials:[/bold] [red]{stats['denials']}[/red] ({stats['denial_rate']:.1%})

[bold]Unique Users:[/bold] {stats['unique_users']}
[bold]Served From Cache:[/bold] {stats['cache_hits']}

[bold]By Audit Level:[/bold]
{levels}

[bold]Top Denial Reasons:[/bold]
{denial_lines}
""",
            title="Decision Statistics",
            box=box.ROUNDED
        ))


@audit_app.command("denials")
def recent_denials(hours: int = typer.Option(24, help="Look back period")):
    """Show recent audited denials (security monitoring)."""
    from core.audit import AuditLogger
    from models.database import init_db

    init_db()
    with get_session() as session:
        audit_logger = AuditLogger(session)
        denials = audit_logger.get_recent_denials(hours=hours)

        if not denials:
            console.print("[green]No audited denials in the specified period.[/green]")
            return

        table = Table(title=f"Audited Denials (Last {hours}h)", box=box.ROUNDED)
        table.add_column("Time", style="dim")
        table.add_column("User", style="cyan")
        table.add_column("Action", style="yellow")
        table.add_column("Region")
        table.add_column("Flags")
        table.add_column("Reason")

        for log in denials:
            reasons = json.loads(log.reasons) if log.reasons else []
            flags = json.loads(log.security_flags) if log.security_flags else []
            table.add_row(
                log.timestamp.strftime("%Y-%m-%d %H:%M:%S") if log.timestamp else "-",
                log.user_id or "-",
                log.action or "-",
                log.region_id or "-",
                ", ".join(flags) or "-",
                (reasons[0] if reasons else "-")[:40]
            )

        console.print(table)


@audit_app.command("export")
def export_logs(
    output: str = typer.Option("audit_export.json", "--output", "-o", help="Output file"),
    format: str = typer.Option("json", "--format", "-f", help="Format: json or csv"),
    hours: Optional[int] = typer.Option(None, "--hours", help="Only export the last N hours")
):
    """Export audit logs for SIEM integration."""
    from core.audit import AuditLogger
    from models.database import init_db

    init_db()
    with get_session() as session:
        audit_logger = AuditLogger(session)
        try:
            data = audit_logger.export_logs(start_time=_parse_since(hours), format=format)
        except ValueError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1)

    with open(output, 'w') as f:
        f.write(data)

    console.print(f"[green]Exported audit logs to {output}[/green]")


# ============================================================================
# Main Entry Point
# ============================================================================

@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")
):
    """
    Authorization Policy Decision Point

    Evaluates access requests against role permissions, regional
    boundaries, case-bound escalation grants, PII sensitivity and MFA
    freshness rules.
    """
    setup_logging(verbose)
    if ctx.invoked_subcommand is None:
        print_banner()
        console.print("\nUse [cyan]--help[/cyan] to see available commands.\n")
        console.print("Quick Start:")
        console.print("  1. [cyan]python main.py init[/cyan]          - Initialize database")
        console.print("  2. [cyan]python main.py demo[/cyan]          - Load demo catalog")
        console.print("  3. [cyan]python main.py catalog list[/cyan]  - View roles")
        console.print("  4. [cyan]python main.py evaluate --request request.json[/cyan]")
        console.print()


if __name__ == "__main__":
    app()
