"""
Access Control - Command Line Interface
=======================================

Command-line front end for administering the access model, running
permission checks and reviewing both audit logs.

Features:
- User, role and permission management (every change is audited)
- Ad-hoc permission checks with full denial detail
- Access attempt and mutation audit review, statistics and export
- Hash chain verification of the mutation audit log

Built with Typer and Rich.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.panel import Panel
from rich.tree import Tree
from rich import box

from core import config
from core.exceptions import AccessControlError
from core.services import AccessControlServices
from models.domain import AuditEntityType, Severity, utcnow

# Initialize CLI app and console
app = typer.Typer(
    name="access-control",
    help="Access Control - ABAC permission engine and audit trail",
    add_completion=False
)

console = Console()

# Sub-commands
users_app = typer.Typer(help="Manage users")
roles_app = typer.Typer(help="Manage roles and role assignments")
permissions_app = typer.Typer(help="Manage permissions")
audit_app = typer.Typer(help="Review audit logs")
test_app = typer.Typer(help="Run permission check scenarios")

app.add_typer(users_app, name="users")
app.add_typer(roles_app, name="roles")
app.add_typer(permissions_app, name="permissions")
app.add_typer(audit_app, name="audit")
app.add_typer(test_app, name="test")

# Set by the root callback
_settings = {'database_url': None, 'max_entries': None}

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]


@contextmanager
def open_services():
    """Open the services for one command; access model errors end the command."""
    services = AccessControlServices.open(
        database_url=_settings['database_url'],
        max_entries=_settings['max_entries']
    )
    try:
        yield services
    except (AccessControlError, ValueError) as e:
        console.print(f"[red]Error: {getattr(e, 'message', e)}[/red]")
        raise typer.Exit(code=1)
    finally:
        services.close()


def print_banner():
    """Display application banner."""
    banner = """
    ╔═══════════════════════════════════════════════════════════╗
    ║              ACCESS CONTROL PERMISSION ENGINE             ║
    ║                                                           ║
    ║     Roles + Conditional Permissions + Audit Trail         ║
    ╚═══════════════════════════════════════════════════════════╝
    """
    console.print(Panel(banner, style="bold blue"))


def _json_option(value: Optional[str], name: str):
    if not value:
        return {}
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON for {name}: {e}[/red]")
        raise typer.Exit(code=1)


def _format_conditions(conditions) -> str:
    return " AND ".join(f"{c.field} {c.operator} {c.value!r}" for c in conditions)


# ============================================================================
# Database Commands
# ============================================================================

@app.command()
def init():
    """Initialize the database with schema."""
    with open_services() as services:
        console.print(f"[green]Database initialized at {services.database.url}[/green]")


@app.command()
def reset(yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation")):
    """Reset database (WARNING: destroys all data)."""
    if yes or typer.confirm("This will delete all data, audit logs included. Are you sure?"):
        with open_services() as services:
            services.database.reset_db()
        console.print("[yellow]Database reset complete.[/yellow]")


@app.command()
def demo():
    """Load demo data (replaces all existing data)."""
    from scenarios import load_demo_data

    with open_services() as services:
        counts = load_demo_data(services)

    console.print("[green]Demo data loaded successfully![/green]")
    console.print("\nCreated:")
    console.print(f"  - {counts['users']} users")
    console.print(f"  - {counts['roles']} roles (with hierarchy)")
    console.print(f"  - {counts['permissions']} permissions")
    console.print(f"  - {counts['assignments']} role assignments")
    console.print(f"  - {counts['audit_entries']} mutation audit entries")
    console.print("\nTry these commands to explore:")
    console.print("  [cyan]python main.py users show u1[/cyan]")
    console.print("  [cyan]python main.py check --user u1 --resource tickets --action update "
                  "--context '{\"department\": \"Finance\"}'[/cyan]")
    console.print("  [cyan]python main.py test scenario[/cyan]")


# ============================================================================
# User Commands
# ============================================================================

@users_app.command("list")
def list_users():
    """List all users."""
    with open_services() as services:
        subjects = services.store.list_subjects()

    table = Table(title="Users", box=box.ROUNDED)
    table.add_column("ID", style="cyan")
    table.add_column("Username", style="green")
    table.add_column("Full Name")
    table.add_column("Department")
    table.add_column("Legacy Role")
    table.add_column("Status", justify="center")

    for subject in subjects:
        if not subject.is_active:
            status = "[red]Inactive[/red]"
        elif subject.is_locked:
            status = "[yellow]Locked[/yellow]"
        else:
            status = "[green]Active[/green]"
        table.add_row(
            subject.id,
            subject.username,
            subject.full_name or "-",
            subject.department or "-",
            subject.legacy_role or "-",
            status
        )

    console.print(table)


@users_app.command("create")
def create_user(
    user_id: str = typer.Option(..., "--id", help="User id"),
    username: str = typer.Option(..., help="Username"),
    full_name: str = typer.Option("", help="Full name"),
    department: Optional[str] = typer.Option(None, help="Department"),
    legacy_role: Optional[str] = typer.Option(None, help="Legacy role name"),
    performed_by: str = typer.Option("cli", "--by", help="Administrator performing the change")
):
    """Create a new user."""
    with open_services() as services:
        subject = services.admin.create_subject(
            user_id, username, performed_by,
            full_name=full_name, department=department, legacy_role=legacy_role
        )
    console.print(f"[green]Created user: {subject.username} (ID: {subject.id})[/green]")


@users_app.command("show")
def show_user(user_id: str = typer.Argument(..., help="User id")):
    """Show a user's roles and effective permissions."""
    with open_services() as services:
        subject = services.store.get_subject(user_id)
        if subject is None:
            console.print(f"[red]User '{user_id}' not found[/red]")
            raise typer.Exit(code=1)
        summary = services.engine.summarize_subject(user_id)

    user_info = f"""
[bold]ID:[/bold] {subject.id}
[bold]Username:[/bold] {subject.username}
[bold]Full Name:[/bold] {subject.full_name or 'N/A'}
[bold]Department:[/bold] {subject.department or 'N/A'}
[bold]Legacy Role:[/bold] {subject.legacy_role or 'N/A'}
[bold]Status:[/bold] {'[green]Active[/green]' if subject.is_active else '[red]Inactive[/red]'}{' [yellow](locked)[/yellow]' if subject.is_locked else ''}
[bold]Role Source:[/bold] {summary['source']}
"""
    console.print(Panel(user_info, title="User Information", box=box.ROUNDED))

    if summary['roles']:
        roles_tree = Tree("[bold]Effective Roles[/bold]")
        for role in summary['roles']:
            roles_tree.add(f"[cyan]{role['name']}[/cyan] ({role['type']}, ID: {role['id']})")
        console.print(roles_tree)
    else:
        console.print("[yellow]No effective roles[/yellow]")

    if summary['permissions']:
        console.print("\n[bold]Effective Permissions:[/bold]")
        for perm in summary['permissions']:
            conditions = " AND ".join(
                f"{c['field']} {c['operator']} {c['value']!r}" for c in perm['conditions']
            )
            suffix = f" [dim]when {conditions}[/dim]" if conditions else ""
            console.print(f"  [green]✓[/green] {perm['action']}:{perm['resource']}{suffix}")
    else:
        console.print("[yellow]No permissions[/yellow]")


@users_app.command("activate")
def activate_user(
    user_id: str = typer.Argument(..., help="User id"),
    performed_by: str = typer.Option("cli", "--by", help="Administrator performing the change")
):
    """Activate a user account."""
    with open_services() as services:
        services.admin.set_user_active(user_id, True, performed_by)
    console.print(f"[green]User '{user_id}' activated[/green]")


@users_app.command("deactivate")
def deactivate_user(
    user_id: str = typer.Argument(..., help="User id"),
    reason: Optional[str] = typer.Option(None, help="Reason for the change"),
    performed_by: str = typer.Option("cli", "--by", help="Administrator performing the change")
):
    """Deactivate a user account."""
    with open_services() as services:
        services.admin.set_user_active(user_id, False, performed_by, reason=reason)
    console.print(f"[yellow]User '{user_id}' deactivated[/yellow]")


@users_app.command("lock")
def lock_user(
    user_id: str = typer.Argument(..., help="User id"),
    reason: str = typer.Option(..., help="Reason for the lock"),
    performed_by: str = typer.Option("cli", "--by", help="Administrator performing the change")
):
    """Lock a user account."""
    with open_services() as services:
        services.admin.lock_user(user_id, performed_by, reason)
    console.print(f"[yellow]User '{user_id}' locked[/yellow]")


# ============================================================================
# Role Commands
# ============================================================================

@roles_app.command("list")
def list_roles():
    """List all roles and their permissions."""
    with open_services() as services:
        roles = services.store.list_roles()

    for role in roles:
        status = "" if role.is_active else " [red](inactive)[/red]"
        tree = Tree(f"[bold cyan]{role.name}[/bold cyan] ({role.type.value}, ID: {role.id}){status}")
        if role.description:
            tree.add(f"[dim]{role.description}[/dim]")
        if role.parent_role_id:
            tree.add(f"[yellow]Inherits from {role.parent_role_id}[/yellow]")
        if role.permissions:
            perms_branch = tree.add("[green]Permissions[/green]")
            for perm in role.permissions:
                label = f"{perm.action.value}:{perm.resource.value}"
                if perm.conditions:
                    label += f" [dim]when {_format_conditions(perm.conditions)}[/dim]"
                perms_branch.add(label)
        else:
            tree.add("[yellow]No direct permissions[/yellow]")

        console.print(tree)
        console.print()


@roles_app.command("create")
def create_role(
    name: str = typer.Option(..., help="Role name"),
    role_type: str = typer.Option(..., "--type", "-t", help="Role kind, e.g. department_manager"),
    description: str = typer.Option("", help="Role description"),
    parent: Optional[str] = typer.Option(None, help="Parent role id to inherit from"),
    performed_by: str = typer.Option("cli", "--by", help="Administrator performing the change")
):
    """Create a new role."""
    with open_services() as services:
        role = services.admin.create_role(
            name, role_type, performed_by, description=description, parent_role_id=parent
        )
    console.print(f"[green]Created role: {role.name} (ID: {role.id})[/green]")


@roles_app.command("assign")
def assign_role(
    user_id: str = typer.Option(..., "--user", "-u", help="User id"),
    role_id: str = typer.Option(..., "--role", "-r", help="Role id"),
    expires_in_days: Optional[int] = typer.Option(None, "--expires-in-days", help="Assignment lifetime"),
    performed_by: str = typer.Option("cli", "--by", help="Administrator performing the change")
):
    """Assign a role to a user."""
    expires_at = utcnow() + timedelta(days=expires_in_days) if expires_in_days is not None else None
    with open_services() as services:
        services.admin.assign_role_to_user(user_id, role_id, performed_by, expires_at=expires_at)
    console.print(f"[green]Assigned role '{role_id}' to user '{user_id}'[/green]")


@roles_app.command("revoke")
def revoke_role(
    user_id: str = typer.Option(..., "--user", "-u", help="User id"),
    role_id: str = typer.Option(..., "--role", "-r", help="Role id"),
    reason: Optional[str] = typer.Option(None, help="Reason for the revocation"),
    performed_by: str = typer.Option("cli", "--by", help="Administrator performing the change")
):
    """Revoke a role from a user."""
    with open_services() as services:
        services.admin.revoke_role_from_user(user_id, role_id, performed_by, reason=reason)
    console.print(f"[yellow]Revoked role '{role_id}' from user '{user_id}'[/yellow]")


@roles_app.command("grant")
def grant_permission(
    role_id: str = typer.Option(..., "--role", "-r", help="Role id"),
    permission_id: str = typer.Option(..., "--permission", "-p", help="Permission id"),
    performed_by: str = typer.Option("cli", "--by", help="Administrator performing the change")
):
    """Grant a permission to a role."""
    with open_services() as services:
        granted = services.admin.grant_permission(role_id, permission_id, performed_by)
    if granted:
        console.print(f"[green]Granted '{permission_id}' to role '{role_id}'[/green]")
    else:
        console.print(f"[yellow]Role '{role_id}' already has '{permission_id}'[/yellow]")


# ============================================================================
# Permission Commands
# ============================================================================

@permissions_app.command("create")
def create_permission(
    resource: str = typer.Option(..., "--resource", help="Resource kind, e.g. tickets"),
    action: str = typer.Option(..., "--action", help="Action, e.g. update"),
    condition: Optional[List[str]] = typer.Option(
        None, "--condition", "-c",
        help='Condition as JSON, e.g. \'{"field": "department", "operator": "eq", "value": "@user.department"}\''
    ),
    description: str = typer.Option("", help="Description"),
    performed_by: str = typer.Option("cli", "--by", help="Administrator performing the change")
):
    """Create a permission, optionally with conditions."""
    conditions = [_json_option(c, "--condition") for c in condition or []]
    with open_services() as services:
        permission = services.admin.create_permission(
            resource, action, performed_by, conditions=conditions, description=description
        )
    console.print(f"[green]Created permission {permission.action.value}:{permission.resource.value} "
                  f"(ID: {permission.id})[/green]")


# ============================================================================
# Permission Checks
# ============================================================================

@app.command()
def check(
    user_id: str = typer.Option(..., "--user", "-u", help="User id"),
    resource: str = typer.Option(..., "--resource", "-r", help="Resource kind"),
    action: str = typer.Option(..., "--action", "-a", help="Action"),
    context: Optional[str] = typer.Option(None, "--context", "-c", help="Request context as JSON")
):
    """Run a permission check (recorded in the access attempt log)."""
    context_data = _json_option(context, "--context")
    context_data.setdefault('ipAddress', '127.0.0.1')

    with open_services() as services:
        result = services.engine.check_permission(user_id, resource, action, context_data)

    lines = [
        f"User: {user_id}",
        f"Permission: {action}:{resource}",
        f"Context: {json.dumps(context_data, ensure_ascii=False)}",
        f"Duration: {result.duration_ms:.2f} ms",
    ]
    if result.granted:
        matched = result.matched_permission
        lines.insert(0, "[bold green]ACCESS GRANTED[/bold green]\n")
        lines.append(f"\nMatched permission: {matched.id}")
        if matched.conditions:
            lines.append(f"Conditions: {_format_conditions(matched.conditions)}")
    else:
        lines.insert(0, "[bold red]ACCESS DENIED[/bold red]\n")
        lines.append(f"\nReason: {result.reason}")
        if result.failed_conditions:
            lines.append(f"Failed conditions: {_format_conditions(result.failed_conditions)}")

    console.print(Panel("\n".join(lines), title="Access Decision", box=box.DOUBLE))
    if not result.granted:
        raise typer.Exit(code=2)


# ============================================================================
# Test Commands
# ============================================================================

@test_app.command("scenario")
def run_scenario(
    scenario_name: str = typer.Argument("all", help="Scenario to run: department, assignment, legacy, lifecycle, all"),
    seed: bool = typer.Option(True, help="Reload the demo data first")
):
    """Run predefined permission check scenarios."""
    from scenarios import load_demo_data, run_scenarios

    with open_services() as services:
        if seed:
            load_demo_data(services)
        passed, failed = run_scenarios(services, scenario_name)
    if failed:
        raise typer.Exit(code=1)


# ============================================================================
# Audit Commands
# ============================================================================

@audit_app.command("attempts")
def view_attempts(
    limit: int = typer.Option(20, "--limit", "-l", help="Number of attempts to show"),
    user_id: Optional[str] = typer.Option(None, "--user", "-u", help="Filter by user id"),
    denied_only: bool = typer.Option(False, "--denied", help="Only show denied attempts")
):
    """View recent access attempts."""
    with open_services() as services:
        attempts = services.attempt_log.recent(limit=None, user_id=user_id)
    if denied_only:
        attempts = [a for a in attempts if not a.granted]
    attempts = attempts[:limit]

    table = Table(title="Access Attempts", box=box.ROUNDED)
    table.add_column("Time", style="dim")
    table.add_column("User", style="cyan")
    table.add_column("Permission")
    table.add_column("Decision")
    table.add_column("Reason")

    for attempt in attempts:
        decision = "[green]GRANT[/green]" if attempt.granted else "[red]DENY[/red]"
        table.add_row(
            attempt.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            attempt.user_id,
            f"{attempt.action}:{attempt.resource}",
            decision,
            (attempt.reason or "-")[:40]
        )

    console.print(table)


def _mutation_table(title: str, entries) -> Table:
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Time", style="dim")
    table.add_column("Entity", style="cyan")
    table.add_column("Action", style="yellow")
    table.add_column("By")
    table.add_column("Reason")

    for entry in entries:
        severity = f" [red]{entry.severity.value}[/red]" if entry.severity else ""
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            f"{entry.entity_type.value}:{entry.entity_id}",
            entry.action.value + severity,
            entry.performed_by,
            entry.reason[:50]
        )
    return table


@audit_app.command("logs")
def view_logs(
    limit: int = typer.Option(20, "--limit", "-l", help="Number of entries to show"),
    performer: Optional[str] = typer.Option(None, "--by", help="Filter by performer"),
    entity_type: Optional[str] = typer.Option(None, "--entity-type", "-t", help="Filter by entity type"),
    entity_id: Optional[str] = typer.Option(None, "--entity-id", help="Filter by entity id (with --entity-type)")
):
    """View mutation audit entries."""
    with open_services() as services:
        log = services.mutation_log
        if entity_type:
            entries = log.by_entity(AuditEntityType(entity_type), entity_id, limit=limit)
        elif performer:
            entries = log.by_performer(performer, limit=limit)
        else:
            entries = log.recent(limit=limit)

    console.print(_mutation_table("Mutation Audit Log", entries))


@audit_app.command("security")
def view_security_events(limit: int = typer.Option(20, "--limit", "-l", help="Number of events to show")):
    """Show recorded security violations."""
    with open_services() as services:
        events = services.mutation_log.security_events(limit=limit)

    if not events:
        console.print("[green]No security violations recorded.[/green]")
        return
    console.print(_mutation_table("Security Violations", events))


@audit_app.command("violation")
def record_violation(
    user_id: str = typer.Option(..., "--user", "-u", help="User the violation concerns"),
    violation_type: str = typer.Option(..., "--type", "-t", help="Violation type"),
    details: str = typer.Option(..., help="What happened"),
    severity: Severity = typer.Option(Severity.MEDIUM, help="LOW, MEDIUM, HIGH or CRITICAL")
):
    """Record a security violation."""
    with open_services() as services:
        services.admin.record_security_violation(user_id, violation_type, details, severity)
    console.print(f"[yellow]Recorded {severity.value} violation for '{user_id}'[/yellow]")


@audit_app.command("stats")
def audit_stats(hours: int = typer.Option(24, help="Analysis period for access attempts, in hours")):
    """Show access and mutation audit statistics."""
    with open_services() as services:
        attempts = services.attempt_log.statistics(hours=hours)
        mutations = services.mutation_log.statistics()

    top_resources = "\n".join(f"  {r['resource']}: {r['count']}" for r in attempts['top_resources']) or "  -"
    top_users = "\n".join(f"  {u['user_id']}: {u['count']}" for u in attempts['top_users']) or "  -"
    console.print(Panel(
        f"""
[bold]Period:[/bold] Last {attempts['period_hours']} hours

[bold]Attempts:[/bold] {attempts['total_attempts']}
[bold]Granted:[/bold] [green]{attempts['granted_attempts']}[/green]
[bold]Denied:[/bold] [red]{attempts['denied_attempts']}[/red] ({attempts['denial_rate']:.1%})
[bold]Retained entries:[/bold] {attempts['total_entries']}
[bold]Failed appends:[/bold] {attempts['failed_appends']}

[bold]Top Resources:[/bold]
{top_resources}

[bold]Top Users:[/bold]
{top_users}
""",
        title="Access Attempt Statistics",
        box=box.ROUNDED
    ))

    top_performers = "\n".join(f"  {p['performed_by']}: {p['count']}" for p in mutations['top_performers']) or "  -"
    top_actions = "\n".join(f"  {a['action']}: {a['count']}" for a in mutations['top_actions']) or "  -"
    console.print(Panel(
        f"""
[bold]Total Entries:[/bold] {mutations['total_entries']}
[bold]Last 24h:[/bold] {mutations['last_24h']}
[bold]Security Violations:[/bold] [red]{mutations['security_violations']}[/red]
[bold]Failed appends:[/bold] {mutations['failed_appends']}

[bold]Top Performers:[/bold]
{top_performers}

[bold]Top Actions:[/bold]
{top_actions}
""",
        title="Mutation Audit Statistics",
        box=box.ROUNDED
    ))


@audit_app.command("export")
def export_logs(
    output: str = typer.Option("audit_export.json", "--output", "-o", help="Output file"),
    start: Optional[datetime] = typer.Option(None, formats=DATE_FORMATS, help="Export entries from (UTC)"),
    end: Optional[datetime] = typer.Option(None, formats=DATE_FORMATS, help="Export entries until (UTC)")
):
    """Export the mutation audit log as JSON."""
    with open_services() as services:
        data = services.mutation_log.export(start, end)

    with open(output, 'w', encoding='utf-8') as f:
        f.write(data)

    console.print(f"[green]Exported {json.loads(data)['total_entries']} audit entries to {output}[/green]")


@audit_app.command("verify")
def verify_chain():
    """Verify the hash chain of the mutation audit log."""
    with open_services() as services:
        broken = services.mutation_log.verify_chain()
        total = len(services.mutation_log)

    if broken:
        console.print(f"[bold red]Audit chain broken at {len(broken)} of {total} entries:[/bold red]")
        for entry_id in broken:
            console.print(f"  [red]✗[/red] {entry_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]Audit chain intact ({total} entries)[/green]")


# ============================================================================
# Main Entry Point
# ============================================================================

@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    database_url: Optional[str] = typer.Option(None, "--database-url", help="SQLAlchemy database URL"),
    max_entries: Optional[int] = typer.Option(None, "--max-entries", help="Retained entries per audit log"),
    log_level: str = typer.Option(config.LOG_LEVEL, "--log-level", help="Logging level")
):
    """
    Access Control - ABAC permission engine and audit trail

    Resolves roles and conditional permissions into grant/deny verdicts,
    and keeps a bounded, tamper-evident audit trail of decisions and changes.
    """
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)]
    )
    _settings['database_url'] = database_url
    _settings['max_entries'] = max_entries

    if ctx.invoked_subcommand is None:
        print_banner()
        console.print("\nUse [cyan]--help[/cyan] to see available commands.\n")
        console.print("Quick Start:")
        console.print("  1. [cyan]python main.py init[/cyan]        - Initialize database")
        console.print("  2. [cyan]python main.py demo[/cyan]        - Load demo data")
        console.print("  3. [cyan]python main.py users list[/cyan]  - View users")
        console.print("  4. [cyan]python main.py check --user u1 --resource tickets --action update "
                      "--context '{\"department\": \"Finance\"}'[/cyan]")
        console.print()


if __name__ == "__main__":
    app()
