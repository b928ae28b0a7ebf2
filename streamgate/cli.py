"""Command-line interface for streamgate."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from streamgate.config import Config, find_config_file, load_config, merge_cli_options
from streamgate.exceptions import StreamGateError
from streamgate.models import AdmissionRequest, ApprovalStatus, TimeRule
from streamgate.models.access import describe_stop_code
from streamgate.gatekeeper import Gatekeeper
from streamgate.policies import AccessDecisionEngine, schedule, temporary_access
from streamgate.storage import AccessStore
from streamgate.tracking import DeviceTracker, SessionObservation

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "approved": "green",
    "rejected": "red",
}


def _open_store(ctx: click.Context, read_only: bool = False) -> AccessStore:
    cfg: Config = ctx.obj["config"]
    db_path: Path = ctx.obj["db_path"]
    # A read-only connection cannot create the schema of a fresh database
    return AccessStore(
        db_path,
        read_only=read_only and db_path.exists(),
        default_block=cfg.default_block,
        has_rules_ttl=cfg.has_rules_ttl,
    )


def _build_engine(cfg: Config) -> AccessDecisionEngine:
    # Without a configured zone, rules follow this machine's wall clock
    tz = cfg.get_timezone() or schedule.local_timezone()
    return AccessDecisionEngine(timezone=tz, messages=dict(cfg.messages))


@contextmanager
def _handle_errors() -> Iterator[None]:
    """Print streamgate errors and exit non-zero instead of showing a traceback."""
    try:
        yield
    except StreamGateError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        sys.exit(1)


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    if isinstance(value, datetime):
        return value.astimezone().strftime("%Y-%m-%d %H:%M")
    return str(value)[:16]


def _parse_day(value: str) -> int:
    """Accept 0-6 (0 = Sunday) or a day name such as "sat"."""
    text = value.strip().lower()
    if text.isdigit():
        return int(text)
    for index, name in enumerate(schedule.DAY_NAMES):
        if text[:3] == name.lower():
            return index
    raise click.BadParameter(f"Unknown day '{value}'")


def _status_text(status: ApprovalStatus) -> str:
    style = STATUS_STYLES.get(status.value, "white")
    return f"[{style}]{status.value}[/{style}]"


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to config file (default: searches standard locations)",
)
@click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to the DuckDB database file",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def main(ctx: click.Context, config: Path | None, db: Path | None, verbose: bool) -> None:
    """streamgate - Device access gatekeeper for a media-streaming server."""
    ctx.ensure_object(dict)

    log_level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Load config file, CLI --db overrides it
    cfg = merge_cli_options(load_config(config), db=db)
    ctx.obj["config"] = cfg

    # Ensure parent directory exists
    cfg.db_path.parent.mkdir(parents=True, exist_ok=True)

    ctx.obj["db_path"] = cfg.db_path

    config_path = config or find_config_file()
    if config_path:
        ctx.obj["config_path"] = config_path


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


@main.command()
@click.option(
    "--status",
    type=click.Choice([s.value for s in ApprovalStatus]),
    default=None,
    help="Only show devices with this status",
)
@click.option("--user", "user_id", type=str, default=None, help="Only show this user's devices")
@click.pass_context
def devices(ctx: click.Context, status: str | None, user_id: str | None) -> None:
    """List known devices."""
    now = datetime.now(timezone.utc)

    with _handle_errors(), _open_store(ctx, read_only=True) as store:
        device_list = store.list_devices(
            status=ApprovalStatus(status) if status else None,
            user_id=user_id,
        )

        if not device_list:
            console.print("[yellow]No devices found[/yellow]")
            return

        table = Table(title="Devices")
        table.add_column("User")
        table.add_column("Device")
        table.add_column("Name")
        table.add_column("Platform", style="dim")
        table.add_column("Status")
        table.add_column("Sessions", justify="right")
        table.add_column("Last Seen", style="dim")
        table.add_column("Temp Access")

        for device in device_list:
            table.add_row(
                device.username or device.user_id,
                device.device_identifier,
                device.display_name,
                device.device_platform or "-",
                _status_text(device.status),
                str(device.session_count),
                _format_time(device.last_seen),
                temporary_access.time_left(device, now) or "-",
            )

        console.print(table)


@main.command()
@click.argument("user_id")
@click.argument("device_identifier")
@click.pass_context
def approve(ctx: click.Context, user_id: str, device_identifier: str) -> None:
    """Approve a device."""
    with _handle_errors(), _open_store(ctx) as store:
        device = store.approve_device(user_id, device_identifier)
        console.print(f"[green]Approved {device.display_name} for {user_id}[/green]")


@main.command()
@click.argument("user_id")
@click.argument("device_identifier")
@click.pass_context
def reject(ctx: click.Context, user_id: str, device_identifier: str) -> None:
    """Reject a device."""
    with _handle_errors(), _open_store(ctx) as store:
        device = store.reject_device(user_id, device_identifier)
        console.print(f"[red]Rejected {device.display_name} for {user_id}[/red]")


@main.command()
@click.argument("user_id")
@click.argument("device_identifier")
@click.pass_context
def toggle(ctx: click.Context, user_id: str, device_identifier: str) -> None:
    """Switch a device between approved and rejected."""
    with _handle_errors(), _open_store(ctx) as store:
        device = store.toggle_device(user_id, device_identifier)
        console.print(f"{device.display_name} is now {_status_text(device.status)}")


@main.command()
@click.argument("user_id")
@click.argument("device_identifier")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx: click.Context, user_id: str, device_identifier: str, yes: bool) -> None:
    """Delete a device and its device-specific time rules.

    The device reappears as pending the next time it starts a session.
    """
    if not yes:
        click.confirm(f"Delete {device_identifier} for {user_id}?", abort=True)

    with _handle_errors(), _open_store(ctx) as store:
        store.delete_device(user_id, device_identifier)
        console.print(f"[green]Deleted {device_identifier}[/green]")


@main.command()
@click.argument("user_id")
@click.argument("device_identifier")
@click.argument("name")
@click.pass_context
def rename(ctx: click.Context, user_id: str, device_identifier: str, name: str) -> None:
    """Set a device's display name."""
    with _handle_errors(), _open_store(ctx) as store:
        device = store.rename_device(user_id, device_identifier, name)
        console.print(f"[green]Renamed {device_identifier} to {device.device_name}[/green]")


@main.command()
@click.argument("user_id")
@click.argument("device_identifier")
@click.argument("duration", type=float)
@click.option(
    "--unit",
    type=click.Choice(list(temporary_access.UNIT_MINUTES)),
    default="minutes",
    help="Unit of DURATION",
)
@click.pass_context
def grant(ctx: click.Context, user_id: str, device_identifier: str, duration: float, unit: str) -> None:
    """Grant a device temporary access.

    Example:
        streamgate grant alice living-room-tv 2 --unit hours
    """
    now = datetime.now(timezone.utc)

    with _handle_errors(), _open_store(ctx) as store:
        minutes = temporary_access.to_minutes(duration, unit)
        device = store.grant_temporary_access(user_id, device_identifier, minutes, now=now)
        console.print(
            f"[green]Granted {device.display_name} access until "
            f"{_format_time(device.temporary_access_until)} "
            f"({temporary_access.time_left(device, now)})[/green]"
        )


@main.command()
@click.argument("user_id")
@click.argument("device_identifier")
@click.pass_context
def revoke(ctx: click.Context, user_id: str, device_identifier: str) -> None:
    """Revoke a device's temporary access."""
    with _handle_errors(), _open_store(ctx) as store:
        device = store.revoke_temporary_access(user_id, device_identifier)
        console.print(f"[green]Revoked temporary access for {device.display_name}[/green]")


# ---------------------------------------------------------------------------
# User preferences
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
@click.option(
    "--default-block",
    type=click.Choice(["block", "allow", "inherit"]),
    default=None,
    help="Default policy for this user's approved devices",
)
@click.option(
    "--network",
    type=click.Choice(["both", "lan", "wan"]),
    default=None,
    help="Networks this user may stream from",
)
@click.pass_context
def prefs(ctx: click.Context, user_id: str, default_block: str | None, network: str | None) -> None:
    """Show or change a user's preferences."""
    with _handle_errors(), _open_store(ctx) as store:
        if default_block is not None:
            value = {"block": True, "allow": False, "inherit": None}[default_block]
            store.set_default_block(user_id, value)
        if network is not None:
            store.set_network_policy(user_id, network)

        preference = store.get_user_preference(user_id)
        if preference is None:
            console.print(f"[yellow]No preferences stored for {user_id}, defaults apply[/yellow]")
            return

        if preference.default_block is None:
            block_text = f"inherit ({'block' if store.get_global_default_block() else 'allow'})"
        else:
            block_text = "block" if preference.default_block else "allow"

        console.print(f"[cyan]Preferences for {preference.username or user_id}[/cyan]")
        console.print(f"  Default policy: {block_text}")
        console.print(f"  Network policy: {preference.network_policy.value}")
        console.print(f"  IP policy: {preference.ip_access_policy.value}")
        if preference.allowed_ips:
            console.print(f"  Allowed IPs: {', '.join(preference.allowed_ips)}")
        console.print(f"  Schedule: {'yes' if store.has_schedule(user_id) else 'no'}")


@main.command("ip-policy")
@click.argument("user_id")
@click.argument("policy", type=click.Choice(["all", "restricted"]))
@click.option("--ip", "ips", multiple=True, help="Allowed IPv4 address or CIDR range (repeatable)")
@click.pass_context
def ip_policy(ctx: click.Context, user_id: str, policy: str, ips: tuple[str, ...]) -> None:
    """Set a user's IP access policy.

    Example:
        streamgate ip-policy alice restricted --ip 192.168.1.0/24 --ip 203.0.113.7
    """
    with _handle_errors(), _open_store(ctx) as store:
        preference = store.set_ip_access_policy(user_id, policy, list(ips))
        console.print(f"[green]IP policy for {user_id}: {preference.ip_access_policy.value}[/green]")
        for entry in preference.allowed_ips:
            console.print(f"  {entry}")


@main.command("default-block")
@click.argument("value", type=click.Choice(["block", "allow"]), required=False)
@click.pass_context
def default_block(ctx: click.Context, value: str | None) -> None:
    """Show or set the global default policy."""
    with _handle_errors(), _open_store(ctx) as store:
        if value is not None:
            store.set_global_default_block(value == "block")
        current = store.get_global_default_block()
        label = "block" if current is None or current else "allow"
        console.print(f"Global default policy: [cyan]{label}[/cyan]")


# ---------------------------------------------------------------------------
# Time rules
# ---------------------------------------------------------------------------


@main.group()
def rules() -> None:
    """Manage time rules."""


@rules.command("list")
@click.argument("user_id", required=False)
@click.pass_context
def rules_list(ctx: click.Context, user_id: str | None) -> None:
    """List time rules."""
    with _handle_errors(), _open_store(ctx, read_only=True) as store:
        rule_list = store.get_all_time_rules(user_id)

        if not rule_list:
            console.print("[yellow]No time rules[/yellow]")
            return

        table = Table(title="Time Rules")
        table.add_column("ID", justify="right", style="dim")
        table.add_column("User")
        table.add_column("Scope")
        table.add_column("Name")
        table.add_column("Day")
        table.add_column("Window")
        table.add_column("Enabled")

        for rule in rule_list:
            table.add_row(
                str(rule.id),
                rule.user_id,
                rule.device_identifier or "all devices",
                rule.rule_name or "-",
                schedule.day_name(rule.day_of_week),
                f"{rule.start_time}-{rule.end_time}",
                "[green]yes[/green]" if rule.enabled else "[dim]no[/dim]",
            )

        console.print(table)

        if user_id:
            console.print(f"Summary: {schedule.describe_schedule(rule_list)}")


@rules.command("add")
@click.argument("user_id")
@click.argument("day")
@click.argument("start_time")
@click.argument("end_time")
@click.option("--device", "device_identifier", default=None, help="Limit the rule to one device")
@click.option("--name", "rule_name", default="", help="Rule name")
@click.option("--disabled", is_flag=True, help="Create the rule switched off")
@click.pass_context
def rules_add(
    ctx: click.Context,
    user_id: str,
    day: str,
    start_time: str,
    end_time: str,
    device_identifier: str | None,
    rule_name: str,
    disabled: bool,
) -> None:
    """Add a window during which streaming is permitted.

    Example:
        streamgate rules add alice sat 10:00 12:00 --name "Saturday morning"
    """
    rule = TimeRule(
        user_id=user_id,
        device_identifier=device_identifier,
        day_of_week=_parse_day(day),
        start_time=start_time,
        end_time=end_time,
        rule_name=rule_name,
        enabled=not disabled,
    )

    with _handle_errors(), _open_store(ctx) as store:
        saved = store.create_time_rule(rule)
        console.print(
            f"[green]Created rule {saved.id}: {schedule.day_name(saved.day_of_week)} "
            f"{saved.start_time}-{saved.end_time}[/green]"
        )


@rules.command("update")
@click.argument("user_id")
@click.argument("rule_id", type=int)
@click.option("--day", default=None, help="New day (0-6 or name)")
@click.option("--start", "start_time", default=None, help="New start time (HH:MM)")
@click.option("--end", "end_time", default=None, help="New end time (HH:MM)")
@click.option("--name", "rule_name", default=None, help="New rule name")
@click.pass_context
def rules_update(
    ctx: click.Context,
    user_id: str,
    rule_id: int,
    day: str | None,
    start_time: str | None,
    end_time: str | None,
    rule_name: str | None,
) -> None:
    """Change an existing time rule."""
    with _handle_errors(), _open_store(ctx) as store:
        rule = store.update_time_rule(
            user_id,
            rule_id,
            rule_name=rule_name,
            day_of_week=_parse_day(day) if day is not None else None,
            start_time=start_time,
            end_time=end_time,
        )
        console.print(
            f"[green]Updated rule {rule.id}: {schedule.day_name(rule.day_of_week)} "
            f"{rule.start_time}-{rule.end_time}[/green]"
        )


@rules.command("delete")
@click.argument("user_id")
@click.argument("rule_id", type=int)
@click.pass_context
def rules_delete(ctx: click.Context, user_id: str, rule_id: int) -> None:
    """Delete a time rule."""
    with _handle_errors(), _open_store(ctx) as store:
        store.delete_time_rule(user_id, rule_id)
        console.print(f"[green]Deleted rule {rule_id}[/green]")


@rules.command("toggle")
@click.argument("user_id")
@click.argument("rule_id", type=int)
@click.pass_context
def rules_toggle(ctx: click.Context, user_id: str, rule_id: int) -> None:
    """Enable or disable a time rule."""
    with _handle_errors(), _open_store(ctx) as store:
        rule = store.toggle_time_rule(user_id, rule_id)
        console.print(f"Rule {rule.id} is now {'enabled' if rule.enabled else 'disabled'}")


@rules.command("preset")
@click.argument("user_id")
@click.argument("preset", type=click.Choice(list(schedule.PRESETS)))
@click.option("--device", "device_identifier", default=None, help="Apply to one device only")
@click.pass_context
def rules_preset(ctx: click.Context, user_id: str, preset: str, device_identifier: str | None) -> None:
    """Replace the rules of a scope with a preset."""
    with _handle_errors(), _open_store(ctx) as store:
        saved = store.apply_preset(user_id, preset, device_identifier)
        console.print(f"[green]Applied {preset}: {schedule.describe_schedule(saved)}[/green]")


# ---------------------------------------------------------------------------
# Admission and audit
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
@click.argument("device_identifier")
@click.argument("source_ip")
@click.option("--at", "at", default=None, help="Evaluate at this ISO time instead of now")
@click.option("--track", is_flag=True, help="Record the device as seen (creates it as pending)")
@click.option("--no-record", is_flag=True, help="Do not write the decision to the audit log")
@click.pass_context
def check(
    ctx: click.Context,
    user_id: str,
    device_identifier: str,
    source_ip: str,
    at: str | None,
    track: bool,
    no_record: bool,
) -> None:
    """Decide whether a session would be admitted.

    Example:
        streamgate check alice living-room-tv 192.168.1.20 --at 2024-03-09T10:30
    """
    cfg: Config = ctx.obj["config"]

    with _handle_errors():
        engine = _build_engine(cfg)

        if at is None:
            now = datetime.now(timezone.utc)
        else:
            try:
                now = datetime.fromisoformat(at)
            except ValueError:
                console.print(f"[red]Error: Invalid time '{at}'[/red]")
                sys.exit(1)
            if now.tzinfo is None:
                now = now.replace(tzinfo=engine.timezone)

        with _open_store(ctx) as store:
            gatekeeper = Gatekeeper(
                store,
                engine=engine,
                tracker=DeviceTracker(store),
                fail_closed=cfg.fail_closed,
                record_decisions=not no_record,
            )
            if track:
                verdict = gatekeeper.admit(SessionObservation(
                    user_id=user_id,
                    device_identifier=device_identifier,
                    source_ip=source_ip,
                    observed_at=now,
                ))
            else:
                verdict = gatekeeper.check(AdmissionRequest(
                    user_id=user_id,
                    device_identifier=device_identifier,
                    source_ip=source_ip,
                    request_time=now,
                ))

    if verdict.allowed:
        console.print(f"[green]ALLOWED[/green] ({verdict.reason.value}) {verdict.detail}")
    else:
        console.print(f"[red]BLOCKED[/red] ({verdict.reason.value}/{verdict.stop_code}) {verdict.detail}")
        console.print(f"  Client message: {verdict.message}")


@main.command()
@click.option("--user", "user_id", type=str, default=None, help="Only show this user's decisions")
@click.option("--blocked", is_flag=True, help="Only show denials")
@click.option("--limit", type=int, default=50)
@click.pass_context
def history(ctx: click.Context, user_id: str | None, blocked: bool, limit: int) -> None:
    """Show recent admission decisions."""
    with _handle_errors(), _open_store(ctx, read_only=True) as store:
        decisions = store.get_recent_decisions(limit=limit, user_id=user_id, blocked_only=blocked)

        if not decisions:
            console.print("[yellow]No decisions recorded[/yellow]")
            return

        table = Table(title="Recent Decisions")
        table.add_column("Time", style="dim")
        table.add_column("User")
        table.add_column("Device")
        table.add_column("Source IP")
        table.add_column("Verdict")
        table.add_column("Reason")

        for decision in decisions:
            if decision["allowed"]:
                verdict = "[green]allowed[/green]"
                reason = decision["reason"]
            else:
                verdict = "[red]blocked[/red]"
                reason = describe_stop_code(decision["stop_code"] or decision["reason"])

            table.add_row(
                _format_time(decision["timestamp"]),
                decision["user_id"],
                decision["device_identifier"],
                decision["source_ip"] or "-",
                verdict,
                reason,
            )

        console.print(table)


@main.command()
@click.option("--decisions-days", type=int, default=None, help="Delete decisions older than N days (default: 30)")
@click.option("--device-days", type=int, default=None, help="Delete devices inactive for N days")
@click.option("--checkpoint", is_flag=True, help="Run CHECKPOINT after cleanup to reclaim disk space")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted without actually deleting")
@click.pass_context
def cleanup(
    ctx: click.Context,
    decisions_days: int | None,
    device_days: int | None,
    checkpoint: bool,
    dry_run: bool,
) -> None:
    """Clean up old data according to retention policy.

    Deletes old audit entries, clears expired temporary access and, when
    enabled, removes devices that have not been seen for a long time.
    Without explicit day options the configured retention is used, and only
    if retention is enabled in the config file.

    Example:
        streamgate cleanup --decisions-days 7 --device-days 180 --checkpoint
    """
    cfg: Config = ctx.obj["config"]

    # Use config values if not specified on CLI
    decisions_retention = decisions_days if decisions_days is not None else cfg.retention_decisions_days
    if device_days is not None:
        device_retention: Optional[int] = device_days
    elif cfg.retention_enabled and cfg.retention_device_cleanup_enabled:
        device_retention = cfg.retention_device_inactive_days
    else:
        device_retention = None

    with _handle_errors(), _open_store(ctx) as store:
        stats = store.get_table_stats()

        console.print("[cyan]Current data:[/cyan]")
        console.print(f"  Devices: {stats['user_devices']['count']:,} rows")
        console.print(f"  Preferences: {stats['user_preferences']['count']:,} rows")
        console.print(f"  Time rules: {stats['time_rules']['count']:,} rows")
        console.print(f"  Decisions: {stats['access_decisions']['count']:,} rows")
        if stats["access_decisions"]["oldest"]:
            console.print(f"    Oldest: {_format_time(stats['access_decisions']['oldest'])[:10]}")
        console.print()

        if decisions_days is None and device_days is None and not cfg.retention_enabled:
            console.print(
                "[yellow]Retention is disabled in config; "
                "pass --decisions-days or --device-days to clean up anyway[/yellow]"
            )
            return

        if dry_run:
            console.print(f"[yellow]Dry run: would delete decisions older than {decisions_retention} days[/yellow]")
            if device_retention is not None:
                console.print(f"[yellow]Dry run: would delete devices inactive for {device_retention} days[/yellow]")
            return

        cleared = store.clear_expired_temporary_access()
        result = store.cleanup_old_data(decisions_retention, device_retention)

        console.print(f"[green]Cleared {cleared:,} expired temporary access grants[/green]")
        console.print(f"[green]Deleted {result['decisions_deleted']:,} decisions[/green]")
        console.print(f"[green]Deleted {result['devices_deleted']:,} inactive devices[/green]")

        if checkpoint:
            console.print("[cyan]Running CHECKPOINT...[/cyan]")
            store.checkpoint()
            console.print("[green]CHECKPOINT complete[/green]")


if __name__ == "__main__":
    main()
