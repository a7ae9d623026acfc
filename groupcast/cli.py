import json
import logging
from datetime import timedelta

import click
from dotenv import load_dotenv

from .config import build_worker_config
from .db import init_db, connect_db
from .models import (
    ALL_STATES, MESSAGE_KINDS, MEDIA_TYPES, RECURRENCE_RULES, AudioMessage,
    ContactMessage, LocationMessage, MediaMessage, PixMessage, PollMessage,
    TargetingRule, TextMessage,
)
from .repository import (
    build_retry_job, cancel_job, counts, enqueue_batch, enqueue_job, get_config,
    list_failures, list_jobs, requeue_stuck, set_config,
)
from .utils import parse_delay_to_seconds, parse_run_at, to_iso, utcnow
from .worker import Scheduler, start_scheduler


def _connect(ctx):
    return connect_db(ctx.obj["db"])


def _worker_config(ctx, **overrides):
    conn = _connect(ctx)
    try:
        stored = get_config(conn)
    finally:
        conn.close()
    return build_worker_config(stored, db_path=ctx.obj["db"], **overrides)


@click.group(help="groupcast — scheduled group broadcasts over the Evolution API")
@click.option("--db", envvar="GROUPCAST_DB", default="groupcast.db", show_default=True,
              help="SQLite database file")
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db, log_level):
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db"] = db
    # Ensure DB/schema exist before any command runs
    init_db(db)


def _build_message(kind, o):
    if kind == "text":
        return TextMessage(body=o["text"] or "", split_by_lines=o["split_lines"])
    if kind == "media":
        return MediaMessage(
            url=o["media_url"] or "",
            mimetype=o["mimetype"] or "",
            mediatype=o["mediatype"],
            caption=o["text"] or "",
            file_name=o["file_name"],
        )
    if kind == "audio":
        return AudioMessage(url=o["media_url"] or "")
    if kind == "poll":
        return PollMessage(question=o["text"] or "", options=o["option"],
                           selectable_count=o["selectable_count"])
    if kind == "pix":
        return PixMessage(key=o["pix_key"] or "", key_type=o["pix_type"], amount=o["amount"])
    if kind == "contact":
        return ContactMessage(full_name=o["contact_name"] or "", phone=o["contact_phone"] or "")
    if kind == "location":
        if o["latitude"] is None or o["longitude"] is None:
            raise ValueError("location needs --latitude and --longitude")
        return LocationMessage(latitude=o["latitude"], longitude=o["longitude"],
                               name=o["location_name"], address=o["text"] or "")
    raise ValueError(f"Unknown message type: {kind}")


# ---------- Enqueue ----------
@cli.command("enqueue", help="Schedule a message to a set of groups")
@click.option("--instance", required=True, help="Provider instance to send through")
@click.option("--type", "kind", type=click.Choice(sorted(MESSAGE_KINDS)), default="text", show_default=True)
@click.option("--text", default=None, help="Text body; caption for media, question for polls, address for locations")
@click.option("--split-lines", is_flag=True, help="Send each non-blank line as its own message")
@click.option("--batch", is_flag=True, help="With --split-lines, store one job per line")
@click.option("--media-url", default=None, help="Public URL of the media/audio file")
@click.option("--mimetype", default=None)
@click.option("--mediatype", type=click.Choice(MEDIA_TYPES), default="image", show_default=True)
@click.option("--file-name", default="file", show_default=True)
@click.option("--option", multiple=True, help="Poll option (repeatable)")
@click.option("--selectable-count", type=int, default=1, show_default=True)
@click.option("--pix-key", default=None)
@click.option("--pix-type", default="cpf", show_default=True)
@click.option("--amount", type=float, default=0.0, show_default=True)
@click.option("--contact-name", default=None)
@click.option("--contact-phone", default=None)
@click.option("--latitude", type=float, default=None)
@click.option("--longitude", type=float, default=None)
@click.option("--location-name", default="Location", show_default=True)
@click.option("--ids", default=None, help="Comma separated group ids")
@click.option("--min-size", type=int, default=0, show_default=True, help="Minimum group size (without --ids)")
@click.option("--name-contains", default=None, help="Case-insensitive subject filter (without --ids)")
@click.option("--run-at", default=None, help="ISO datetime; no offset means UTC")
@click.option("--delay", "delay_str", default=None,
              help="Run after a delay, e.g. 20s, 5m, 1h30m, 2d3h (mutually exclusive with --run-at)")
@click.option("--mention-everyone", is_flag=True)
@click.option("--recurrence", type=click.Choice(RECURRENCE_RULES), default=None)
@click.option("--draft", is_flag=True, help="Store as draft; the worker ignores drafts")
@click.pass_context
def enqueue_cmd(ctx, instance, kind, ids, min_size, name_contains, run_at, delay_str,
                mention_everyone, recurrence, draft, batch, **opts):
    conn = _connect(ctx)
    try:
        if run_at and delay_str:
            raise click.ClickException("Use either --run-at or --delay, not both.")
        if batch and not (kind == "text" and opts["split_lines"]):
            raise click.ClickException("--batch only applies to text with --split-lines.")
        if batch and recurrence:
            raise click.ClickException("--recurrence cannot be combined with --batch.")

        if delay_str:
            due_at = utcnow() + timedelta(seconds=parse_delay_to_seconds(delay_str))
        elif run_at:
            due_at = parse_run_at(run_at)
        else:
            due_at = utcnow()

        id_list = [i.strip() for i in (ids or "").split(",") if i.strip()]
        targeting = TargetingRule(ids=tuple(id_list), min_size=min_size, name_contains=name_contains)
        message = _build_message(kind, opts)

        if batch:
            job_ids = enqueue_batch(
                conn, instance=instance, message=message, targeting=targeting,
                due_at=due_at, mention_everyone=mention_everyone, draft=draft,
            )
        else:
            job_ids = [enqueue_job(
                conn, instance=instance, message=message, targeting=targeting,
                due_at=due_at, mention_everyone=mention_everyone,
                recurrence=recurrence, draft=draft,
            )]
        click.secho(
            f"Enqueued {', '.join('#' + str(i) for i in job_ids)} ({kind} via {instance}, "
            f"due {to_iso(due_at)})",
            fg="green"
        )
    except (ValueError, RuntimeError, click.ClickException) as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Run the scheduler")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--pool-size", type=click.IntRange(min=1), default=None, help="Override worker_pool_size")
@click.pass_context
def worker_start(ctx, pool_size):
    overrides = {"worker_pool_size": pool_size} if pool_size else {}
    try:
        config = _worker_config(ctx, **overrides)
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    click.secho(
        f"Starting scheduler (pool={config.worker_pool_size}, poll={config.poll_interval}s, "
        f"provider={config.provider_url}). Press Ctrl+C to stop…",
        fg="cyan",
    )
    start_scheduler(config)
    click.secho("Scheduler stopped.", fg="yellow")


@cli.command("run-once", help="Process everything due right now and exit")
@click.pass_context
def run_once_cmd(ctx):
    scheduler = Scheduler(_worker_config(ctx))
    try:
        n = scheduler.run_once(wait=True)
    finally:
        scheduler.shutdown()
    click.echo(f"Processed {n} job(s).")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--status", type=click.Choice(ALL_STATES), default=None)
@click.pass_context
def list_cmd(ctx, status):
    conn = _connect(ctx)
    try:
        jobs = list_jobs(conn, status=status)
    finally:
        conn.close()

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        part = f" part={j.chunk_index + 1}/{j.total_chunks}" if j.batch_id else ""
        click.echo(
            f"{j.id:>6} | {j.status:<10} | due={to_iso(j.due_at)} | {j.instance} | "
            f"{j.message.kind}{part} | target={json.dumps(j.targeting.to_dict())} | "
            f"result={j.result_summary}"
        )


@cli.command("status")
@click.pass_context
def status_cmd(ctx):
    conn = _connect(ctx)
    try:
        click.echo(json.dumps(counts(conn), indent=2))
    finally:
        conn.close()


@cli.command("failures", help="Show failed recipients of a job")
@click.argument("job_id", type=int)
@click.pass_context
def failures_cmd(ctx, job_id):
    conn = _connect(ctx)
    try:
        rows = list_failures(conn, job_id)
    finally:
        conn.close()

    if not rows:
        click.echo("No failures recorded.")
        return
    for r in rows:
        click.echo(f"{r['recipient_id']} | {r['created_at']} | {r['error']}")


@cli.command("retry", help="Queue a new job for the recipients that failed")
@click.argument("job_id", type=int)
@click.pass_context
def retry_cmd(ctx, job_id):
    conn = _connect(ctx)
    try:
        job = build_retry_job(conn, job_id)
        click.secho(
            f"Queued retry #{job.id} for {len(job.targeting.ids)} group(s) of job #{job_id}.",
            fg="green",
        )
    except (ValueError, RuntimeError) as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


@cli.command("cancel", help="Cancel a job (or its whole batch) that has not started")
@click.argument("job_id", type=int)
@click.pass_context
def cancel_cmd(ctx, job_id):
    conn = _connect(ctx)
    try:
        if not cancel_job(conn, job_id):
            click.secho(f"Error: job #{job_id} not found or already started.", fg="red")
            raise SystemExit(1)
        click.secho(f"Cancelled job #{job_id}.", fg="green")
    finally:
        conn.close()


@cli.command("reconcile", help="Re-queue jobs stuck in processing")
@click.option("--older-than", default="30m", show_default=True, help="Claim age, e.g. 15m, 2h")
@click.pass_context
def reconcile_cmd(ctx, older_than):
    try:
        seconds = parse_delay_to_seconds(older_than)
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    conn = _connect(ctx)
    try:
        n = requeue_stuck(conn, utcnow() - timedelta(seconds=seconds))
    finally:
        conn.close()
    click.secho(f"Re-queued {n} job(s).", fg="green" if n else "yellow")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = _connect(ctx)
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = _connect(ctx)
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}={value}", fg="green")
    except ValueError as e:
        click.secho(f"Error: {e}", fg="red")
        raise SystemExit(1)
    finally:
        conn.close()


def main():
    load_dotenv()
    cli()
