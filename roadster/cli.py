"""Roadster CLI: command-line access to the detection pipeline.

Usage::

    roadster serve
    roadster detect frame.jpg --model-id ws/potholes --model-version 2 --lat -6.2 --lon 106.8
    roadster history --limit 10
    roadster export-geojson detections.geojson
    roadster session --user ops
    roadster sync-stats --dry-run
    roadster --version
"""

from __future__ import annotations

import base64
import json
import mimetypes
import sys
from pathlib import Path
from typing import Optional

import click

from roadster.core.config import DEFAULT_CONFIG


def _open_kv(db_path: str):
    from roadster.storage.kv import KeyValueStore

    return KeyValueStore(Path(db_path), DEFAULT_CONFIG.storage)


def _open_store(db_path: str):
    from roadster.storage.history import DetectionStore

    return DetectionStore(_open_kv(db_path))


def _read_image(path: Path) -> str:
    """Image file → data URL; text files holding base64 or a data URL pass through."""
    raw = path.read_bytes()
    try:
        text = raw.decode("ascii").strip()
    except UnicodeDecodeError:
        text = ""
    if text.startswith("data:"):
        return text
    if text:
        try:
            base64.b64decode(text, validate=True)
            return text
        except ValueError:
            pass

    mime = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


@click.group(invoke_without_command=True)
@click.version_option(package_name="roadster")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False),
    default=str(DEFAULT_CONFIG.storage.db_path),
    show_default=True,
    help="Local storage database.",
)
@click.pass_context
def cli(ctx: click.Context, db_path: str) -> None:
    """Roadster: road damage detection intake and GIS reporting."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--host", default=None, help="Bind address.")
@click.option("--port", type=int, default=None, help="Bind port.")
@click.option("--reload", is_flag=True, help="Reload on code changes.")
def serve(host: Optional[str], port: Optional[int], reload: bool) -> None:
    """Start the HTTP server."""
    from roadster.web.server import run

    click.echo("🚀 Starting Roadster server...")
    run(host=host, port=port, reload=reload)


@cli.command()
@click.argument("image", type=click.Path(exists=True, dir_okay=False))
@click.option("--model-id", default="", help="Model id (defaults to ROBOFLOW_MODEL_ID).")
@click.option("--model-version", default="", help="Model version (defaults to ROBOFLOW_MODEL_VERSION).")
@click.option("--lat", type=float, default=None, help="Latitude of the capture.")
@click.option("--lon", type=float, default=None, help="Longitude of the capture.")
@click.option("--confidence", type=float, default=None)
@click.option("--overlap", type=float, default=None)
@click.option("--frame-width", type=float, default=None)
@click.option("--frame-height", type=float, default=None)
@click.option("--no-store", is_flag=True, help="Do not append the result to the history.")
@click.option("--json", "as_json", is_flag=True, help="Print the full response envelope.")
@click.pass_context
def detect(
    ctx: click.Context,
    image: str,
    model_id: str,
    model_version: str,
    lat: Optional[float],
    lon: Optional[float],
    confidence: Optional[float],
    overlap: Optional[float],
    frame_width: Optional[float],
    frame_height: Optional[float],
    no_store: bool,
    as_json: bool,
) -> None:
    """Run one detection on IMAGE."""
    from dotenv import load_dotenv

    from roadster.api import detect as _detect
    from roadster.core.exceptions import RoadsterError

    load_dotenv()
    location = {"latitude": lat, "longitude": lon} if lat is not None and lon is not None else None
    store = None if no_store else _open_store(ctx.obj["db_path"])

    click.echo(f"🔍 Detecting damage in {image}...")
    try:
        result = _detect(
            _read_image(Path(image)),
            model_id,
            model_version,
            confidence=confidence,
            overlap=overlap,
            frame_width=frame_width,
            frame_height=frame_height,
            location=location,
            store=store,
        )
    except RoadsterError as exc:
        click.secho(f"❌ Error: {getattr(exc, 'message', None) or exc}", fg="red")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    report = result.report
    click.echo()
    click.echo(f"   Detections:   {report.severity.total}")
    click.echo(f"   Severity:     {report.severity.dominant.value}")
    click.echo(f"   Damage area:  {report.area.total_percent:.2f}%")
    click.echo(f"   Dominant:     {report.class_breakdown.dominant_class or '-'}")
    click.echo(f"   Duration:     {result.duration_ms} ms ({result.endpoint_type.value})")
    if result.stored:
        click.echo(f"\n💾 Stored as {result.stored['id']}")


@cli.command()
@click.option("--limit", type=int, default=20, show_default=True)
@click.pass_context
def history(ctx: click.Context, limit: int) -> None:
    """List stored detections, newest first."""
    records = _open_store(ctx.obj["db_path"]).read_all()
    if not records:
        click.echo("No detections stored.")
        return

    for record in records[:limit]:
        where = (
            f"{record.location.latitude:.5f},{record.location.longitude:.5f}"
            if record.location
            else "no-gps"
        )
        click.echo(
            f"{record.id}  {record.detected_at}  {record.severity.value:<6}  "
            f"{record.damage_percent:6.2f}%  {int(record.total_detections):>3} boxes  {where}"
        )


@cli.command(name="export-geojson")
@click.argument("output", type=click.Path(dir_okay=False))
@click.pass_context
def export_geojson(ctx: click.Context, output: str) -> None:
    """Write the detection layer as a GeoJSON FeatureCollection."""
    from roadster.geo.pipeline import build_feature_collection

    collection = build_feature_collection(_open_store(ctx.obj["db_path"]).read_all())
    Path(output).write_text(json.dumps(collection, indent=2), encoding="utf-8")
    click.echo(f"💾 Wrote {len(collection['features'])} features to {output}")


@cli.command(name="clear-history")
@click.confirmation_option(prompt="Delete all stored detections?")
@click.pass_context
def clear_history(ctx: click.Context) -> None:
    """Delete the stored detection history."""
    _open_store(ctx.obj["db_path"]).clear()
    click.echo("🗑️  Detection history cleared.")


@cli.command()
@click.option("--user", default=None, help="Record USER as the operator on this device.")
@click.option("--clear", "clear_session", is_flag=True, help="Forget the current operator.")
@click.pass_context
def session(ctx: click.Context, user: Optional[str], clear_session: bool) -> None:
    """Show, set or clear the admin session on this device."""
    from roadster.storage.session import SessionStore

    store = SessionStore(_open_kv(ctx.obj["db_path"]))
    if clear_session:
        store.clear()
        click.echo("👋 Signed out.")
        return
    if user is not None:
        if not user.strip():
            click.secho("❌ Error: user name must not be blank", fg="red")
            sys.exit(1)
        current = store.write(user)
        click.echo(f"✅ Signed in as {current.username}")
        return

    current = store.read()
    if current is None:
        click.echo("No admin session.")
    else:
        click.echo(f"{current.username} (since {current.logged_in_at})")


@cli.command(name="sync-stats")
@click.option("--dry-run", is_flag=True, help="Show what would be sent without sending it.")
@click.option(
    "--stats-file",
    type=click.Path(dir_okay=False),
    default=str(DEFAULT_CONFIG.server.stats_file),
    show_default=True,
)
def sync_stats(dry_run: bool, stats_file: str) -> None:
    """POST the persisted admin stats to SYNC_ROBOFLOW_ENDPOINT."""
    import httpx
    from dotenv import load_dotenv

    from roadster.core.config import env_str
    from roadster.server.auth import SECRET_HEADER, resolve_endpoint_secret

    load_dotenv()
    path = Path(stats_file)
    if not path.exists():
        click.echo(f"No stats file found at {path}; nothing to sync.")
        return

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        click.secho(f"❌ Unreadable stats file: {exc}", fg="red")
        sys.exit(1)
    click.echo(f"Loaded stats: {json.dumps(payload)}")

    endpoint = env_str("SYNC_ROBOFLOW_ENDPOINT")
    if not endpoint:
        click.echo("No SYNC_ROBOFLOW_ENDPOINT configured; nothing to POST.")
        return
    if dry_run:
        click.echo(f"Dry run: would POST to {endpoint}")
        return

    secret = resolve_endpoint_secret()
    headers = {SECRET_HEADER: secret} if secret else {}
    try:
        response = httpx.post(endpoint, json=payload, headers=headers, timeout=30.0)
    except httpx.HTTPError as exc:
        click.secho(f"❌ Sync failed: {exc}", fg="red")
        sys.exit(1)

    if not response.is_success:
        click.secho(f"❌ Sync failed: HTTP {response.status_code} {response.text}", fg="red")
        sys.exit(3)
    click.echo(f"✅ Sync successful: {response.text}")


if __name__ == "__main__":
    cli()
