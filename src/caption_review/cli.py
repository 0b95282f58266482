"""Command-line interface for caption review."""

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler

from .clients.catalog import ImageCatalog
from .clients.ingestion import DEFAULT_API_URL, AssetIngestionClient
from .clients.rest import RestClient
from .clients.vote_store import InMemoryVoteStore, RestVoteStore
from .display import VOTE_STYLES, render_card, render_job, render_summary, render_votes
from .exceptions import AuthenticationError, CaptionReviewError, TransportError, ValidationError
from .models import IngestionJob, JobStatus, QueueStatus, SourceImage
from .pipeline import IngestionPipeline
from .review import ReviewQueueEngine
from .utils.auth import SessionProvider, StaticSessionProvider
from .utils.image_processor import ImageProcessor

console = Console()
logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = "caption-review"

DEFAULT_CONFIG: Dict[str, Any] = {
    "api": {"base_url": DEFAULT_API_URL, "timeout": 120.0},
    "store": {"offline": False, "timeout": 30.0},
    "session": {},
    "review": {
        "auto_advance": True,
        "auto_advance_delay": 0.8,
        "require_identity": True,
        "history_limit": 50,
        "limit": 50,
        "reload_votes": True,
    },
    "upload": {"is_common_use": False},
}

ACTIONS = ["u", "d", "s", "b", "q"]


class ConfigManager:
    """Finds, loads and merges YAML configuration."""

    @staticmethod
    def get_xdg_config_home() -> Path:
        xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
        if xdg_config_home:
            return Path(xdg_config_home)
        return Path.home() / ".config"

    @staticmethod
    def get_xdg_config_dirs() -> List[Path]:
        xdg_config_dirs = os.environ.get("XDG_CONFIG_DIRS", "/etc/xdg")
        return [Path(d) for d in xdg_config_dirs.split(":") if d]

    @classmethod
    def find_config(
        cls, config_name: str = "config", config_path: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Locate and load a configuration file.

        Search order: explicit path, $XDG_CONFIG_HOME, $XDG_CONFIG_DIRS,
        current directory, ~/.caption-review.
        """
        if config_path:
            path = Path(config_path)
            if path.exists():
                return cls.load_yaml(path)
            logger.error(f"Config file not found: {config_path}")
            return None

        filename = f"{config_name}.yaml"
        search_paths = [cls.get_xdg_config_home() / CONFIG_DIR_NAME / filename]
        search_paths.extend(d / CONFIG_DIR_NAME / filename for d in cls.get_xdg_config_dirs())
        search_paths.append(Path.cwd() / filename)
        search_paths.append(Path.home() / f".{CONFIG_DIR_NAME}" / filename)

        for path in search_paths:
            if path.exists():
                logger.debug(f"Using config {path}")
                return cls.load_yaml(path)
        return None

    @staticmethod
    def load_yaml(path: Path) -> Optional[Dict[str, Any]]:
        try:
            with open(path) as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load {path}: {e}")
            return None

    @classmethod
    def merge_configs(cls, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge override into a copy of base."""
        result = dict(base)
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = cls.merge_configs(result[key], value)
            else:
                result[key] = value
        return result


def apply_cli_overrides(config: Dict[str, Any], **kwargs) -> Dict[str, Any]:
    """Set every CLI option that was actually given."""
    overrides = {k: v for k, v in kwargs.items() if v is not None}
    return ConfigManager.merge_configs(config, overrides)


def setup_logging(verbose: bool = False):
    """Configure logging with rich handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[
            RichHandler(console=console, rich_tracebacks=True, show_path=False, show_time=False)
        ],
    )


def store_config_from(config: Dict[str, Any]) -> Dict[str, Any]:
    store_config = dict(config.get("store", {}))
    api_key = os.environ.get("CAPTION_REVIEW_STORE_KEY")
    if api_key:
        store_config["api_key"] = api_key
    return store_config


def build_store_http(store_config: Dict[str, Any]) -> RestClient:
    if not store_config.get("url"):
        raise ValidationError("store.url is not configured")
    api_key = store_config.get("api_key")
    return RestClient(
        store_config["url"],
        timeout=store_config.get("timeout", 30.0),
        headers={"apikey": api_key} if api_key else None,
    )


def load_source_file(path: str) -> List[SourceImage]:
    """Read a review source list (JSON or YAML list of images with captions)."""
    with open(path) as f:
        rows = yaml.safe_load(f) or []
    if not isinstance(rows, list):
        raise ValidationError(f"{path} must contain a list of images")
    return [SourceImage.from_dict(row) for row in rows]


@click.group()
@click.option("--config", type=click.Path(exists=True), help="Configuration file")
@click.option("--verbose", is_flag=True, help="Enable verbose logging")
@click.pass_context
def main(ctx, config: Optional[str], verbose: bool):
    """Caption Review - vote on image captions and upload new images."""
    setup_logging(verbose)
    found = ConfigManager.find_config("config", config) or {}
    ctx.obj = ConfigManager.merge_configs(DEFAULT_CONFIG, found)
    ctx.obj["verbose"] = verbose


def _fail(ctx, error: Exception):
    console.print(f"[red]Error: {error}[/red]")
    if ctx.obj.get("verbose"):
        console.print_exception()
    sys.exit(1)


async def review_loop(engine: ReviewQueueEngine):
    """Interactive terminal loop over the review queue."""
    while engine.status is QueueStatus.REVIEWING:
        snapshot = engine.snapshot()
        console.print(render_card(snapshot))

        action = await asyncio.to_thread(
            click.prompt, "Action", type=click.Choice(ACTIONS), default="s", show_choices=False
        )

        if action == "q":
            break
        if action in ("u", "d"):
            try:
                state = engine.vote(snapshot.card, 1 if action == "u" else -1)
            except AuthenticationError as e:
                console.print(f"[red]{e}[/red]")
                continue
            label, style = VOTE_STYLES[state]
            console.print(f"[{style}]{label}[/{style}]")
            await engine.settle()
        elif action == "s":
            engine.advance()
        elif action == "b" and not engine.back():
            console.print("[dim]Nothing to undo[/dim]")


async def run_review(
    config: Dict[str, Any],
    review_config: Dict[str, Any],
    session: SessionProvider,
    offline: bool,
    source: Optional[str] = None,
):
    store_config = store_config_from(config)
    http = None if offline and source else build_store_http(store_config)

    if offline:
        vote_store = InMemoryVoteStore()
    else:
        vote_store = RestVoteStore(store_config, session, http=http)

    engine = ReviewQueueEngine(vote_store, session, review_config)
    try:
        if source:
            images = load_source_file(source)
        else:
            catalog = ImageCatalog(store_config, session, http=http)
            images = await catalog.fetch_review_images(review_config.get("limit", 50))

        engine.build_queue(images)
        if engine.status is QueueStatus.EMPTY:
            console.print(render_card(engine.snapshot()))
            return

        if review_config.get("reload_votes", True):
            try:
                await engine.reload_votes()
            except TransportError as e:
                logger.warning(f"Could not load stored votes: {e}")

        await review_loop(engine)
        await engine.settle()
        console.print(render_summary(engine.snapshot()))

        if engine.sync_failures:
            console.print(
                f"[yellow]{engine.sync_failures} votes could not be saved; see log for details[/yellow]"
            )
    finally:
        await engine.close()
        if http is not None:
            await http.close()


@main.command()
@click.option("--limit", type=int, help="Number of images to load")
@click.option("--seed", type=int, help="Shuffle seed for a reproducible order")
@click.option("--source", type=click.Path(exists=True), help="Load images from a JSON/YAML file")
@click.option("--offline", is_flag=True, help="Keep votes in memory instead of the vote store")
@click.option("--no-auto-advance", is_flag=True, help="Stay on a card after voting")
@click.pass_context
def review(
    ctx,
    limit: Optional[int],
    seed: Optional[int],
    source: Optional[str],
    offline: bool,
    no_auto_advance: bool,
):
    """Review captions one card at a time."""
    config = ctx.obj
    review_config = apply_cli_overrides(config.get("review", {}), limit=limit, seed=seed)
    if no_auto_advance:
        review_config["auto_advance"] = False
    offline = offline or config.get("store", {}).get("offline", False)

    session = StaticSessionProvider(config.get("session", {}))

    try:
        asyncio.run(run_review(config, review_config, session, offline, source))
    except KeyboardInterrupt:
        console.print("\n[yellow]Review interrupted[/yellow]")
    except CaptionReviewError as e:
        _fail(ctx, e)


async def run_upload(
    api_config: Dict[str, Any],
    upload_config: Dict[str, Any],
    session: SessionProvider,
    path: str,
    content_type: Optional[str] = None,
) -> IngestionJob:
    upload = ImageProcessor.load(path, content_type)
    client = AssetIngestionClient(api_config)
    pipeline = IngestionPipeline(client, session, upload_config)
    try:
        with console.status("Uploading and generating captions... This may take a minute."):
            return await pipeline.run(pipeline.create_job(upload))
    finally:
        await pipeline.close()
        await client.close()


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--content-type", help="Override the detected content type")
@click.option("--common-use", is_flag=True, help="Register the image for common use")
@click.pass_context
def upload(ctx, file: str, content_type: Optional[str], common_use: bool):
    """Upload an image and generate captions for it."""
    config = ctx.obj
    upload_config = apply_cli_overrides(
        config.get("upload", {}), is_common_use=True if common_use else None
    )
    session = StaticSessionProvider(config.get("session", {}))

    try:
        job = asyncio.run(run_upload(config.get("api", {}), upload_config, session, file, content_type))
    except CaptionReviewError as e:
        _fail(ctx, e)
        return

    console.print(render_job(job))
    if job.status is not JobStatus.COMPLETED:
        failure = job.failure
        if failure is not None:
            console.print(
                f"[red]Upload failed at stage {failure.stage.value} ({failure.stage.label}): "
                f"{failure.reason}[/red]"
            )
        sys.exit(1)


async def fetch_votes(config: Dict[str, Any], session: SessionProvider):
    identity_id = session.current_identity_id()
    if identity_id is None:
        raise AuthenticationError("No identity configured")

    store_config = store_config_from(config)
    vote_store = RestVoteStore(store_config, session, http=build_store_http(store_config))
    try:
        return await vote_store.list_votes(identity_id)
    finally:
        await vote_store.close()


@main.command()
@click.pass_context
def votes(ctx):
    """List the votes stored for the configured identity."""
    session = StaticSessionProvider(ctx.obj.get("session", {}))
    try:
        records = asyncio.run(fetch_votes(ctx.obj, session))
    except CaptionReviewError as e:
        _fail(ctx, e)
        return

    if not records:
        console.print("[yellow]No votes yet[/yellow]")
        return
    records.sort(key=lambda r: r.modified_at.isoformat() if r.modified_at else "", reverse=True)
    console.print(render_votes(records))


if __name__ == "__main__":
    main()
