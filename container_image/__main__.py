import logging
import logging.config
import math
import threading
import traceback
from functools import cached_property
from pathlib import Path

import click
from pydantic import ValidationError

import container_image
from container_image.exceptions import ContainerImageError, ParseError

logger = logging.getLogger("container_image")

EXIT_ERROR = 1
EXIT_INTERNAL_ERROR = 125

SIZES = ("B", "KiB", "MiB", "GiB", "TiB", "PiB")

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(levelname)-8s %(message)s",
        },
    },
    "handlers": {
        "default": {
            "formatter": "default",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "container_image": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
        "httpx": {"handlers": ["default"], "level": "WARNING", "propagate": False},
    },
}


def human_readable_size(size: int, decimals: int = 2) -> str:
    if size <= 0:
        return "0 B"
    i = min(int(math.log(size, 1024)), len(SIZES) - 1)
    return f"{size / 1024**i:.{decimals}f} {SIZES[i]}"


class Progress:
    """Print a line for every manifest and blob once it is complete"""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet
        self._lock = threading.Lock()

    def __call__(self, name: str, done: int, total: int):
        if self.quiet or done != total:
            return
        with self._lock:
            click.echo(f"{name:<28} {human_readable_size(total):>12}", err=True)


class App:
    def __init__(self, config: container_image.Config, quiet: bool = False):
        self.config = config
        self.progress = Progress(quiet=quiet)

    @cached_property
    def cache(self) -> container_image.Cache:
        return container_image.open_cache(self.config)

    def client(self) -> container_image.Client:
        return container_image.Client(config=self.config)


class ImageType(click.ParamType):
    name = "NAME[:TAG|@DIGEST]"

    def convert(self, value, param, ctx):
        if isinstance(value, container_image.Image):
            return value
        app = ctx.find_object(App) if ctx is not None else None
        namespace = app.config.namespace if app is not None else "library"
        try:
            return container_image.Image.from_string(value, namespace=namespace)
        except ParseError as e:
            self.fail(str(e), param, ctx)


class PlatformType(click.ParamType):
    name = "OS/ARCH[/VARIANT]"

    def convert(self, value, param, ctx):
        if isinstance(value, container_image.Platform):
            return value
        try:
            return container_image.Platform.from_string(value)
        except ParseError as e:
            self.fail(str(e), param, ctx)


IMAGE = ImageType()
PLATFORM = PlatformType()


class Group(click.Group):
    """Report errors with a message and a distinct exit status"""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except (click.ClickException, click.exceptions.Exit, click.Abort):
            raise
        except ContainerImageError as e:
            click.secho(f"[ERROR] {e}", fg="red", err=True)
            ctx.exit(EXIT_ERROR)
        except Exception:
            click.echo(traceback.format_exc(), err=True)
            ctx.exit(EXIT_INTERNAL_ERROR)


@click.group(cls=Group, invoke_without_command=True)
@click.option("--registry", help="Registry URL", default=None)
@click.option("--auth-url", help="Token service URL", default=None)
@click.option(
    "--cache-dir",
    help="Cache directory",
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
)
@click.option("--insecure", help="Do not verify TLS certificates", is_flag=True)
@click.option("-d", "--debug", help="Debug output", is_flag=True)
@click.option("-q", "--quiet", help="Only report warnings and errors", is_flag=True)
@click.version_option(container_image.__version__, prog_name="image")
@click.pass_context
def cli(ctx, registry, auth_url, cache_dir, insecure, debug, quiet):
    """Fetch container images and check them out onto disk."""
    logging.config.dictConfig(LOGGING_CONFIG)
    if debug:
        logger.setLevel(logging.DEBUG)
    elif quiet:
        logger.setLevel(logging.WARNING)
    try:
        config = container_image.Config.from_env(
            registry_url=registry,
            auth_url=auth_url,
            cache_dir=cache_dir,
            verify=False if insecure else None,
        )
    except ValidationError as e:
        raise click.UsageError(f"Invalid configuration: {e}") from e
    ctx.obj = App(config=config, quiet=quiet)
    if ctx.invoked_subcommand is None:
        ctx.invoke(list_images)


@cli.command()
@click.option(
    "--platform",
    help="Set platform if server is multi-platform capable",
    type=PLATFORM,
    default=None,
)
@click.option(
    "-a", "--all-tags", help="Download all tagged images in the repository", is_flag=True
)
@click.argument("image", type=IMAGE)
@click.pass_obj
def fetch(app: App, platform, all_tags: bool, image):
    """Download an image from a registry."""
    if all_tags:
        logger.warning("--all-tags is not supported, fetching %s only", image)
    with app.client() as client:
        container_image.fetch(
            image,
            platform,
            cache=app.cache,
            client=client,
            progress=app.progress,
        )
    logger.info("Fetched %s", image)


@cli.command("list")
@click.pass_obj
def list_images(app: App):
    """List the images in the cache."""
    for image in container_image.list_images(app.cache):
        click.echo(str(image))


@cli.command()
@click.option(
    "--platform",
    help="Only check out the manifest for this platform",
    type=PLATFORM,
    default=None,
)
@click.option(
    "-o",
    "--output",
    help="Output directory",
    default=".",
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
)
@click.argument("image", type=IMAGE)
@click.pass_obj
def checkout(app: App, platform, output: Path, image):
    """Extract the layers of a fetched image."""
    container_image.checkout(app.cache, output, image, platform=platform)
    logger.info("Checked out %s into %s", image, output / str(image))


if __name__ == "__main__":
    cli()
