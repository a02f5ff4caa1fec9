"""Click-based command-line interface for cmr-dicom-import."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional
from types import SimpleNamespace

import click

from .classification import FlowImageOrdering
from .constants import DEFAULT_CORNER_PORTION, DEFAULT_MAX_WORKERS
from .cli_core import (
    setup_logging,
    scan_command,
    info_command,
    classify_command,
    export_bytes_command,
    clear_cache_command,
)


CommandCallable = Callable[[object, logging.Logger], int]


def _invoke_command(func: CommandCallable, **kwargs: Any) -> None:
    """Invoke existing command helpers and map errors to Click exceptions."""
    args = kwargs
    setup_logging(bool(args.get("verbose", False)))
    logger = logging.getLogger(__name__)
    rc = func(SimpleNamespace(**args), logger)
    if rc != 0:
        raise click.ClickException(f"{func.__name__} failed with exit code {rc}")


def common_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator adding shared worker/verbose options."""
    func = click.option(
        "-v",
        "--verbose",
        is_flag=True,
        help="Enable detailed logging",
    )(func)
    func = click.option(
        "-w",
        "--workers",
        type=click.IntRange(min=1),
        default=DEFAULT_MAX_WORKERS,
        show_default=True,
        help="Threads used for reading DICOM files.",
    )(func)
    return func


def cache_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator adding cache directory / no-cache / rebuild flags."""
    func = click.option(
        "--rebuild",
        is_flag=True,
        default=False,
        help="Re-import the directory even if a cached scan exists.",
    )(func)
    func = click.option(
        "--no-cache",
        is_flag=True,
        default=False,
        help="Disable scan caching.",
    )(func)
    func = click.option(
        "--cache-dir",
        type=click.Path(path_type=str),
        help="Directory to store/load cached scans.",
    )(func)
    return func


def _validate_cache_flags(cache_dir: Optional[str], no_cache: bool) -> None:
    if cache_dir and no_cache:
        raise click.BadOptionUsage(
            option_name="--cache-dir",
            message="--cache-dir cannot be combined with --no-cache",
        )


@click.group()
def cli() -> None:
    """Import cardiac MR DICOM directories and classify their images."""


@cli.command("scan")
@click.argument("directory", type=click.Path(path_type=str))
@click.option(
    "-o",
    "--output",
    type=click.Path(path_type=str),
    help="Write a table of all images (.parquet or .csv, or 'csv:PATH').",
)
@common_options
@cache_options
def scan_click(
    *,
    directory: str,
    output: Optional[str],
    workers: int,
    verbose: bool,
    cache_dir: Optional[str],
    no_cache: bool,
    rebuild: bool,
) -> None:
    """Import DIRECTORY and print its image groups."""
    _validate_cache_flags(cache_dir, no_cache)
    _invoke_command(
        scan_command,
        directory=directory,
        output=output,
        workers=workers,
        verbose=verbose,
        cache_dir=cache_dir,
        no_cache=no_cache,
        rebuild=rebuild,
    )


@cli.command("info")
@click.argument("directory", type=click.Path(path_type=str))
@click.argument("image_ids", nargs=-1, type=int)
@common_options
@cache_options
def info_click(
    *,
    directory: str,
    image_ids: tuple[int, ...],
    workers: int,
    verbose: bool,
    cache_dir: Optional[str],
    no_cache: bool,
    rebuild: bool,
) -> None:
    """Print reports for IMAGE_IDS of DIRECTORY (all images if none are given)."""
    _validate_cache_flags(cache_dir, no_cache)
    _invoke_command(
        info_command,
        directory=directory,
        image_ids=list(image_ids),
        workers=workers,
        verbose=verbose,
        cache_dir=cache_dir,
        no_cache=no_cache,
        rebuild=rebuild,
    )


@cli.command("classify")
@click.argument("directory", type=click.Path(path_type=str))
@click.option(
    "--corner-portion",
    type=click.IntRange(min=1),
    default=DEFAULT_CORNER_PORTION,
    show_default=True,
    help="Corner edge length as a fraction of the image size.",
)
@click.option(
    "--ordering",
    type=click.Choice([o.value for o in FlowImageOrdering], case_sensitive=False),
    help="Velocity axis encoded by each flow image, in ascending id order.",
)
@click.option(
    "--venc-3dt",
    type=float,
    help="Velocity encoding of the 3D+T flow images in m/s.",
)
@click.option(
    "--venc-2dt",
    type=float,
    help="Velocity encoding of the 2D+T flow images in m/s.",
)
@click.option(
    "-o",
    "--output",
    type=click.Path(path_type=str),
    help="Write a table of all images with their roles (.parquet or .csv).",
)
@common_options
@cache_options
def classify_click(
    *,
    directory: str,
    corner_portion: int,
    ordering: Optional[str],
    venc_3dt: Optional[float],
    venc_2dt: Optional[float],
    output: Optional[str],
    workers: int,
    verbose: bool,
    cache_dir: Optional[str],
    no_cache: bool,
    rebuild: bool,
) -> None:
    """Detect flow images in DIRECTORY and print the image roles."""
    _validate_cache_flags(cache_dir, no_cache)
    _invoke_command(
        classify_command,
        directory=directory,
        corner_portion=corner_portion,
        ordering=ordering,
        venc_3dt=venc_3dt,
        venc_2dt=venc_2dt,
        output=output,
        workers=workers,
        verbose=verbose,
        cache_dir=cache_dir,
        no_cache=no_cache,
        rebuild=rebuild,
    )


@cli.command("export-bytes")
@click.argument("directory", type=click.Path(path_type=str))
@click.argument("image_id", type=int)
@click.argument("output", type=click.Path(path_type=str))
@common_options
@cache_options
def export_bytes_click(
    *,
    directory: str,
    image_id: int,
    output: str,
    workers: int,
    verbose: bool,
    cache_dir: Optional[str],
    no_cache: bool,
    rebuild: bool,
) -> None:
    """Save the raw pixel bytes of IMAGE_ID in DIRECTORY to OUTPUT."""
    _validate_cache_flags(cache_dir, no_cache)
    _invoke_command(
        export_bytes_command,
        directory=directory,
        image_id=image_id,
        output=output,
        workers=workers,
        verbose=verbose,
        cache_dir=cache_dir,
        no_cache=no_cache,
        rebuild=rebuild,
    )


@cli.command("clear-cache")
@click.argument("directories", nargs=-1)
@click.option(
    "--cache-dir",
    type=click.Path(path_type=str),
    help="Cache directory containing scan files.",
)
@click.option(
    "--all",
    is_flag=True,
    help="Remove every cached scan from the cache directory.",
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    help="Enable detailed logging",
)
def clear_cache_click(
    *,
    directories: tuple[str, ...],
    cache_dir: Optional[str],
    verbose: bool,
    all: bool,
) -> None:
    """Delete cached scans for specific directories or all cached entries."""
    _invoke_command(
        clear_cache_command,
        directories=list(directories),
        cache_dir=cache_dir,
        all=all,
        verbose=verbose,
    )


__all__ = ["cli"]
