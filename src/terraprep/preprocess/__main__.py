"""CLI entry point for terraprep preprocessing."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rasterio.errors import RasterioError
from tqdm import tqdm

from terraprep.config import VIPS_CONCURRENCY
from terraprep.core.samples import REDUCERS, SampleKind, get_reducer
from terraprep.core.types import NUM_FACES
from terraprep.errors import TerrainPrepError

from .backends import get_vips_import_error, is_vips_available, set_vips_concurrency
from .reproject import ReprojectResult, reproject_dataset
from .sampler import SAMPLING_MODES, RasterioRaster
from .tiles import TileResult, merge_datasets_to_tiles

logger = logging.getLogger(__name__)


class TqdmProgress:
    """Progress callback drawing one tqdm bar per stage."""

    def __init__(self) -> None:
        self._bar: tqdm | None = None
        self._stage: str | None = None

    def __call__(self, stage: str, completed: int, total: int) -> None:
        if self._bar is None or stage != self._stage:
            self.close()
            self._stage = stage
            self._bar = tqdm(total=total, initial=completed, desc=stage, unit="unit")
            return
        self._bar.update(completed - self._bar.n)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def _parse_faces(ctx, param, value: str | None) -> list[int] | None:
    if value is None:
        return None
    try:
        faces = sorted({int(part) for part in value.split(",") if part.strip()})
    except ValueError:
        raise click.BadParameter(f"expected comma separated face numbers, got {value!r}")
    bad = [face for face in faces if not 0 <= face < NUM_FACES]
    if bad or not faces:
        raise click.BadParameter(f"faces must be in 0..{NUM_FACES - 1}, got {value!r}")
    return faces


def _check_prerequisites() -> None:
    """Exit with an error message if pyvips is unusable."""
    if not is_vips_available():
        click.echo(click.style(
            f"Error: terraprep requires pyvips ({get_vips_import_error()}). "
            "Install it with: pip install pyvips[binary]",
            fg="red"
        ), err=True)
        sys.exit(1)
    set_vips_concurrency(VIPS_CONCURRENCY)


def _resolve_sample_kind(sample_type: str, no_data: float) -> SampleKind:
    kind = SampleKind(sample_type)
    try:
        kind.cast(no_data)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--no-data") from None
    return kind


def _print_header(dataset: str, output_dir: Path, max_level: int, grid: bool, faces) -> None:
    """Print the CLI banner with processing parameters."""
    click.echo(click.style("terraprep", fg="cyan", bold=True))
    click.echo(click.style("=" * 40, fg="cyan"))
    click.echo(f"Dataset: {dataset}")
    click.echo(f"Output directory: {output_dir}")
    registration = "grid" if grid else "cell"
    face_label = ",".join(map(str, faces)) if faces else "all"
    click.echo(f"Max level: {max_level} | Registration: {registration} | Faces: {face_label}")
    click.echo()


def _print_summary(label: str, result: ReprojectResult | TileResult) -> None:
    """Print the colored summary of one stage."""
    parts = []
    if result.processed > 0:
        parts.append(click.style(f"{result.processed} processed", fg="green"))
    if result.skipped > 0:
        parts.append(click.style(f"{result.skipped} skipped", fg="cyan"))
    empty = getattr(result, "empty", 0)
    if empty > 0:
        parts.append(click.style(f"{empty} empty", fg="yellow"))

    summary = ", ".join(parts) if parts else "Nothing to process"
    click.echo(click.style(f"{label}: ", bold=True) + summary)


def _fail(error: Exception) -> None:
    click.echo()
    click.echo(click.style(f"Failed: {error}", fg="red"), err=True)
    sys.exit(1)


def _run_reproject(
    source: Path, dataset, output, max_level, grid, no_data, kind, reducer, faces, sampling, band
) -> ReprojectResult:
    progress = TqdmProgress()
    try:
        with RasterioRaster(source, band=band, mode=sampling) as raster:
            return reproject_dataset(
                output,
                dataset,
                raster,
                max_level,
                grid,
                no_data,
                kind,
                reducer=get_reducer(reducer),
                progress_callback=progress,
                faces=faces,
            )
    finally:
        progress.close()


def _run_tiles(dataset, output, max_level, grid, no_data, kind, faces) -> TileResult:
    progress = TqdmProgress()
    try:
        return merge_datasets_to_tiles(
            output,
            dataset,
            max_level,
            grid,
            no_data,
            kind,
            progress_callback=progress,
            faces=faces,
        )
    finally:
        progress.close()


def dataset_options(func):
    """Options shared by every stage command."""
    options = [
        click.option("-d", "--dataset", required=True, help="Dataset name used in file names"),
        click.option(
            "-o",
            "--output",
            type=click.Path(file_okay=False, path_type=Path),
            default="./output",
            help="Base output directory",
        ),
        click.option(
            "--max-level",
            type=click.IntRange(0, 16),
            required=True,
            help="Deepest quadtree level to produce",
        ),
        click.option(
            "--grid/--cell",
            default=True,
            help="Grid (corner) or cell (area) registration (default: grid)",
        ),
        click.option(
            "--no-data",
            type=float,
            default=0.0,
            help="Value written where the source has no coverage (default: 0)",
        ),
        click.option(
            "--sample-type",
            type=click.Choice([kind.value for kind in SampleKind]),
            default=SampleKind.INT16.value,
            help="Numeric type of the samples (default: int16)",
        ),
        click.option(
            "--faces",
            callback=_parse_faces,
            help="Comma separated faces to process, e.g. 0,4 (default: all)",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def source_options(func):
    """Options of commands that read a source raster."""
    options = [
        click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path)),
        click.option(
            "--reducer",
            type=click.Choice(sorted(REDUCERS)),
            default="mean",
            help="2x2 reducer for cell-registered pyramids (default: mean)",
        ),
        click.option(
            "--sampling",
            type=click.Choice(SAMPLING_MODES),
            default="nearest",
            help="Source lookup mode (default: nearest)",
        ),
        click.option("--band", type=click.IntRange(1), default=1, help="Source band (default: 1)"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Reproject planetary rasters onto the cube-sphere and cut node tiles.

    Examples:

        # Reproject a GeoTIFF into sector pyramids
        python -m terraprep.preprocess reproject etopo.tif -d etopo -o ./out --max-level 6

        # Cut tiles from existing sectors
        python -m terraprep.preprocess tiles -d etopo -o ./out --max-level 6

        # Both stages, land cover with nearest cells and a max reducer
        python -m terraprep.preprocess build landcover.tif -d lc -o ./out \\
            --max-level 8 --cell --sample-type uint8 --reducer max
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@source_options
@dataset_options
def reproject(source, reducer, sampling, band, dataset, output, max_level, grid, no_data, sample_type, faces):
    """Reproject SOURCE into per-sector pyramids."""
    kind = _resolve_sample_kind(sample_type, no_data)
    _check_prerequisites()
    _print_header(dataset, output, max_level, grid, faces)
    try:
        result = _run_reproject(
            source, dataset, output, max_level, grid, no_data, kind, reducer, faces, sampling, band
        )
    except (TerrainPrepError, RasterioError) as e:
        _fail(e)
    _print_summary("Sectors", result)


@main.command()
@dataset_options
def tiles(dataset, output, max_level, grid, no_data, sample_type, faces):
    """Cut node tiles from previously reprojected sectors."""
    kind = _resolve_sample_kind(sample_type, no_data)
    _check_prerequisites()
    _print_header(dataset, output, max_level, grid, faces)
    try:
        result = _run_tiles(dataset, output, max_level, grid, no_data, kind, faces)
    except TerrainPrepError as e:
        _fail(e)
    _print_summary("Tiles", result)


@main.command()
@source_options
@dataset_options
def build(source, reducer, sampling, band, dataset, output, max_level, grid, no_data, sample_type, faces):
    """Reproject SOURCE and cut its tiles."""
    kind = _resolve_sample_kind(sample_type, no_data)
    _check_prerequisites()
    _print_header(dataset, output, max_level, grid, faces)
    try:
        sectors = _run_reproject(
            source, dataset, output, max_level, grid, no_data, kind, reducer, faces, sampling, band
        )
        tile_result = _run_tiles(dataset, output, max_level, grid, no_data, kind, faces)
    except (TerrainPrepError, RasterioError) as e:
        _fail(e)
    _print_summary("Sectors", sectors)
    _print_summary("Tiles", tile_result)


if __name__ == "__main__":
    main()
