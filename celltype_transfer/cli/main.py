"""Command-line interface for CellType-Transfer.

Provides CLI commands for building references, scoring query cells,
re-running pruning from a checkpoint and annotating query AnnData files.
"""

import dataclasses
import functools
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from celltype_transfer import __version__
from celltype_transfer.errors import TransferError


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("celltype_transfer")


def _command_logger(ctx: click.Context, command: str, out_dir: Path) -> logging.Logger:
    """File logger under ``<out>/logs/`` that also echoes to the console."""
    from celltype_transfer.io import get_logger

    level = logging.DEBUG if ctx.obj.get("debug") else logging.INFO
    logger, log_path = get_logger(
        f"celltype_transfer.{command}",
        out_dir / "logs" / f"{command.replace('-', '_')}.log",
        level=level,
        console=ctx.obj.get("verbose", False) or ctx.obj.get("debug", False),
    )
    logger.info("Log file: %s", log_path)
    return logger


def _load_config(config: Optional[str]):
    from celltype_transfer.core.transfer import TransferConfig

    if config:
        return TransferConfig.from_yaml(Path(config))
    return TransferConfig()


def _reports_errors(func):
    """Turn pipeline and file errors into a one-line message and exit code 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except TransferError as exc:
            click.echo(str(exc), err=True)
            sys.exit(1)
        except (FileNotFoundError, TypeError, ValueError) as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)

    return wrapper


@click.group()
@click.version_option(version=__version__, prog_name="celltype-transfer")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """CellType-Transfer: reference-based cell-type labeling for scRNA-seq.

    Labels query cells by rank correlation against an annotated reference
    and prunes low-confidence calls.

    Examples:

        # Build and cache a reference profile
        celltype-transfer build-reference --input ref.h5ad --label-key cell_type --out ref/

        # Score, prune and export tables
        celltype-transfer score --reference ref/reference.joblib --query query.h5ad --out out/

        # Re-run pruning with other thresholds without rescoring
        celltype-transfer prune --checkpoint out/checkpoint --nmads 2 --out pruned/
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command("build-reference")
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Reference expression (.h5ad, or genes x samples .csv/.tsv)")
@click.option("--labels", "labels_path", type=click.Path(exists=True),
              help="CSV with one row per reference sample (required for table input)")
@click.option("--label-key", help="Label column (obs column or CSV column)")
@click.option("--coarse-key", help="Coarse label column for two-pass scoring")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Transfer configuration file (YAML)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.pass_context
@_reports_errors
def build_reference_cmd(
    ctx: click.Context,
    input_path: str,
    labels_path: Optional[str],
    label_key: Optional[str],
    coarse_key: Optional[str],
    config: Optional[str],
    output_path: str,
) -> None:
    """Build a reference profile and cache it as reference.joblib."""
    from celltype_transfer.core.transfer import TransferEngine
    from celltype_transfer.io import (
        ensure_output_dir,
        read_anndata,
        read_expression,
        read_labels,
        save_reference,
    )

    cfg = _load_config(config)
    out_dir = ensure_output_dir(output_path)
    logger = _command_logger(ctx, "build-reference", out_dir)
    engine = TransferEngine(cfg, logger=logger)

    label_key = label_key or cfg.reference.label_key
    coarse_key = coarse_key or cfg.reference.coarse_key
    logger.info("Reference input: %s", input_path)
    logger.info("Label key: %s, coarse key: %s", label_key, coarse_key)

    if input_path.endswith(".h5ad"):
        profile = engine.build_reference(
            read_anndata(input_path), label_key=label_key, coarse_key=coarse_key
        )
    else:
        if labels_path is None:
            raise click.UsageError("--labels is required for table input")
        matrix = read_expression(input_path)
        labels = read_labels(labels_path, label_key).reindex(list(matrix.cells))
        coarse = None
        if coarse_key is not None:
            coarse = read_labels(labels_path, coarse_key).reindex(list(matrix.cells))
        profile = engine.build_reference(matrix, labels=labels, coarse_labels=coarse)

    save_reference(profile, out_dir / "reference.joblib")
    profile.label_medians.to_csv(out_dir / "label_medians.csv", index_label="gene")
    click.echo(
        f"Reference built: {profile.n_labels} labels, {profile.n_samples} samples, "
        f"{len(profile.genes)} genes -> {out_dir / 'reference.joblib'}"
    )


@cli.command()
@click.option("--reference", "-r", "reference_path", required=True, type=click.Path(exists=True),
              help="Cached reference profile (.joblib)")
@click.option("--query", "-q", "query_path", required=True, type=click.Path(exists=True),
              help="Query expression (.h5ad, or genes x cells .csv/.tsv)")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Transfer configuration file (YAML)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--n-jobs", type=int, help="Worker processes for cell batches")
@click.option("--two-pass/--single-pass", default=None,
              help="Score coarse labels first, then fine labels")
@click.option("--no-fine-tune", is_flag=True, help="Disable fine-tuning of near ties")
@click.pass_context
@_reports_errors
def score(
    ctx: click.Context,
    reference_path: str,
    query_path: str,
    config: Optional[str],
    output_path: str,
    n_jobs: Optional[int],
    two_pass: Optional[bool],
    no_fine_tune: bool,
) -> None:
    """Score query cells, prune and export tables plus a checkpoint."""
    from celltype_transfer.core.transfer import TransferEngine
    from celltype_transfer.io import ensure_output_dir, load_reference, read_expression

    cfg = _load_config(config)
    overrides = {}
    if n_jobs is not None:
        overrides["n_jobs"] = n_jobs
    if two_pass is not None:
        overrides["two_pass"] = two_pass
    if no_fine_tune:
        overrides["fine_tune"] = False
    if overrides:
        cfg.scoring = dataclasses.replace(cfg.scoring, **overrides)

    out_dir = ensure_output_dir(output_path)
    logger = _command_logger(ctx, "score", out_dir)

    reference = load_reference(reference_path)
    query = read_expression(query_path, layer=cfg.scoring.query_layer)
    result = TransferEngine(cfg, logger=logger).run(reference, query, output_dir=out_dir)

    click.echo(
        f"Scored {len(result.labels)} cells: {result.pruning.n_pruned} pruned. "
        f"Results in {out_dir}"
    )


@cli.command()
@click.option("--checkpoint", "checkpoint_path", required=True, type=click.Path(exists=True),
              help="Checkpoint directory written by 'score'")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Transfer configuration file (YAML)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--nmads", type=float, help="MADs below the label median delta to prune")
@click.option("--min-diff-med", type=float, help="Minimum delta from the row median")
@click.option("--min-diff-next", type=float, help="Minimum margin over the runner-up")
@click.pass_context
@_reports_errors
def prune(
    ctx: click.Context,
    checkpoint_path: str,
    config: Optional[str],
    output_path: str,
    nmads: Optional[float],
    min_diff_med: Optional[float],
    min_diff_next: Optional[float],
) -> None:
    """Re-run pruning on a saved score checkpoint."""
    from celltype_transfer.core.transfer import export_results, prune_scores
    from celltype_transfer.io import ensure_output_dir, load_checkpoint

    cfg = _load_config(config)
    overrides = {
        key: value
        for key, value in (
            ("nmads", nmads),
            ("min_diff_med", min_diff_med),
            ("min_diff_next", min_diff_next),
        )
        if value is not None
    }
    if overrides:
        cfg.pruning = dataclasses.replace(cfg.pruning, **overrides)
    cfg.output = dataclasses.replace(cfg.output, write_checkpoint=False)

    out_dir = ensure_output_dir(output_path)
    logger = _command_logger(ctx, "prune", out_dir)

    result = load_checkpoint(checkpoint_path)
    pruning = prune_scores(result, cfg.pruning, logger=logger)
    export_results(result, pruning, out_dir, config=cfg, logger=logger)

    click.echo(f"Pruned {pruning.n_pruned}/{len(pruning.cells)} cells. Results in {out_dir}")


@cli.command()
@click.option("--reference", "-r", "reference_path", required=True, type=click.Path(exists=True),
              help="Cached reference profile (.joblib)")
@click.option("--query", "-q", "query_path", required=True, type=click.Path(exists=True),
              help="Query AnnData file (.h5ad)")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Transfer configuration file (YAML)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--label-col", help="Prefix for the obs columns written")
@click.pass_context
@_reports_errors
def annotate(
    ctx: click.Context,
    reference_path: str,
    query_path: str,
    config: Optional[str],
    output_path: str,
    label_col: Optional[str],
) -> None:
    """Transfer labels onto a query AnnData and write annotated.h5ad."""
    from celltype_transfer.core.transfer import TransferEngine
    from celltype_transfer.io import ensure_output_dir, load_reference, read_anndata

    cfg = _load_config(config)
    if label_col:
        cfg.output = dataclasses.replace(cfg.output, label_col=label_col)

    out_dir = ensure_output_dir(output_path)
    logger = _command_logger(ctx, "annotate", out_dir)

    reference = load_reference(reference_path)
    adata = read_anndata(query_path)
    engine = TransferEngine(cfg, logger=logger)
    result = engine.run(reference, adata, output_dir=out_dir)
    engine.annotate(adata, result)

    output_h5ad = out_dir / "annotated.h5ad"
    adata.write_h5ad(output_h5ad)
    logger.info("Wrote %s", output_h5ad)
    click.echo(f"Annotated {adata.n_obs} cells -> {output_h5ad}")


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})
