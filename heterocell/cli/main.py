"""Command-line interface for heterocell.

Provides commands for running the full analysis, computing centiles and
re-clustering from a saved checkpoint.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

import click
import pandas as pd

from .. import __version__
from ..errors import PipelineError


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("heterocell")


def _fail(error: Exception) -> None:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


def _groups(state, group_col: str) -> pd.Series:
    """Per-cell group labels: latest clustering for ``cluster``, else an obs column."""
    if group_col == "cluster":
        if not state.registry.clusterings:
            raise click.UsageError(
                "Checkpoint has no clustering; run `heterocell recluster` or pass --group-col"
            )
        return state.registry.latest_clustering().labels.astype(str)
    if group_col not in state.matrix.obs.columns:
        raise click.BadParameter(
            f"Unknown group column '{group_col}'", param_hint="--group-col"
        )
    return state.matrix.obs[group_col].astype(str).rename(group_col)


def _write_centiles(pipeline, state, genes: Sequence[str], group_col: str, out_dir: Path, logger):
    from ..core.centiles import (
        CentileAnalyzer,
        export_centile_table,
        export_group_counts,
        export_listings,
    )

    analyzer = CentileAnalyzer(pipeline.config.centiles, logger)
    table = analyzer.compute(state.normalized, list(genes) or None)
    groups = _groups(state, group_col)
    export_centile_table(table, out_dir / "centiles.csv", logger, groups=groups)
    export_listings(analyzer.listings(table, groups), out_dir / "listings.csv", logger)
    export_group_counts(analyzer.group_counts(table, groups), out_dir / "group_counts.csv", logger)
    if len(table.excluded):
        table.excluded.to_csv(out_dir / "excluded_genes.csv", index=False)
    return table


@click.group()
@click.version_option(version=__version__, prog_name="heterocell")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """heterocell: batch-aware clustering of single-cell expression data.

    Examples:

        # Run the full analysis
        heterocell run --counts counts.tsv.gz --annotations cells.csv --out out/

        # Centiles of marker genes from a checkpoint
        heterocell centiles --checkpoint out/checkpoint.h5ad --gene CD3E --out out/centiles/

        # Cluster again at another resolution
        heterocell recluster --checkpoint out/checkpoint.h5ad --resolution 1.0 --out out/res1/
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command()
@click.option("--counts", "-i", "counts_path", required=True, type=click.Path(exists=True),
              help="Gene x cell count table (.csv/.tsv, optionally gzipped)")
@click.option("--annotations", "-a", "annotations_path", type=click.Path(exists=True),
              help="Per-cell annotation table")
@click.option("--annotation-key", default=None, help="Annotation column holding cell identifiers")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--resolution", type=float, default=None, help="Override clustering resolution")
@click.option("--project/--no-project", default=None, help="Compute a 2D projection")
@click.pass_context
def run(
    ctx: click.Context,
    counts_path: str,
    annotations_path: Optional[str],
    annotation_key: Optional[str],
    config: Optional[str],
    output_path: str,
    resolution: Optional[float],
    project: Optional[bool],
) -> None:
    """Run the full analysis and write tables plus a checkpoint.

    Stages: metadata, QC, batch partition, normalization, feature
    selection, PCA, CCA integration, clustering and (optional) projection.
    """
    from ..core.centiles import export_cluster_table
    from ..core.preprocessing import CellQC
    from ..io import (
        ensure_output_dir,
        load_annotation_table,
        load_count_table,
        log_json,
        log_yaml,
        save_checkpoint,
        write_dataframe,
    )
    from ..pipeline import AnalysisConfig, AnalysisPipeline, PipelineLogger

    out_dir = ensure_output_dir(output_path)

    cfg = AnalysisConfig.from_yaml(Path(config)) if config else AnalysisConfig()
    if resolution is not None:
        cfg.clustering.resolution = resolution
    if project is not None:
        cfg.projection.enabled = project
    if annotation_key is not None:
        cfg.metadata.annotation_key_col = annotation_key
    cfg.to_yaml(out_dir / "config_used.yaml")

    level = "DEBUG" if ctx.obj["debug"] else "INFO"
    pipeline_logger = PipelineLogger(out_dir / "logs", log_level=level)
    pipeline_logger.setup(console=ctx.obj["verbose"] or ctx.obj["debug"])
    logger = pipeline_logger.logger

    try:
        counts = load_count_table(counts_path)
        annotations = (
            load_annotation_table(annotations_path, key_column=cfg.metadata.annotation_key_col)
            if annotations_path
            else None
        )
        pipeline = AnalysisPipeline(cfg, pipeline_logger)
        state = pipeline.run(counts, annotations)
    except (PipelineError, ValueError) as e:
        pipeline_logger.close()
        _fail(e)
        return

    for stage_id, summary in state.summaries.items():
        pipeline_logger.log_stage_summary(stage_id, summary)
    pipeline_logger.log_info(f"Writing outputs to {out_dir}")

    qc = pipeline.reports["qc"]
    write_dataframe(qc.removal_table(), out_dir / "qc" / "removed_cells.csv")
    write_dataframe(
        CellQC(cfg.qc, logger).summarize_by(qc, state.batch_col), out_dir / "qc" / "by_batch.csv"
    )
    write_dataframe(pipeline.reports["features"].table, out_dir / "features.csv", index=True)
    write_dataframe(pipeline.reports["pca"].variance_table(), out_dir / "pca_variance.csv")
    write_dataframe(pipeline.reports["integration"].pair_report(), out_dir / "integration_pairs.csv")
    write_dataframe(pipeline.reports["composition"], out_dir / "composition.csv", index=True)

    assignment = state.registry.latest_clustering()
    metadata_cols = [c for c in (state.batch_col, "integrated") if c in state.matrix.obs.columns]
    export_cluster_table(
        assignment, out_dir / "clusters.csv", logger, metadata=state.matrix.obs[metadata_cols]
    )

    if cfg.projection.enabled:
        projection = state.registry.latest_embedding(cfg.projection.method)
        write_dataframe(projection.to_frame(), out_dir / "projection.csv", index=True)

    if cfg.centiles.genes:
        _write_centiles(pipeline, state, cfg.centiles.genes, cfg.centiles.group_col,
                        out_dir / "centiles", logger)

    checkpoint = save_checkpoint(state, out_dir / "checkpoint.h5ad")
    log_json(out_dir / "run_summary.jsonl", {"summaries": dict(state.summaries)})
    log_yaml(out_dir / "run_summary.yaml", dict(state.summaries))
    pipeline_logger.close()

    click.echo(
        f"Analysis complete: {state.n_cells} cells, {assignment.n_clusters} clusters"
    )
    click.echo(f"Checkpoint saved to: {checkpoint}")


@cli.command()
@click.option("--checkpoint", "-i", "checkpoint_path", required=True, type=click.Path(exists=True),
              help="Checkpoint file (.h5ad)")
@click.option("--gene", "-g", "genes", multiple=True, help="Gene symbol (repeatable)")
@click.option("--group-col", default=None, help="Grouping: 'cluster' or an obs column")
@click.option("--threshold", type=int, default=None, help="Centile threshold for group counts")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.pass_context
def centiles(
    ctx: click.Context,
    checkpoint_path: str,
    genes: Sequence[str],
    group_col: Optional[str],
    threshold: Optional[int],
    config: Optional[str],
    output_path: str,
) -> None:
    """Per-gene expression centiles with group counts and listings."""
    logger = ctx.obj["logger"]

    from ..io import load_checkpoint, ensure_output_dir
    from ..pipeline import AnalysisConfig, AnalysisPipeline

    cfg = AnalysisConfig.from_yaml(Path(config)) if config else AnalysisConfig()
    if threshold is not None:
        cfg.centiles.threshold = threshold
    genes = list(genes) or list(cfg.centiles.genes)
    if not genes:
        raise click.UsageError("No genes given; pass --gene or set centiles.genes in the config")

    state = load_checkpoint(checkpoint_path)
    pipeline = AnalysisPipeline(cfg)
    table = _write_centiles(
        pipeline, state, genes, group_col or cfg.centiles.group_col,
        ensure_output_dir(output_path), logger,
    )
    click.echo(f"Centiles computed for {len(table.genes)} genes over {table.n_cells} cells")
    if len(table.excluded):
        click.echo(f"Skipped genes not in matrix: {', '.join(table.excluded['name'])}")


@cli.command()
@click.option("--checkpoint", "-i", "checkpoint_path", required=True, type=click.Path(exists=True),
              help="Checkpoint file (.h5ad)")
@click.option("--resolution", type=float, required=True, help="Leiden clustering resolution")
@click.option("--seed", type=int, default=None, help="Random seed")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.pass_context
def recluster(
    ctx: click.Context,
    checkpoint_path: str,
    resolution: float,
    seed: Optional[int],
    output_path: str,
) -> None:
    """Cluster a checkpoint again; earlier clusterings are kept alongside."""
    logger = ctx.obj["logger"]

    from ..core.centiles import export_cluster_table
    from ..io import ensure_output_dir, load_checkpoint, save_checkpoint
    from ..pipeline import AnalysisConfig, AnalysisPipeline

    state = load_checkpoint(checkpoint_path)
    cfg = AnalysisConfig.from_dict(state.config) if state.config else AnalysisConfig()
    try:
        updated = AnalysisPipeline(cfg).recluster(state, resolution=resolution, seed=seed)
    except PipelineError as e:
        _fail(e)
        return

    out_dir = ensure_output_dir(output_path)
    assignment = updated.registry.latest_clustering()
    export_cluster_table(assignment, out_dir / "clusters.csv", logger)
    checkpoint = save_checkpoint(updated, out_dir / "checkpoint.h5ad")
    click.echo(f"Clustering complete: {assignment.n_clusters} clusters")
    click.echo(f"Output saved to: {checkpoint}")


@cli.command()
@click.option("--checkpoint", "-i", "checkpoint_path", required=True, type=click.Path(exists=True),
              help="Checkpoint file (.h5ad)")
def inspect(checkpoint_path: str) -> None:
    """List the embeddings and clusterings stored in a checkpoint."""
    from ..io import load_checkpoint

    state = load_checkpoint(checkpoint_path)
    click.echo(f"Cells: {state.n_cells}  Genes: {state.matrix.n_genes}  Batch column: {state.batch_col}")
    click.echo("Embeddings:")
    for key, embedding in state.registry.embeddings.items():
        click.echo(f"  {key.label}  [{embedding.n_cells} x {embedding.n_components}]")
    click.echo("Clusterings:")
    for key, assignment in state.registry.clusterings.items():
        click.echo(f"  {key.label}  [{assignment.n_clusters} clusters]")


def main() -> None:
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
