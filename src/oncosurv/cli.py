import json
import logging
import logging.handlers
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import click
import pandas as pd

from oncosurv import __version__
from oncosurv.analysis.pipeline import run_survival_pipeline
from oncosurv.cohort.store import DEFAULT_SOURCE, DEFAULT_SUBTYPE, LOCAL_SOURCE, XENA_LAYOUTS, CohortStore
from oncosurv.config import AnalysisConfig, load_settings
from oncosurv.errors import DataUnavailableError, OncosurvError

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.25
ENDPOINTS = ("OS", "DSS", "DFI", "PFI")
SOURCES = tuple(sorted(XENA_LAYOUTS)) + (LOCAL_SOURCE,)
RUN_LOG = "run.log"


def _configure_run_log(output_dir: Path) -> logging.Handler:
    """Attach a rotating ``run.log`` in the output directory to the package logger."""
    output_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        output_dir / RUN_LOG, maxBytes=5 * 1024 * 1024, backupCount=3,
    )
    handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    handler.setLevel(logging.DEBUG)
    package_logger = logging.getLogger("oncosurv")
    package_logger.addHandler(handler)
    return handler


def parse_signatures(values: Iterable[str]) -> Dict[str, List[str]]:
    """Parse ``NAME=G1,G2,...`` options into a name -> genes mapping."""
    signatures: Dict[str, List[str]] = {}
    for value in values:
        name, sep, members = value.partition("=")
        genes = [g.strip() for g in members.split(",") if g.strip()]
        if not sep or not name.strip() or not genes:
            raise click.BadParameter(
                f"expected NAME=GENE1,GENE2,... got {value!r}", param_hint="--signature"
            )
        if name.strip() in signatures:
            raise click.BadParameter(f"duplicate signature {name!r}", param_hint="--signature")
        signatures[name.strip()] = genes
    return signatures


def _read_gene_file(path: Optional[Path]) -> List[str]:
    if path is None:
        return []
    with path.open(encoding="utf-8") as fh:
        return [line.strip() for line in fh if line.strip() and not line.startswith("#")]


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
@click.version_option(__version__, prog_name="oncosurv")
def cli(verbose: bool) -> None:
    """Exploratory survival stratification of cancer cohorts by gene expression."""
    settings = load_settings()
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


@cli.command("fetch")
@click.option(
    "--cancer",
    "cancers",
    multiple=True,
    required=True,
    help="Cancer type code to cache, e.g. BRCA (repeat for multiple).",
)
@click.option(
    "--source",
    type=click.Choice(SOURCES),
    default=DEFAULT_SOURCE,
    show_default=True,
    help="Data source.",
)
@click.option(
    "--subtype",
    default=DEFAULT_SUBTYPE,
    show_default=True,
    help="Expression dataset within the source.",
)
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Cohort cache directory (default: $ONCOSURV_CACHE_DIR or ~/.oncosurv/cache).",
)
def fetch_command(
    cancers: Tuple[str, ...],
    source: str,
    subtype: str,
    cache_dir: Optional[Path],
) -> None:
    """Download cohorts into the local cache without analyzing them."""
    settings = load_settings()
    store = CohortStore(cache_dir=cache_dir or settings.cache_dir, hub_url=settings.xena_hub)

    cached, failed = [], []
    for cancer in dict.fromkeys(cancers):
        try:
            entry = store.fetch(cancer, source, subtype)
            click.echo(f"{cancer}: cached under {entry.expression.parent.parent}")
            cached.append(cancer)
        except DataUnavailableError as exc:
            click.echo(f"{cancer}: unavailable ({exc})", err=True)
            failed.append(cancer)

    click.echo(f"\nCached: {len(cached)}  Failed: {len(failed)}")
    if failed:
        click.echo(f"Failed cohorts: {', '.join(failed)}", err=True)


@cli.command("analyze")
@click.option("--gene", "genes", multiple=True, help="Gene to analyze (repeat for multiple).")
@click.option(
    "--gene-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="File with one gene per line.",
)
@click.option(
    "--signature",
    "signature_specs",
    multiple=True,
    help="Gene signature as NAME=GENE1,GENE2,... analyzed as a pseudo-gene.",
)
@click.option(
    "--signature-method",
    type=click.Choice(["mean", "zscore"]),
    default="mean",
    show_default=True,
    help="How signature members are combined.",
)
@click.option(
    "--cancer",
    "cancers",
    multiple=True,
    required=True,
    help="Cancer type code, e.g. BRCA (repeat for multiple).",
)
@click.option("--source", type=click.Choice(SOURCES), default=DEFAULT_SOURCE, show_default=True)
@click.option("--subtype", default=DEFAULT_SUBTYPE, show_default=True)
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Cohort cache directory (default: $ONCOSURV_CACHE_DIR or ~/.oncosurv/cache).",
)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("results"),
    show_default=True,
    help="Directory for results, run summary and checkpoint.",
)
@click.option(
    "--endpoint",
    type=click.Choice(ENDPOINTS),
    default="OS",
    show_default=True,
    help="Survival endpoint (overall, disease-specific, disease-free, progression-free).",
)
@click.option(
    "--min-nonzero",
    type=click.FloatRange(0.0, 1.0),
    default=0.9,
    show_default=True,
    help="Minimum fraction of samples with non-zero expression for a gene to be kept.",
)
@click.option(
    "--gene-filter-scope",
    type=click.Choice(["subgroup", "cohort"]),
    default="subgroup",
    show_default=True,
    help="Recompute the low-expression filter per subgroup or once per cohort.",
)
@click.option("--no-auto-cutoff", is_flag=True, help="Use the median as a fixed cutoff.")
@click.option("--log2", "log2", is_flag=True, help="Apply log2(x + 1) before the cutoff search.")
@click.option(
    "--min-group-fraction",
    type=click.FloatRange(0.0, 0.5, max_open=True),
    default=0.1,
    show_default=True,
    help="Minimum fraction of samples in each expression group.",
)
@click.option(
    "--censor-years",
    type=click.FloatRange(0.0, min_open=True),
    default=None,
    help="Right-censor survival at this many years.",
)
@click.option(
    "--min-subgroup-size",
    type=click.IntRange(0),
    default=40,
    show_default=True,
    help="Subgroups need more than this many samples to be analyzed.",
)
@click.option(
    "--combinations",
    type=click.IntRange(1),
    default=1,
    show_default=True,
    help="Maximum number of categories pooled into one subgroup.",
)
@click.option("--no-subgroups", is_flag=True, help="Analyze full cohorts only.")
@click.option(
    "--workers",
    type=click.IntRange(1, 64),
    default=1,
    show_default=True,
    help="Worker threads across subgroups.",
)
@click.option("--restart", is_flag=True, help="Discard any checkpoint and start fresh.")
@click.option("--save-km-data", is_flag=True, help="Also write raw survival triples per row.")
def analyze_command(
    genes: Tuple[str, ...],
    gene_file: Optional[Path],
    signature_specs: Tuple[str, ...],
    signature_method: str,
    cancers: Tuple[str, ...],
    source: str,
    subtype: str,
    cache_dir: Optional[Path],
    output_dir: Path,
    endpoint: str,
    min_nonzero: float,
    gene_filter_scope: str,
    no_auto_cutoff: bool,
    log2: bool,
    min_group_fraction: float,
    censor_years: Optional[float],
    min_subgroup_size: int,
    combinations: int,
    no_subgroups: bool,
    workers: int,
    restart: bool,
    save_km_data: bool,
) -> None:
    """Find expression cutoffs that stratify survival across cohorts and subgroups."""
    all_genes = list(genes) + _read_gene_file(gene_file)
    signatures = parse_signatures(signature_specs)
    if not all_genes and not signatures:
        raise click.UsageError("Give at least one --gene, --gene-file or --signature.")

    config = AnalysisConfig(
        minimum_nonzero_fraction=min_nonzero,
        gene_filter_scope=gene_filter_scope,
        auto_cutoff=not no_auto_cutoff,
        transform_to_log2=log2,
        min_group_fraction=min_group_fraction,
        time_column=f"{endpoint}.time",
        event_column=endpoint,
        max_survival_days=censor_years * DAYS_PER_YEAR if censor_years else None,
        min_subgroup_size=min_subgroup_size,
        max_category_combination=combinations,
        analyze_subgroups=not no_subgroups,
        workers=workers,
        save_km_data=save_km_data,
    )
    settings = load_settings()
    store = CohortStore(
        cache_dir=cache_dir or settings.cache_dir,
        hub_url=settings.xena_hub,
        time_column=config.time_column,
        event_column=config.event_column,
    )

    handler = _configure_run_log(output_dir)
    try:
        result = run_survival_pipeline(
            cancers=cancers,
            genes=all_genes,
            output_dir=output_dir,
            config=config,
            store=store,
            signatures=signatures,
            source=source,
            subtype=subtype,
            restart=restart,
            signature_method=signature_method,
        )
    except OncosurvError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        logging.getLogger("oncosurv").removeHandler(handler)
        handler.close()

    summary = result.summary
    click.echo("\n" + "=" * 60)
    click.echo("SURVIVAL ANALYSIS SUMMARY")
    click.echo("=" * 60)
    click.echo(f"Cohorts: {len(summary['cancers'])} ({len(summary['failed_cohorts'])} failed)")
    click.echo(f"Rows: {summary['rows']} ({summary['rows_degenerate']} degenerate)")
    click.echo(f"Significant at FDR < 0.05: {summary['significant_fdr_05']}")
    click.echo(f"Skipped: {summary['skipped']}")
    for reason, count in sorted(summary["skipped_by_reason"].items()):
        click.echo(f"  {reason}: {count}")
    if summary["failed_cohorts"]:
        click.echo(f"Failed cohorts: {', '.join(summary['failed_cohorts'])}")
    click.echo(f"\nResults: {result.files['results']}")
    click.echo(f"Summary: {result.files['summary']}")
    click.echo("=" * 60)

    top = result.table[result.table["p_value"].notna()].head(5)
    if not top.empty:
        click.echo("\nTop rows by log-rank p-value:")
        for _, row in top.iterrows():
            hr = "NA" if pd.isna(row["hazard_ratio"]) else f"{row['hazard_ratio']:.2f}"
            click.echo(
                f"  {row['gene']:<12} {row['cancer']:<6} {row['annotation']}={row['category']}  "
                f"HR={hr}  p={row['p_value']:.2e}  q={row['adjusted_p_value']:.2e}"
            )


@cli.command("summary")
@click.argument("output_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
def summary_command(output_dir: Path) -> None:
    """Print the run summary of a finished analysis."""
    summary_path = output_dir / "run_summary.json"
    if not summary_path.exists():
        raise click.ClickException(f"No run_summary.json in {output_dir}")
    with summary_path.open(encoding="utf-8") as fh:
        summary = json.load(fh)
    click.echo(json.dumps({k: summary[k] for k in summary if k not in ("config", "cohorts")}, indent=2))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
