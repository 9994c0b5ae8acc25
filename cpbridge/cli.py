"""
cli.py
------
Command-line interface for headless batch analysis.

Commands:
    cpbridge run      Analyse every row of a CSV manifest through the worker
    cpbridge inspect  Show the input channels and result tables of a pipeline
    cpbridge dump     Print the contents of a results file
    cpbridge export   Export a results file to per-table CSV + JSON summary
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
import numpy as np
from tqdm import tqdm

from cpbridge.bridge.session import BridgeSession
from cpbridge.core.config import AppConfig, load_config
from cpbridge.core.exceptions import CPBridgeError
from cpbridge.core.models import ChannelBinding
from cpbridge.export.csv_export import ResultExporter
from cpbridge.export.result_file import ResultFileWriter, iter_results
from cpbridge.ingestion.manifest import ManifestRowProvider
from cpbridge.processing.row_processor import RowProcessor
from cpbridge.processing.runner import FAIL, SKIP, RowRunner


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%H:%M:%S",
    )


def _load(config_path: str | None, log_level: str | None) -> AppConfig:
    _setup_logging(log_level or "WARNING")
    try:
        cfg = load_config(config_path)
    except CPBridgeError as exc:
        raise click.ClickException(str(exc)) from exc
    if log_level is None:
        logging.getLogger().setLevel(cfg.logging.log_level)
    return cfg


def _pipeline_path(cfg: AppConfig, pipeline: str | None) -> Path:
    path = Path(pipeline) if pipeline else cfg.pipeline_path()
    if path is None:
        raise click.UsageError("No pipeline given: pass --pipeline or set pipeline.file in the config.")
    return path


@click.group()
def main() -> None:
    """Bridge to an external CellProfiler analysis worker -- CLI."""


# ---------------------------------------------------------------------------
# cpbridge run
# ---------------------------------------------------------------------------

@main.command("run")
@click.option("--manifest", required=True, type=click.Path(exists=True, dir_okay=False), help="CSV manifest of input rows.")
@click.option("--pipeline", default=None, type=click.Path(), help="Pipeline file (default: pipeline.file from config).")
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML config (default: config/default.yaml).")
@click.option("--worker", "worker_path", default=None, type=click.Path(), help="Worker entry script (default: worker.module_path).")
@click.option("--key-column", default="key", show_default=True, help="Manifest column holding the row key.")
@click.option("--out", "out_path", default=None, type=click.Path(), help="Results file (default: <manifest>_results.cpbr).")
@click.option("--csv-dir", default=None, type=click.Path(), help="Also export per-table CSV + JSON summary here.")
@click.option("--log-level", default=None, help="Logging verbosity (default: logging.log_level from config).")
@click.option("--skip-errors/--fail-fast", default=None, help="Skip failing rows or stop at the first (default: output.on_row_error).")
@click.option("--max-rows", default=-1, show_default=True, help="Stop after N rows (-1 = all).")
def run_cmd(manifest, pipeline, config_path, worker_path, key_column, out_path, csv_dir, log_level, skip_errors, max_rows):
    """Analyse a manifest of images and store one result per row."""
    cfg = _load(config_path, log_level)
    pipeline_file = _pipeline_path(cfg, pipeline)
    bindings = [ChannelBinding.from_config(c) for c in cfg.processing.channels]
    if not bindings:
        raise click.UsageError("No channel bindings: set processing.channels in the config.")
    if skip_errors is None:
        on_row_error = cfg.output.on_row_error
    else:
        on_row_error = SKIP if skip_errors else FAIL

    manifest_path = Path(manifest)
    results_path = Path(out_path) if out_path else manifest_path.with_name(manifest_path.stem + "_results.cpbr")
    module = Path(worker_path) if worker_path else cfg.module_path()

    click.echo(f"\nManifest : {manifest_path.name}")
    click.echo(f"Pipeline : {pipeline_file}")
    click.echo(f"Results  : {results_path}\n")

    provider = ManifestRowProvider(
        manifest_path,
        key_column=key_column,
        image_columns=[b.column for b in bindings],
        max_rows=max_rows,
    )
    runner: RowRunner | None = None
    failures: list[str] = []
    try:
        with provider, BridgeSession.start(cfg.worker, module) as session, ResultFileWriter(results_path) as writer:
            session.load_pipeline_file(pipeline_file)
            processor = RowProcessor(session, bindings, cfg.output, input_columns=provider.columns)
            runner = RowRunner(processor, on_row_error=on_row_error)

            total = provider.row_count if provider.row_count >= 0 else None
            with tqdm(total=total, unit="row", dynamic_ncols=True) as pbar:
                for outcome in runner.run(provider.rows()):
                    if outcome.ok:
                        writer.write(outcome.result)
                    else:
                        failures.append(outcome.row_key)
                        tqdm.write(f"  [SKIPPED] {outcome.error}")
                    pbar.update(1)
                    pbar.set_postfix({"ok": runner.processed, "failed": runner.failed})
    except KeyboardInterrupt:
        click.echo("\nInterrupted; worker stopped.")
    except CPBridgeError as exc:
        logging.getLogger(__name__).debug("Run aborted", exc_info=True)
        click.echo(f"\nError: {exc}", err=True)
        sys.exit(1)

    click.echo("\n" + "=" * 60)
    click.echo(" RUN COMPLETE")
    click.echo("=" * 60)
    click.echo(f"  Rows analysed : {runner.processed if runner else 0}")
    click.echo(f"  Rows skipped  : {len(failures)}")
    if failures:
        click.echo(f"  Skipped keys  : {', '.join(failures)}")
    click.echo(f"  Results file  : {results_path}")

    if csv_dir and results_path.exists():
        click.echo("\nExporting...")
        try:
            csv_paths, json_out = ResultExporter(results_path).export_all(csv_dir)
        except (CPBridgeError, OSError) as exc:
            click.echo(f"  Export failed: {exc}", err=True)
            sys.exit(1)
        for p in csv_paths:
            click.echo(f"  Export CSV  : {p}")
        click.echo(f"  Summary JSON: {json_out}")
    click.echo("")


# ---------------------------------------------------------------------------
# cpbridge inspect
# ---------------------------------------------------------------------------

@main.command("inspect")
@click.option("--pipeline", default=None, type=click.Path(), help="Pipeline file (default: pipeline.file from config).")
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML config.")
@click.option("--worker", "worker_path", default=None, type=click.Path(), help="Worker entry script.")
@click.option("--log-level", default=None, help="Logging verbosity.")
def inspect_cmd(pipeline, config_path, worker_path, log_level):
    """Load a pipeline and list its input channels and result tables."""
    cfg = _load(config_path, log_level)
    pipeline_file = _pipeline_path(cfg, pipeline)
    module = Path(worker_path) if worker_path else cfg.module_path()
    bound = {c.channel: c.column for c in cfg.processing.channels}

    try:
        with BridgeSession.start(cfg.worker, module) as session:
            session.load_pipeline_file(pipeline_file)
            channels = session.list_input_channels()
            tables = session.list_result_tables()
    except CPBridgeError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"\nPipeline: {pipeline_file}\n")
    click.echo("Input channels:")
    for channel in channels:
        column = bound.get(channel)
        click.echo(f"  {channel:<24} <- {column}" if column else f"  {channel:<24} (not bound)")
    click.echo("\nResult tables:")
    for table in tables:
        click.echo(f"  {table}")
    click.echo("")


# ---------------------------------------------------------------------------
# cpbridge dump
# ---------------------------------------------------------------------------

@main.command("dump")
@click.option("--results", required=True, type=click.Path(exists=True, dir_okay=False), help="Results file.")
@click.option("--table", default=None, help="Only show this result table.")
def dump_cmd(results, table):
    """Print every row of a results file."""
    try:
        for result in iter_results(results):
            click.echo(f"[{result.row_key}]")
            for name, mt in result.items():
                if table and name != table:
                    continue
                click.echo(f"  {name} ({mt.object_count()} object(s))")
                for f in mt.features():
                    if f.is_numeric:
                        shown = np.array2string(np.asarray(f.values), threshold=8, precision=6)
                    else:
                        shown = repr(f.values)
                    click.echo(f"    {f.name:<40} {f.kind:<7} {shown}")
    except CPBridgeError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# cpbridge export
# ---------------------------------------------------------------------------

@main.command("export")
@click.option("--results", required=True, type=click.Path(exists=True, dir_okay=False), help="Results file.")
@click.option("--out-dir", default=None, type=click.Path(), help="Output directory (default: same as results).")
def export_cmd(results, out_dir):
    """Export a results file to per-table CSV + JSON summary."""
    out_dir_path = Path(out_dir) if out_dir else Path(results).parent
    try:
        csv_paths, json_out = ResultExporter(results).export_all(out_dir_path)
    except CPBridgeError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    for p in csv_paths:
        click.echo(f"Export CSV  : {p}")
    click.echo(f"Summary JSON: {json_out}")


if __name__ == "__main__":
    main()
