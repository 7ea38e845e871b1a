"""Typer-powered command line interface for ``sqlcheckup``.

``sqlcheckup assess`` inspects every target concurrently, prints a per-rule
tally and writes the delimited report. Every invocation is recorded in the
structured operations log.
"""
from __future__ import annotations

import json
import logging
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .assessment import AssessmentEngine, ExecutorOptions, collect_rules
from .assessment.utils import serialize_run
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .export import (
    ExportError,
    default_report_path,
    render_instance,
    render_json,
    render_summary,
    write_report,
)
from .logging import OperationScope, StructuredLogger
from .providers import (
    InstanceResolver,
    InventoryInstanceResolver,
    MetricsProvider,
    SqlServerMetricsProvider,
)
from .targets import Target, TargetListError, load_targets, parse_target

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to sqlcheckup's YAML config file.",
)

TARGET_OPTION = typer.Option(
    None,
    "--target",
    "-t",
    help="Host to inspect (host, host,domain or host\\INSTANCE). Repeatable.",
)
TARGETS_FILE_OPTION = typer.Option(
    None,
    "--targets-file",
    "-f",
    exists=True,
    dir_okay=False,
    help="Text or YAML file listing targets.",
)
DOMAIN_OPTION = typer.Option(
    None,
    "--domain",
    help="Domain suffix for targets that do not name one.",
)
FQDN_OPTION = typer.Option(
    None,
    "--fqdn/--no-fqdn",
    help="Connect using host.domain instead of the bare host name.",
)
MAX_CONCURRENCY_OPTION = typer.Option(
    None,
    "--max-concurrency",
    min=1,
    help="Maximum number of targets inspected in parallel.",
)
QUERY_TIMEOUT_OPTION = typer.Option(
    None,
    "--query-timeout",
    help="Per-query timeout in seconds.",
)
OUTPUT_OPTION = typer.Option(
    None,
    "--output",
    "-o",
    dir_okay=False,
    help="Write the report to this file instead of a timestamped name.",
)
OUTPUT_DIR_OPTION = typer.Option(
    None,
    "--output-dir",
    file_okay=False,
    help="Directory for the timestamped report file.",
)
DELIMITER_OPTION = typer.Option(
    None,
    "--delimiter",
    help="Report column delimiter (single character).",
)
NO_EXPORT_OPTION = typer.Option(
    False,
    "--no-export",
    help="Skip writing the report file.",
)
DETAILS_OPTION = typer.Option(
    False,
    "--details",
    help="Print every verdict for each instance.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of the summary table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        SQL Server best-practice assessment.

        Inspects a fleet of SQL Server instances read-only and classifies each
        one against a fixed catalogue of configuration and maintenance rules.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the resolved configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger


def create_provider(config: AppConfig) -> MetricsProvider:
    """Return the metrics provider used by ``assess``."""
    return SqlServerMetricsProvider(
        config.connection,
        login_timeout=config.executor.login_timeout,
    )


def create_resolver(config: AppConfig) -> InstanceResolver:
    """Return the instance resolver used by ``assess``."""
    return InventoryInstanceResolver(use_fqdn=config.use_fqdn)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the sqlcheckup version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Print diagnostic log messages to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(verbose)
    runtime = _ensure_runtime(ctx, config_file)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"sqlcheckup {__version__}")
            op.success("Reported CLI version.")
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _print_json(payload: object) -> None:
    console.print(json.dumps(payload, indent=2), markup=False, highlight=False, soft_wrap=True)


def _assess_overrides(
    *,
    domain: str | None,
    fqdn: bool | None,
    max_concurrency: int | None,
    query_timeout: float | None,
    output_dir: Path | None,
    delimiter: str | None,
) -> dict[str, object]:
    overrides: dict[str, object] = {}
    if domain is not None:
        overrides["domain_suffix"] = domain
    if fqdn is not None:
        overrides["use_fqdn"] = fqdn
    executor: dict[str, object] = {}
    if max_concurrency is not None:
        executor["max_concurrency"] = max_concurrency
    if query_timeout is not None:
        executor["query_timeout"] = query_timeout
    if executor:
        overrides["executor"] = executor
    export: dict[str, object] = {}
    if output_dir is not None:
        export["output_dir"] = str(output_dir)
    if delimiter is not None:
        export["delimiter"] = delimiter
    if export:
        overrides["export"] = export
    return overrides


def _collect_targets(
    config: AppConfig,
    raw_targets: Sequence[str],
    targets_file: Path | None,
) -> list[Target]:
    targets = [parse_target(raw, default_domain=config.domain_suffix) for raw in raw_targets]
    if targets_file is not None:
        targets.extend(load_targets(targets_file, default_domain=config.domain_suffix))
    return targets


@app.command()
def assess(
    ctx: typer.Context,
    target: list[str] | None = TARGET_OPTION,
    targets_file: Path | None = TARGETS_FILE_OPTION,
    domain: str | None = DOMAIN_OPTION,
    fqdn: bool | None = FQDN_OPTION,
    max_concurrency: int | None = MAX_CONCURRENCY_OPTION,
    query_timeout: float | None = QUERY_TIMEOUT_OPTION,
    output: Path | None = OUTPUT_OPTION,
    output_dir: Path | None = OUTPUT_DIR_OPTION,
    delimiter: str | None = DELIMITER_OPTION,
    no_export: bool = NO_EXPORT_OPTION,
    details: bool = DETAILS_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Inspect SQL Server instances and report best-practice verdicts."""
    runtime = _get_runtime(ctx)
    raw_targets = list(target or [])
    with runtime.logger.operation(
        "assess",
        args={
            "targets": raw_targets,
            "targets_file": str(targets_file) if targets_file else None,
            "max_concurrency": max_concurrency,
            "query_timeout": query_timeout,
            "json": json_output,
            "export": not no_export,
        },
        target={"kind": "fleet", "scope": "assessment"},
    ) as op:
        overrides = _assess_overrides(
            domain=domain,
            fqdn=fqdn,
            max_concurrency=max_concurrency,
            query_timeout=query_timeout,
            output_dir=output_dir,
            delimiter=delimiter,
        )
        config = runtime.config
        if overrides:
            try:
                config = load_config(config_file=config.config_file, overrides=overrides)
            except ConfigError as exc:
                _command_error(op, str(exc))

        try:
            targets = _collect_targets(config, raw_targets, targets_file)
        except TargetListError as exc:
            _command_error(op, str(exc))
        if not targets:
            _command_error(op, "No targets supplied; use --target or --targets-file.")
        op.add_step("targets.load", detail=f"{len(targets)} target(s)")

        rules = collect_rules()
        engine = AssessmentEngine(
            create_provider(config),
            create_resolver(config),
            options=ExecutorOptions.from_config(config),
            rules=rules,
        )
        run = engine.run(
            targets,
            metadata={"config_file": str(config.config_file), "use_fqdn": config.use_fqdn},
        )
        op.add_step(
            "assessment.run",
            detail=f"{len(run.reports)} instance(s), {len(run.failures)} failure(s)",
        )
        failure_lines = [f"{failure.target}: {failure.reason}" for failure in run.failures]
        log_context: dict[str, object] = {"summary": serialize_run(run)["summary"]}

        if json_output:
            console.print(render_json(run), markup=False, highlight=False, soft_wrap=True)
        else:
            render_summary(run, rules, console)
            if details:
                for report in run.reports:
                    render_instance(report, rules, console)

        if not run.reports:
            message = "No instance produced a report."
            if not json_output:
                console.print(f"[red]{escape(message)}[/red]")
            op.error(
                message,
                rc=run.exit_code,
                errors=failure_lines or [message],
                context=log_context,
            )
            raise typer.Exit(code=run.exit_code)

        if not no_export:
            path = output or default_report_path(config.export.output_dir)
            try:
                written = write_report(run, rules, path, delimiter=config.export.delimiter)
            except ExportError as exc:
                _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
            op.add_step("report.write", detail=str(written))
            log_context["report"] = str(written)
            if not json_output:
                console.print(f"Report written to {written}")

        if failure_lines:
            op.warning(
                "Assessment completed with unreachable targets.",
                warnings=failure_lines,
                context=log_context,
            )
        else:
            op.success("Assessment completed.", context=log_context)


@app.command("rules")
def list_rules(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List the best-practice rules in report column order."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rules",
        args={"json": json_output},
        target={"kind": "meta", "scope": "rules"},
    ) as op:
        rules = collect_rules()
        if json_output:
            _print_json([{"id": rule.id, "title": rule.title} for rule in rules])
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Id", style="bold")
            table.add_column("Column")
            for rule in rules:
                table.add_row(rule.id, rule.title)
            console.print(table)
        op.success("Listed rules.", context={"count": len(rules)})


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the resolved configuration (password redacted)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config", "scope": "global"},
    ) as op:
        payload = runtime.config.to_dict()
        if json_output:
            _print_json(payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Key", style="bold")
            table.add_column("Value")
            for key, value in payload.items():
                rendered = json.dumps(value) if isinstance(value, dict) else str(value)
                table.add_row(key, escape(rendered))
            console.print(table)
        op.success("Displayed configuration.")


def main() -> None:  # pragma: no cover - thin wrapper for console_scripts
    """Invoke the Typer application."""
    app()


__all__ = ["app", "create_provider", "create_resolver", "main"]
