"""Main CLI entry point for ai-translate."""

import asyncio
from pathlib import Path
from typing import Optional

import click
import structlog
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from ai_translate import __version__
from ai_translate.config import AppConfig, get_config, set_config
from ai_translate.errors import AiTranslateError

logger = structlog.get_logger()

console = Console()


def setup_config(env_file: Optional[Path] = None) -> None:
    """Load configuration from environment."""
    if env_file:
        load_dotenv(env_file)
    else:
        load_dotenv()

    config = AppConfig.load(env_file)
    set_config(config)


def load_tm(config: AppConfig):
    from ai_translate.tm.store import JsonTranslationMemory

    tm = JsonTranslationMemory.load(config.data_dir)
    if tm is None:
        logger.error("tm_not_found", path=str(config.data_dir / JsonTranslationMemory.FILENAME))
        raise SystemExit(1)
    return tm


def build_orchestrator(config: AppConfig, tm):
    """Wire the orchestrator with the file-backed stores of the config."""
    from ai_translate.glossary.store import CsvGlossaryStore
    from ai_translate.pipeline.orchestrator import Orchestrator
    from ai_translate.services.metrics import MetricsRegistry
    from ai_translate.storage.blob import FileBlobStorage
    from ai_translate.translator.screenshots import DirectoryScreenshotProvider

    metrics = MetricsRegistry()
    metrics.subscribe(lambda event: logger.debug("metric", **event.to_dict()))

    return Orchestrator(
        tm,
        FileBlobStorage(config.blob_dir),
        config=config,
        glossary_store=CsvGlossaryStore(config.glossary_dir),
        screenshot_provider=DirectoryScreenshotProvider(config.screenshot_dir),
        metrics=metrics,
    )


def print_locale_summaries(summaries) -> None:
    table = Table(show_header=True, header_style="bold blue")
    for column in ("Locale", "Attempted", "Requests", "Successful", "Imported", "Skipped", "Failed"):
        table.add_column(column)
    table.add_column("Duration", style="dim")
    for s in summaries:
        table.add_row(
            s.locale,
            str(s.attempted),
            str(s.grouped_requests),
            f"[green]{s.successful}[/green]",
            str(s.imported),
            f"[yellow]{s.skipped}[/yellow]",
            f"[red]{s.failed}[/red]" if s.failed else "0",
            f"{s.duration_seconds:.1f}s",
        )
    console.print(table)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--quiet", "-q", is_flag=True, help="Minimal output")
@click.option("--log-file", type=click.Path(), help="Write JSON logs to file")
@click.option("--env-file", type=click.Path(exists=True), help="Path to .env file")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, verbose: bool, quiet: bool, log_file: Optional[str], env_file: Optional[str]) -> None:
    """AI translation of translation memory text units.

    Translate untranslated strings with an LLM, synchronously or through
    offline batches, and import the results as reviewable variants.
    """
    from ai_translate.log import configure_logging

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet

    verbosity = 1 if verbose else (-1 if quiet else 0)
    log_path = Path(log_file) if log_file else None
    configure_logging(verbosity=verbosity, log_file=log_path)

    setup_config(Path(env_file) if env_file else None)


# =============================================================================
# Translate Command (Main Workflow)
# =============================================================================


@cli.command()
@click.option("--repository", "-r", required=True, help="Repository name")
@click.option("--locale", "-l", "locales", multiple=True, help="Target locale (repeatable)")
@click.option("--max-count", default=100, type=int, help="Max text units per locale")
@click.option("--text-unit-id", "text_unit_ids", multiple=True, type=int, help="Only these ids")
@click.option("--batch", "use_batch", is_flag=True, help="Use offline batches")
@click.option("--wait/--no-wait", default=True, help="Batch mode: wait for the import to finish")
@click.option("--model", help="Model override")
@click.option("--prompt-suffix", help="Text appended to the system prompt")
@click.option(
    "--related-strings",
    default="NONE",
    type=click.Choice(["USAGES", "ID_PREFIX", "NONE"], case_sensitive=False),
    help="Related strings sent as context",
)
@click.option(
    "--translate-type",
    default="TARGET_ONLY_NEW",
    type=click.Choice(["TARGET_ONLY", "TARGET_ONLY_NEW", "WITH_REVIEW"], case_sensitive=False),
    help="Prompt and output schema",
)
@click.option(
    "--status-filter",
    default="FOR_TRANSLATION",
    type=click.Choice(
        ["ALL", "UNTRANSLATED", "TRANSLATED", "FOR_TRANSLATION", "REVIEW_NEEDED"],
        case_sensitive=False,
    ),
    help="Which text units are candidates",
)
@click.option(
    "--import-status",
    default="REVIEW_NEEDED",
    type=click.Choice(["TRANSLATION_NEEDED", "REVIEW_NEEDED", "APPROVED"], case_sensitive=False),
    help="Status of the imported variants",
)
@click.option("--glossary", "glossary_name", help="Named glossary")
@click.option("--term", "glossary_term_source", help="Ad-hoc glossary term (source)")
@click.option("--term-description", help="Ad-hoc term description")
@click.option("--term-target", help="Ad-hoc term target")
@click.option("--term-target-description", help="Ad-hoc term target description")
@click.option("--term-do-not-translate", is_flag=True, help="Ad-hoc term must not be translated")
@click.option("--term-case-sensitive", is_flag=True, help="Ad-hoc term is case sensitive")
@click.option("--only-matched", is_flag=True, help="Only translate units matching the glossary")
@click.option("--dry-run", is_flag=True, help="Translate and report without writing")
@click.option("--timeout", type=int, help="Per-request timeout override (seconds)")
@click.option("--run-id", help="Run id (generated when omitted)")
def translate(
    repository: str,
    locales: tuple[str, ...],
    max_count: int,
    text_unit_ids: tuple[int, ...],
    use_batch: bool,
    wait: bool,
    model: Optional[str],
    prompt_suffix: Optional[str],
    related_strings: str,
    translate_type: str,
    status_filter: str,
    import_status: str,
    glossary_name: Optional[str],
    glossary_term_source: Optional[str],
    term_description: Optional[str],
    term_target: Optional[str],
    term_target_description: Optional[str],
    term_do_not_translate: bool,
    term_case_sensitive: bool,
    only_matched: bool,
    dry_run: bool,
    timeout: Optional[int],
    run_id: Optional[str],
) -> None:
    """Translate text units of a repository.

    Examples:

        # Translate 100 strings per locale, synchronously
        ai-translate translate -r my-app

        # French only, with a glossary, through offline batches
        ai-translate translate -r my-app -l fr-FR --glossary product --batch
    """
    from ai_translate.pipeline.inputs import AiTranslateInput
    from ai_translate.tm.models import StatusFilter, TextUnitStatus
    from ai_translate.translator.related import RelatedStringsType
    from ai_translate.translator.types import AiTranslateType

    config = get_config()
    tm = load_tm(config)

    ai_translate_input = AiTranslateInput(
        repository_name=repository,
        target_locales=list(locales) or None,
        source_text_max_count_per_locale=max_count,
        tm_text_unit_ids=list(text_unit_ids) or None,
        use_batch=use_batch,
        use_model=model,
        prompt_suffix=prompt_suffix,
        related_strings_type=RelatedStringsType.from_string(related_strings),
        translate_type=AiTranslateType.from_string(translate_type),
        status_filter=StatusFilter(status_filter.upper()),
        import_status=TextUnitStatus(import_status.upper()),
        glossary_name=glossary_name,
        glossary_term_source=glossary_term_source,
        glossary_term_source_description=term_description,
        glossary_term_target=term_target,
        glossary_term_target_description=term_target_description,
        glossary_term_do_not_translate=term_do_not_translate,
        glossary_term_case_sensitive=term_case_sensitive,
        glossary_only_matched_text_units=only_matched,
        dry_run=dry_run,
        timeout_seconds=timeout,
    )

    async def run():
        orchestrator = build_orchestrator(config, tm)
        result = await orchestrator.run(ai_translate_input, run_id=run_id)

        if result.locales:
            print_locale_summaries(result.locales)
        if result.batch_creation is not None:
            for handle in result.batch_creation.created_batches:
                click.echo(f"  batch {handle.batch_id} [{handle.locale}]")
            for error in result.batch_creation.errors:
                logger.warning("batch_creation_error", error=error)
        if result.skipped_locales:
            click.echo(f"Nothing to translate for: {', '.join(result.skipped_locales)}")
        if result.batch_creation is not None and result.batch_creation.glossary_skipped_units:
            skipped = ", ".join(result.batch_creation.glossary_skipped_units)
            click.echo(f"No glossary term matched for: {skipped}")

        if result.import_job_id and wait:
            logger.info("waiting_for_batch_import", job_id=result.import_job_id)
            await orchestrator.scheduler.join()
            report = orchestrator.get_report(result.run_id)
            if report is not None:
                print_run_report(orchestrator, report)
        elif result.import_job_id:
            click.echo(
                f"Resume the import with: ai-translate retry-import {result.import_job_id} --resume"
            )

        click.echo(f"Run id: {result.run_id}")

    try:
        asyncio.run(run())
    except AiTranslateError as e:
        logger.error("translate_failed", error=str(e))
        raise SystemExit(1)

    if not dry_run:
        tm.save(config.data_dir)


# =============================================================================
# Batch Import Commands
# =============================================================================


@cli.command("retry-import")
@click.argument("job_id")
@click.option("--resume", is_flag=True, help="Skip batches already imported without errors")
def retry_import(job_id: str, resume: bool) -> None:
    """Re-run a batch import job from its persisted input.

    Waits until every batch of the job is imported or timed out.
    """
    config = get_config()
    tm = load_tm(config)

    async def run():
        orchestrator = build_orchestrator(config, tm)
        try:
            job = orchestrator.retry_import(job_id, resume=resume)
        except KeyError:
            logger.error("job_input_not_found", job_id=job_id)
            raise SystemExit(1)
        await orchestrator.scheduler.join()

        for scheduled in orchestrator.scheduler.list_jobs():
            if scheduled.error:
                logger.error("import_job_failed", job_id=scheduled.id, error=scheduled.error)
        logger.info("retry_import_done", job_id=job.id)

    asyncio.run(run())
    tm.save(config.data_dir)


# =============================================================================
# Report Commands
# =============================================================================


def print_run_report(reports, report) -> None:
    """Print the locale summaries of a run. ``reports`` provides get_report_locale."""
    summaries = []
    for key in report.report_locale_keys:
        key_locale = key.rsplit("/", 1)[-1]
        locale_report = reports.get_report_locale(report.run_id, key_locale)
        if locale_report is not None:
            summaries.append(locale_report.summary)
    if not summaries:
        click.echo(f"No locale report for run {report.run_id}")
        return
    print_locale_summaries(summaries)


@cli.command()
@click.argument("run_id")
@click.option("--locale", "-l", help="Show the per-unit lines of one locale")
@click.option("--errors-only", is_flag=True, help="Only show errored lines")
def report(run_id: str, locale: Optional[str], errors_only: bool) -> None:
    """Display the report of a run."""
    from ai_translate.pipeline.report import ReportStore
    from ai_translate.storage.blob import FileBlobStorage

    config = get_config()
    reports = ReportStore(FileBlobStorage(config.blob_dir))

    run_report = reports.get_report(run_id)
    if run_report is None:
        click.echo(f"No report found for run {run_id}")
        raise SystemExit(1)

    if locale is None:
        print_run_report(reports, run_report)
        return

    locale_report = reports.get_report_locale(run_id, locale)
    if locale_report is None:
        click.echo(f"No report for locale {locale}")
        raise SystemExit(1)

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Id", style="cyan")
    table.add_column("Result")
    table.add_column("Source")
    table.add_column("Old target", style="dim")
    table.add_column("New target", style="green")
    table.add_column("Details")
    for line in locale_report.lines:
        if errors_only and line.error is None:
            continue
        table.add_row(
            str(line.tm_text_unit_id),
            line.result,
            line.source or "",
            line.old_target or "",
            line.new_target or "",
            line.error or line.skipped_reason or "",
        )
    console.print(table)
    print_locale_summaries([locale_report.summary])


# =============================================================================
# Glossary Commands
# =============================================================================


@cli.group()
def glossary():
    """Manage named glossaries."""
    pass


@glossary.command("import")
@click.argument("name")
@click.option(
    "--input",
    "-i",
    "input_file",
    required=True,
    type=click.Path(exists=True),
    help="Input CSV file",
)
@click.option("--merge/--replace", default=True, help="Merge with existing or replace")
def glossary_import(name: str, input_file: str, merge: bool) -> None:
    """Import a glossary CSV under NAME."""
    from ai_translate.glossary.store import Glossary

    config = get_config()
    imported = Glossary.from_csv(Path(input_file), name)
    target = config.glossary_dir / f"{name}.csv"
    config.glossary_dir.mkdir(parents=True, exist_ok=True)

    if merge and target.exists():
        existing = Glossary.from_csv(target, name)
        for entry in imported.entries:
            existing.add(entry)
        existing.to_csv(target)
        click.echo(f"Merged {len(imported)} terms (total: {len(existing)})")
    else:
        imported.to_csv(target)
        click.echo(f"Imported {len(imported)} terms")


@glossary.command("show")
@click.argument("name")
@click.option("--locale", "-l", help="Show targets of one locale")
@click.option("--limit", default=50, help="Maximum entries to show")
def glossary_show(name: str, locale: Optional[str], limit: int) -> None:
    """Display glossary contents."""
    from ai_translate.errors import GlossaryNotFoundError
    from ai_translate.glossary.store import CsvGlossaryStore

    try:
        g = CsvGlossaryStore(get_config().glossary_dir).load(name)
    except GlossaryNotFoundError as e:
        click.echo(str(e))
        raise SystemExit(1)

    entries = [e for e in g.entries if locale is None or e.locale in (None, locale)]
    click.echo(f"Glossary {name} ({len(g)} terms):")
    for entry in entries[:limit]:
        flags = []
        if entry.do_not_translate:
            flags.append("dnt")
        if entry.case_sensitive:
            flags.append("case")
        click.echo(
            f"  {entry.source} → {entry.target or '-'} [{entry.locale or '*'}]"
            + (f" ({', '.join(flags)})" if flags else "")
        )

    if len(entries) > limit:
        click.echo(f"  ... and {len(entries) - limit} more")


# =============================================================================
# Maintenance Commands
# =============================================================================


@cli.command("config")
def show_config() -> None:
    """Show the effective configuration."""
    from ai_translate.config import log_config_summary

    log_config_summary(get_config())


@cli.command()
def purge() -> None:
    """Delete expired batch snapshots and job inputs."""
    from ai_translate.storage.blob import FileBlobStorage

    removed = FileBlobStorage(get_config().blob_dir).purge_expired()
    click.echo(f"Removed {removed} expired entries")


if __name__ == "__main__":
    cli()
