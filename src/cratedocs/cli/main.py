from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cratedocs.core.config import get_settings
from cratedocs.core.doc_loader import DocsRsLoader
from cratedocs.core.embed import ProviderBinding
from cratedocs.core.errors import ConfigError, CrateDocsError
from cratedocs.core.logging_config import configure_logging
from cratedocs.core.models import IngestOutcome, IngestStatus
from cratedocs.core.populate import IngestionOrchestrator, delete_crate, list_crates
from cratedocs.core.store import PostgresCrateStore

app = typer.Typer(help="Populate the Rust docs database with embeddings")
console = Console()


def _split_features(features: Optional[List[str]]) -> Optional[List[str]]:
    if not features:
        return None
    flags = [flag.strip() for value in features for flag in value.split(",") if flag.strip()]
    return flags or None


def _print_stats(store: PostgresCrateStore) -> None:
    stats = list_crates(store)
    if not stats:
        console.print("No crates in database.")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Crate")
    table.add_column("Version")
    table.add_column("Docs", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Last Updated")
    for stat in stats:
        table.add_row(
            stat.name,
            stat.version or "N/A",
            str(stat.total_docs),
            str(stat.total_tokens),
            stat.last_updated.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


def _print_outcome(outcome: IngestOutcome) -> None:
    name = outcome.crate_name
    if outcome.status is IngestStatus.SKIPPED:
        console.print(f"Embeddings already exist for {name}. Use --force to regenerate.")
        return

    load_time = outcome.timings.get("load", 0.0)
    if outcome.version:
        console.print(f"📦 Detected version: {outcome.version}")

    if outcome.status is IngestStatus.NO_DOCUMENTS:
        console.print(f"[yellow]No documents found for crate: {name}[/]")
        return

    total_kb = outcome.total_content_bytes / 1024
    console.print(
        f"[green]✅ Loaded {outcome.document_count} documents in {load_time:.2f}s ({total_kb:.1f} KB total)[/]"
    )

    if outcome.status is IngestStatus.DRY_RUN:
        console.print()
        console.print("[bold]🧪 Test mode - showing loaded documents:[/]")
        for i, preview in enumerate(outcome.previews, start=1):
            console.print(f"  📄 {i}: {preview.path} ({preview.size_bytes / 1024:.1f} KB)")
            console.print(f"     Preview: {preview.preview}...", markup=False)
        console.print()
        console.print(f"[bold]📊 Summary:[/] {outcome.document_count} documents, {total_kb:.1f} KB total content")
        return

    embed_time = outcome.timings.get("embed", 0.0)
    store_time = outcome.timings.get("store", 0.0)
    console.print(
        f"[green]✅ Generated {outcome.embedding_count} embeddings using {outcome.total_tokens} tokens "
        f"in {embed_time:.2f}s (Est. Cost: ${outcome.estimated_cost:.6f})[/]"
    )
    console.print(f"[green]✅ Successfully stored {outcome.embedding_count} embeddings for {name} in {store_time:.2f}s[/]")
    console.print()
    console.print(f"[bold]🎉 Complete! Total time: {load_time + embed_time + store_time:.2f}s[/]")
    console.print("[bold]📊 Final Summary:[/]")
    console.print(f"  📥 Document loading: {load_time:.2f}s")
    console.print(f"  🧠 Embedding generation: {embed_time:.2f}s")
    console.print(f"  💾 Database storage: {store_time:.2f}s")
    console.print(f"  💰 Estimated cost: ${outcome.estimated_cost:.6f}")


@app.command()
def populate(
    crate_name: Optional[str] = typer.Option(None, "--crate-name", "-c", help="The crate to populate (e.g. tokio, serde)"),
    list_: bool = typer.Option(False, "--list", "-l", help="List all crates in the database"),
    delete: Optional[str] = typer.Option(None, "--delete", "-d", help="Delete embeddings for a crate"),
    force: bool = typer.Option(False, "--force", "-f", help="Force regeneration even if embeddings exist"),
    test: bool = typer.Option(False, "--test", "-t", help="Test mode - only load docs, don't generate embeddings"),
    features: Optional[List[str]] = typer.Option(
        None, "--features", "-F", help="Comma-separated crate features to enable"
    ),
    max_pages: int = typer.Option(10000, "--max-pages", min=1, help="Maximum number of pages to crawl"),
):
    """Populate the Rust docs database with embeddings."""
    try:
        settings = get_settings()
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/] {escape(e.message)}")
        raise typer.Exit(2)

    configure_logging(log_level=settings.log_level, json_logs=settings.json_logs)

    with PostgresCrateStore(settings.database_url) as store:
        try:
            if list_:
                _print_stats(store)
                return

            if delete:
                console.print(f"Deleting embeddings for crate: {delete}")
                delete_crate(store, delete)
                console.print(f"[green]Successfully deleted embeddings for {delete}[/]")
                return

            if not crate_name:
                console.print("Please specify a crate name with --crate-name or use --list to see existing crates")
                return

            orchestrator = IngestionOrchestrator(
                store=store,
                loader=DocsRsLoader(),
                settings=settings,
                provider_binding=ProviderBinding(),
            )
            console.print(f"📥 Populating crate: {crate_name} (max {max_pages} pages)")
            outcome = orchestrator.ingest(
                crate_name,
                version_selector="*",
                features=_split_features(features),
                max_pages=max_pages,
                force=force,
                test_mode=test,
            )
            _print_outcome(outcome)

        except ConfigError as e:
            console.print(f"[red]Configuration error:[/] {escape(e.message)}")
            raise typer.Exit(2)
        except CrateDocsError as e:
            console.print(f"[red]Error during {e.phase} phase:[/] {escape(str(e))}")
            raise typer.Exit(1)


if __name__ == "__main__":
    app()
