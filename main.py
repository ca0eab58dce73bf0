"""Main CLI entry point for the Book Research Assistant."""
import asyncio
import time
import click
from pathlib import Path
from anthropic import Anthropic
from rich.console import Console
from rich.table import Table

from utils.logger import setup_logger
from utils.errors import LibraryError, IngestionError
from storage.database import Database
from storage.vector_store import VectorStore
from embedding.api_clients import create_embedding_client
from ingestion.pipeline import IngestionPipeline
from monitoring.progress_tracker import IngestionProgress
from monitoring.search_log import SearchLogEntry, log_search
from retrieval.engine import RetrievalEngine
from answering.answerer import Answerer
import config

logger = setup_logger(__name__)
console = Console()


def build_engine(db: Database) -> RetrievalEngine:
    return RetrievalEngine(db, VectorStore(), create_embedding_client())


RUN_STATUS_STYLES = {"completed": "green", "failed": "red"}


def format_run_status(run) -> str:
    if not run.is_terminal:
        return f"[yellow]{run.status} (resumable)[/yellow]"
    style = RUN_STATUS_STYLES[run.status]
    return f"[{style}]{run.status}[/{style}]"


@click.group()
def cli():
    """Book Research Assistant - index books and ask grounded questions."""
    pass


@cli.command()
@click.option('--pdf', required=True, type=click.Path(exists=True, dir_okay=False), help='Path to PDF book')
@click.option('--slug', required=True, help='Stable identifier shared by every version of the book')
@click.option('--title', required=True, help='Book title')
@click.option('--author', default='Unknown', help='Book author')
def ingest(pdf, slug, title, author):
    """Ingest a PDF book: chunk, embed and index it (resumable)."""
    console.print(f"\n[bold cyan]Ingesting \"{title}\"[/bold cyan]\n")

    db = Database()
    try:
        pipeline = IngestionPipeline(db, VectorStore(), create_embedding_client())
        book_bytes = Path(pdf).read_bytes()
        with IngestionProgress(console) as progress:
            run = pipeline.ingest(book_bytes, slug, title, author, on_progress=progress.update)
    except IngestionError as e:
        console.print(f"[red]Ingestion failed: {e}[/red]")
        if e.run:
            console.print(f"Run ID: [cyan]{e.run.id}[/cyan] - re-run the command to resume")
        raise SystemExit(1)
    except LibraryError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)

    book = db.get_book(run.book_id)

    console.print(f"\n[green]✓ Ingestion complete![/green]")
    table = Table(show_header=False)
    table.add_row("Book", f"{title} ({slug})")
    table.add_row("Book ID", f"[cyan]{run.book_id}[/cyan]")
    table.add_row("Chunks", str(book.total_chunks if book else "?"))
    table.add_row("Inserted", str(run.chunks_processed))
    table.add_row("Skipped", f"{run.chunks_skipped} (duplicates)")
    table.add_row("Run ID", run.id)
    console.print(table)


@cli.command()
@click.argument('query')
@click.option('--book', 'books', multiple=True, help='Restrict to a book slug (repeatable)')
@click.option('--top-k', default=config.DEFAULT_TOP_K, show_default=True, help='Results per search branch (max 10)')
@click.option('--threshold', default=config.DEFAULT_SIMILARITY_THRESHOLD, show_default=True, help='Similarity floor')
def search(query, books, top_k, threshold):
    """Hybrid semantic + keyword search over the indexed books."""
    db = Database()
    total_start = time.perf_counter()
    book_slugs = list(books) or None

    try:
        engine = build_engine(db)
        result = asyncio.run(engine.retrieve(
            query,
            book_slugs=book_slugs,
            top_k=top_k,
            similarity_threshold=threshold
        ))
    except LibraryError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)

    total_ms = int((time.perf_counter() - total_start) * 1000)
    log_search(db, SearchLogEntry(
        query_text=query.strip(),
        book_slugs_filter=book_slugs,
        results_count=len(result.results),
        top_similarity=result.results[0].similarity if result.results else None,
        latency_embedding_ms=result.latency.embedding_ms,
        latency_retrieval_ms=result.latency.retrieval_ms,
        latency_total_ms=total_ms
    ))

    if not result.results:
        console.print("[yellow]No matching passages found[/yellow]")
        return

    table = Table(title=f"Results for \"{query.strip()}\"")
    table.add_column("Sim.", justify="right", style="cyan")
    table.add_column("Book")
    table.add_column("Page", justify="right")
    table.add_column("Section", style="dim")
    table.add_column("Excerpt")

    for item in result.results:
        excerpt = " ".join(item.content.split())[:160]
        table.add_row(
            f"{item.similarity:.2f}",
            item.book_title,
            str(item.page_number or "-"),
            item.section_title or "",
            excerpt
        )

    console.print(table)
    console.print(
        f"[dim]embedding {result.latency.embedding_ms} ms, retrieval {result.latency.retrieval_ms} ms, "
        f"{result.embedding_tokens} tokens[/dim]"
    )


@cli.command()
@click.argument('query')
@click.option('--book', 'books', multiple=True, help='Restrict to a book slug (repeatable)')
@click.option('--top-k', default=config.DEFAULT_TOP_K, show_default=True, help='Results per search branch (max 10)')
def ask(query, books, top_k):
    """Answer a question grounded in the indexed books."""
    if not config.ANTHROPIC_API_KEY:
        console.print("[red]Error: ANTHROPIC_API_KEY not set in environment[/red]")
        raise SystemExit(1)

    db = Database()
    try:
        answerer = Answerer(build_engine(db), db, Anthropic(api_key=config.ANTHROPIC_API_KEY))
        console.print()
        result = asyncio.run(answerer.ask(
            query,
            book_slugs=list(books) or None,
            top_k=top_k,
            on_text=lambda text: console.print(text, end="", markup=False, highlight=False)
        ))
    except LibraryError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)

    console.print("\n")
    if result.is_fallback:
        console.print("[yellow]No sufficiently relevant passages found; answered without citations[/yellow]")
    else:
        table = Table(title="Sources")
        table.add_column("Book")
        table.add_column("Page", justify="right")
        table.add_column("Sim.", justify="right", style="cyan")
        for citation in result.citations:
            table.add_row(citation.book_title, str(citation.page_number or "-"), f"{citation.similarity:.2f}")
        console.print(table)

    if result.suggestions:
        console.print("\n[bold]You could also ask:[/bold]")
        for question in result.suggestions:
            console.print(f"  • {question}", markup=False)

    console.print(
        f"[dim]{result.context_chunks_used} passages, {result.latency.total_ms} ms total, "
        f"{result.tokens.llm_input}+{result.tokens.llm_output} LLM tokens[/dim]"
    )


@cli.command()
def books():
    """Show all indexed book versions."""
    db = Database()
    all_books = db.get_all_books()

    if not all_books:
        console.print("[yellow]No books have been indexed yet[/yellow]")
        return

    table = Table(title="Indexed Books")
    table.add_column("Slug", style="cyan")
    table.add_column("Title")
    table.add_column("Author")
    table.add_column("Pages", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Active", justify="center")
    table.add_column("Indexed", style="dim")

    for book in all_books:
        table.add_row(
            book.slug,
            book.title,
            book.author or "",
            str(book.total_pages or "-"),
            str(book.total_chunks or "-"),
            "[green]✓[/green]" if book.is_active else "",
            book.indexed_at.strftime("%Y-%m-%d") if book.indexed_at else ""
        )

    console.print(table)


@cli.command('inspect-book')
@click.argument('slug')
def inspect_book(slug):
    """Show versions, stored chunk counts and recent ingestion runs for a book."""
    db = Database()
    versions = db.get_books_by_slug(slug)

    if not versions:
        console.print(f"[red]Error: Book not found: {slug}[/red]")
        raise SystemExit(1)

    for book in versions:
        status = "[green]active[/green]" if book.is_active else "[dim]inactive[/dim]"
        console.print(
            f"\n[bold]{book.title}[/bold] ({status}) ID [cyan]{book.id}[/cyan] "
            f"hash {book.pdf_hash}, {db.count_chunks(book.id)} chunks stored"
        )

        runs = db.get_runs(book.id)
        if not runs:
            continue

        table = Table()
        table.add_column("Run", style="cyan")
        table.add_column("Status")
        table.add_column("Started", style="dim")
        table.add_column("Processed", justify="right")
        table.add_column("Skipped", justify="right")
        table.add_column("Last index", justify="right")
        table.add_column("Error", style="red")

        for run in runs:
            table.add_row(
                run.id[:8] + "...",
                format_run_status(run),
                run.started_at.strftime("%Y-%m-%d %H:%M"),
                str(run.chunks_processed),
                str(run.chunks_skipped),
                str(run.last_processed_chunk_index),
                run.error_message or ""
            )
        console.print(table)


@cli.command('inspect-chunk')
@click.argument('chunk_id')
def inspect_chunk(chunk_id):
    """Show one stored chunk and its metadata."""
    db = Database()
    chunk = db.get_chunk(chunk_id)

    if chunk is None:
        console.print(f"[red]Error: Chunk not found: {chunk_id}[/red]")
        raise SystemExit(1)

    table = Table(show_header=False)
    table.add_row("Chunk ID", f"[cyan]{chunk['id']}[/cyan]")
    table.add_row("Book", f"{chunk['book_title']} ({chunk['book_slug']})")
    table.add_row("Book ID", chunk['book_id'])
    table.add_row("Index", str(chunk['chunk_index']))
    table.add_row("Page", str(chunk['page_number'] or "-"))
    table.add_row("Section", chunk['section_title'] or "")
    table.add_row("Tokens", str(chunk['token_count']))
    table.add_row("Hash", chunk['chunk_hash'])
    table.add_row("Created", chunk['created_at'])
    console.print(table)
    console.print()
    console.print(chunk['content'], markup=False, highlight=False)


@cli.command()
def health():
    """Check that the database is reachable."""
    start = time.perf_counter()
    try:
        Database().ping()
    except Exception as e:
        latency_ms = int((time.perf_counter() - start) * 1000)
        console.print(f"[red]error[/red] {e} ({latency_ms} ms)")
        raise SystemExit(1)

    latency_ms = int((time.perf_counter() - start) * 1000)
    console.print(f"[green]ok[/green] database reachable ({latency_ms} ms)")


if __name__ == '__main__':
    cli()
