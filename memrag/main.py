"""
memrag - CLI Entry Point
-------------------------
Operator commands over the local engine (FAISS index + JSON-backed stores
under index.local_dir, or Pinecone when index.backend = pinecone).

Usage:
    python -m memrag.main ingest notes.md --data-type session --source claude
    python -m memrag.main ingest notes.md --data-type session --queue
    python -m memrag.main process-queue --batch-size 10
    python -m memrag.main query "how did we fix the auth error?" --limit 5
    python -m memrag.main explain-alpha "useEffect cleanup in Auth.tsx"
    python -m memrag.main decay-curve session --max-days 30
    python -m memrag.main chunk notes.md --data-type code
    python -m memrag.main status
"""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from memrag.chunking.chunker import ContentChunker, get_chunk_stats
from memrag.config import RAGConfig, load_config
from memrag.context import QUEUE_FILE, DOCUMENTS_FILE, RAGContext, build_rate_limiters
from memrag.errors import MemragError
from memrag.ingestion.pipeline import IngestionRequest, build_parent_metadata
from memrag.ingestion.store import InMemoryDocumentStore, InMemoryQueueStore
from memrag.ingestion.tagger import default_tags
from memrag.retrieval.alpha import explain_alpha_recommendation
from memrag.retrieval.recency import describe_decay_behavior, generate_decay_curve
from memrag.retrieval.rerank_providers import build_provider_registry
from memrag.retrieval.reranker import RerankOrchestrator
from memrag.schemas import DataType, QueueItem
from memrag.serving.pipeline import QueryOptions, QueryRequest, QueryResponse
from memrag.utils.helpers import truncate_text, utcnow
from memrag.utils.logger import setup_logger

app = typer.Typer(
    name="memrag",
    help="memrag - hybrid retrieval engine for development memory",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

def _setup(config_path: str) -> RAGConfig:
    config = load_config(config_path)
    setup_logger(config.observability.log_level, config.observability.log_file)
    return config


def _read_file(path: Path) -> str:
    if not path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(1)
    return path.read_text(encoding="utf-8")


async def _with_context(config: RAGConfig, fn):
    context = RAGContext.from_config(config)
    try:
        return await fn(context)
    finally:
        context.persist()
        await context.aclose()


def _run(coro):
    try:
        return asyncio.run(coro)
    except MemragError as exc:
        console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
        raise typer.Exit(1)


# --- Commands -----------------------------------------------------------------

@app.command()
def ingest(
    file: Path = typer.Argument(..., help="Text/markdown file to ingest"),
    data_type: str = typer.Option("session", "--data-type", "-t", help="Record data type"),
    source: str = typer.Option("cli", "--source", "-s", help="Source label"),
    queue: bool = typer.Option(False, "--queue", help="Enqueue instead of ingesting now"),
    priority: int = typer.Option(0, "--priority", help="Queue priority (with --queue)"),
    config: str = typer.Option("config/config.yaml", "--config", "-c"),
) -> None:
    """Ingest one file (or enqueue it for the queue worker)."""
    cfg = _setup(config)
    content = _read_file(file)
    dtype = DataType.parse(data_type)

    if queue:
        path = Path(cfg.index.local_dir) / QUEUE_FILE
        store = InMemoryQueueStore.load(path)
        item = asyncio.run(
            store.enqueue(
                QueueItem(content=content, data_type=dtype, source=source, priority=priority,
                          metadata={"file": str(file)})
            )
        )
        store.save(path)
        console.print(f"[green][OK] Enqueued[/green] {item.id} (priority {priority})")
        return

    async def _go(context: RAGContext):
        return await context.ingestion.ingest(
            IngestionRequest(content=content, data_type=dtype, source=source, metadata={"file": str(file)})
        )

    result = _run(_with_context(cfg, _go))
    if not result.success:
        console.print(f"[red]Ingestion failed at '{result.stage.value}':[/red] {result.error}")
        raise typer.Exit(1)
    if result.duplicates_skipped:
        console.print(f"[yellow]Duplicate content[/yellow] - already stored as {result.document_id}")
        return

    table = Table("Field", "Value", box=box.SIMPLE, header_style="bold dim")
    table.add_row("Document", result.document_id)
    table.add_row("Chunks", str(result.chunks_created))
    table.add_row("Vectors", str(result.vectors_upserted))
    if result.tags:
        table.add_row("Domain / action", f"{result.tags.domain} / {result.tags.action}")
        table.add_row("Summary", result.tags.summary)
    table.add_row("Total", f"{result.timing.total_ms:.0f}ms")
    console.print(table)


@app.command()
def query(
    text: str = typer.Argument(..., help="Natural-language query"),
    limit: int = typer.Option(10, "--limit", "-n", help="Results to return"),
    alpha: Optional[float] = typer.Option(None, "--alpha", help="Explicit hybrid alpha (0=lexical, 1=semantic)"),
    recency: Optional[str] = typer.Option(None, "--recency", help="none | light | normal | heavy | critical"),
    no_rerank: bool = typer.Option(False, "--no-rerank", help="Skip cross-encoder reranking"),
    json_out: bool = typer.Option(False, "--json", help="Print the full response as JSON"),
    config: str = typer.Option("config/config.yaml", "--config", "-c"),
) -> None:
    """Run the query pipeline and print the ranked results."""
    cfg = _setup(config)
    request = QueryRequest(
        query=text,
        limit=limit,
        options=QueryOptions(alpha=alpha, recency_weight=recency, use_rerank=False if no_rerank else None),
    )

    async def _go(context: RAGContext) -> QueryResponse:
        return await context.query_pipeline.run(request)

    response = _run(_with_context(cfg, _go))
    if json_out:
        console.print_json(json.dumps(response.to_dict()))
        return
    _print_response(response)


def _print_response(response: QueryResponse) -> None:
    meta = response.metadata
    if meta.detected_intent is not None:
        console.print(
            f"[dim]intent={meta.detected_intent.intent_type} "
            f"({meta.detected_intent.confidence:.2f})[/dim]"
        )
    if meta.expanded_query:
        console.print(f"[dim]expanded: {truncate_text(meta.expanded_query, 120)}[/dim]")
    if meta.sub_queries:
        console.print(f"[dim]sub-queries: {meta.sub_queries}[/dim]")

    if not response.results:
        console.print("[yellow]No results.[/yellow]")
    else:
        table = Table(
            "#", "Type", "Age (d)", "Semantic", "Rerank", "Final", "Preview",
            box=box.SIMPLE,
            header_style="bold dim",
        )
        for r in response.results:
            table.add_row(
                str(r.rank),
                str(r.metadata.get("data_type", "")),
                f"{r.age_days:.1f}" if r.age_days is not None else "-",
                f"{r.semantic_score:.3f}",
                f"{r.rerank_score:.3f}" if r.rerank_score is not None else "-",
                f"{r.final_score:.3f}",
                truncate_text(r.content.replace("\n", " "), 60),
            )
        console.print(table)

    steps = "  ".join(
        f"{s.name}={'skip' if s.skipped else f'{s.duration_ms:.0f}ms'}" for s in meta.pipeline_steps
    )
    console.print(f"[dim]{steps}  |  total={meta.total_time_ms:.0f}ms[/dim]\n")
    for s in meta.pipeline_steps:
        if s.skip_reason and s.skip_reason.startswith("Error"):
            console.print(f"[yellow]{s.name} degraded:[/yellow] {s.skip_reason}")


@app.command("process-queue")
def process_queue(
    batch_size: int = typer.Option(10, "--batch-size", "-b", help="Items to claim"),
    priority_min: int = typer.Option(0, "--priority-min", help="Skip items below this priority"),
    config: str = typer.Option("config/config.yaml", "--config", "-c"),
) -> None:
    """Run one queue worker pass (claim, ingest, retry / dead-letter)."""
    cfg = _setup(config)

    async def _go(context: RAGContext):
        return await context.queue_worker.process_pending(batch_size=batch_size, priority_min=priority_min)

    report = _run(_with_context(cfg, _go))
    table = Table("Processed", "Succeeded", "Failed", "Dead-lettered", "Duplicates", "Stale reset", box=box.SIMPLE)
    table.add_row(
        str(report.processed), str(report.succeeded), str(report.failed),
        str(report.dead_lettered), str(report.duplicates), str(report.stale_reset),
    )
    console.print(table)


@app.command("explain-alpha")
def explain_alpha(
    text: str = typer.Argument(..., help="Query to analyse"),
    data_type: Optional[str] = typer.Option(None, "--data-type", "-t"),
) -> None:
    """Show the hybrid alpha the retriever would use and why."""
    explanation = explain_alpha_recommendation(text, data_type)
    console.print(
        Panel(
            f"[bold]alpha = {explanation['recommended_alpha']}[/bold]\n{explanation['explanation']}",
            title="[cyan]Hybrid alpha[/cyan]",
            expand=False,
        )
    )


@app.command("decay-curve")
def decay_curve(
    data_type: str = typer.Argument(..., help="Data type, e.g. session / code / error"),
    max_days: int = typer.Option(30, "--max-days"),
    step_days: int = typer.Option(1, "--step-days"),
) -> None:
    """Print the recency decay curve for one data type."""
    console.print(describe_decay_behavior(data_type))
    table = Table("Day", "Decay", "", box=box.SIMPLE, header_style="bold dim")
    for point in generate_decay_curve(data_type, max_days=max_days, step_days=step_days):
        table.add_row(str(point["day"]), f"{point['decay']:.3f}", "#" * round(point["decay"] * 40))
    console.print(table)


@app.command()
def chunk(
    file: Path = typer.Argument(..., help="File to chunk"),
    data_type: str = typer.Option("session", "--data-type", "-t"),
) -> None:
    """Chunk a file locally and show per-chunk stats (no API calls)."""
    content = _read_file(file)
    request = IngestionRequest(content=content, data_type=DataType.parse(data_type), source=str(file))
    parent = build_parent_metadata(request, default_tags(content), utcnow())
    chunks = ContentChunker().chunk(content, request.parent_id, parent)

    table = Table("#", "Tokens", "Code", "Error", "Section", "Preview", box=box.SIMPLE, header_style="bold dim")
    for c in chunks:
        table.add_row(
            str(c.chunk_index),
            str(c.token_count),
            "y" if c.metadata.has_code_block else "",
            "y" if c.metadata.has_error else "",
            truncate_text(c.metadata.section_title or "", 30),
            truncate_text(c.content.replace("\n", " "), 50),
        )
    console.print(table)
    stats = get_chunk_stats(chunks)
    console.print(
        f"[dim]{stats.total_chunks} chunks | {stats.total_tokens} tokens | "
        f"avg {stats.avg_tokens_per_chunk} | min {stats.min_chunk_tokens} | max {stats.max_chunk_tokens}[/dim]"
    )


@app.command()
def status(config: str = typer.Option("config/config.yaml", "--config", "-c")) -> None:
    """Show rate limiters, rerank providers / breakers, and local store state."""
    cfg = load_config(config)
    local_dir = Path(cfg.index.local_dir)

    limiters = Table("Limiter", "RPM", "Util %", "Available", box=box.SIMPLE, header_style="bold dim")
    registry = build_rate_limiters(cfg)
    for name, st in registry.statuses().items():
        limiters.add_row(name, str(registry.get(name).requests_per_minute), str(st.utilization_percent),
                         "[green]yes[/green]" if st.available else "[red]no[/red]")
    console.print(limiters)

    reranker = RerankOrchestrator(
        build_provider_registry(cfg.credentials.cohere_api_key, cfg.credentials.pinecone_api_key),
        default_provider=cfg.features.rerank_provider,
        fallback_chain=cfg.rerank.fallback_chain,
    )
    health = asyncio.run(reranker.health())
    providers = Table("Provider", "Available", "Breaker", box=box.SIMPLE, header_style="bold dim")
    for name, info in health["providers"].items():
        breaker = health["circuit_breakers"].get(name, {}).get("state", "closed")
        providers.add_row(name, "[green]yes[/green]" if info["available"] else "[red]no[/red]", breaker)
    console.print(providers)
    console.print(f"Rerank status: [bold]{health['status']}[/bold]")

    documents = InMemoryDocumentStore.load(local_dir / DOCUMENTS_FILE)
    queue_stats = asyncio.run(InMemoryQueueStore.load(local_dir / QUEUE_FILE).stats())
    console.print(f"\nBackend   : {cfg.index.backend} ({local_dir})")
    console.print(f"Documents : {len(documents)}")
    console.print("Queue     : " + "  ".join(f"{k}={v}" for k, v in queue_stats.items()))


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
