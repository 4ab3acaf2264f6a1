"""conceptkb CLI."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from conceptkb.capabilities import Capabilities, build_capabilities
from conceptkb.config import Config
from conceptkb.exceptions import ConceptKBError
from conceptkb.logging_config import configure_logging
from conceptkb.types import ReconcileProgress


def _get_caps(ctx: click.Context) -> Capabilities:
    config = Config()
    data_dir = ctx.obj.get("data_dir")
    if data_dir:
        config.data_dir = Path(data_dir)
    try:
        return build_capabilities(config, provider=ctx.obj.get("provider"))
    except ConceptKBError as e:
        raise click.ClickException(str(e)) from e


def _run(caps: Capabilities, coro):
    async def _inner():
        try:
            return await coro
        finally:
            await caps.close()
    try:
        return asyncio.run(_inner())
    except ConceptKBError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.option("--data-dir", envvar="CONCEPTKB_DATA_DIR", default=None, help="Data directory")
@click.option("--provider", default=None, type=click.Choice(["openai", "gemini"]),
              help="Force an LLM provider")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, data_dir: str | None, provider: str | None, verbose: bool) -> None:
    """conceptkb: embeddings, semantic cache and link proposals for a concept store."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["data_dir"] = data_dir
    ctx.obj["provider"] = provider


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show embedding coverage."""
    caps = _get_caps(ctx)
    st = caps.orchestrator.get_status()
    _run(caps, caps.client.close())
    click.echo("conceptkb status")
    click.echo(f"  Provider:          {caps.client.provider} ({caps.client.model})")
    click.echo(f"  Concepts:          {st.total}")
    click.echo(f"  With embedding:    {st.with_embedding}")
    click.echo(f"  Without embedding: {st.without_embedding}")
    click.echo(f"  Index size:        {st.index_size}")


@main.command()
@click.option("--batch-size", "-b", default=None, type=int, help="Concepts per batch")
@click.pass_context
def reconcile(ctx: click.Context, batch_size: int | None) -> None:
    """Embed every concept missing a current embedding."""
    caps = _get_caps(ctx)

    def report(p: ReconcileProgress) -> None:
        click.echo(f"  batch {p.iterations}: processed={p.processed} "
                   f"ok={p.successful_batches} failed={p.failed_batches} remaining={p.remaining}")

    result = _run(caps, caps.orchestrator.reconcile_missing(batch_size, on_progress=report))
    click.echo(f"Done: {result.processed} embedded, {result.remaining} remaining")


@main.command()
@click.argument("concept_id")
@click.pass_context
def embed(ctx: click.Context, concept_id: str) -> None:
    """Embed a single concept."""
    caps = _get_caps(ctx)
    record = _run(caps, caps.orchestrator.embed_for_entity(concept_id))
    click.echo(f"Embedded {concept_id}: {record.dims} dims ({record.model})")


@main.command()
@click.argument("query")
@click.option("--limit", "-k", default=10, help="Number of results")
@click.option("--min-similarity", "-m", default=0.0, type=float, help="Similarity floor")
@click.pass_context
def search(ctx: click.Context, query: str, limit: int, min_similarity: float) -> None:
    """Find concepts similar to QUERY."""
    caps = _get_caps(ctx)
    hits = _run(caps, caps.search.find_similar(query, limit=limit, min_similarity=min_similarity))
    if not hits:
        click.echo("No results found.")
    for i, h in enumerate(hits, 1):
        click.echo(f"{i:>3}. {h.similarity:.4f}  {h.entity_id}  {h.title}")


@main.command(name="propose-links")
@click.argument("concept_id")
@click.option("--max", "-n", "max_proposals", default=5, help="Max proposals")
@click.pass_context
def propose_links(ctx: click.Context, concept_id: str, max_proposals: int) -> None:
    """Propose typed links from CONCEPT_ID to other concepts."""
    caps = _get_caps(ctx)
    proposals = _run(caps, caps.links.propose_links(concept_id, max_proposals))
    if not proposals:
        click.echo("No proposals.")
    for p in proposals:
        click.echo(f"  [{p.confidence:.2f}] {p.relation_label} -> {p.target_title} ({p.target_id})")
        if p.reasoning:
            click.echo(f"         {p.reasoning}")


@main.group()
def sessions() -> None:
    """Context session maintenance."""


@sessions.command(name="sweep")
@click.pass_context
def sessions_sweep(ctx: click.Context) -> None:
    """Delete expired context sessions and their provider caches."""
    caps = _get_caps(ctx)
    n = _run(caps, caps.sessions.cleanup_expired())
    click.echo(f"Removed {n} expired sessions")


@main.group()
def cache() -> None:
    """Semantic response cache maintenance."""


@cache.command(name="clear")
@click.option("--provider", default=None, help="Only this provider")
@click.option("--model", default=None, help="Only this model")
@click.pass_context
def cache_clear(ctx: click.Context, provider: str | None, model: str | None) -> None:
    """Remove cached responses."""
    caps = _get_caps(ctx)
    n = caps.cache.clear(provider, model)
    _run(caps, caps.client.close())
    click.echo(f"Cleared {n} cached responses")


@main.command()
@click.option("--host", "-h", default=None, help="Bind host")
@click.option("--port", "-p", default=None, type=int, help="Bind port")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the HTTP API server."""
    import uvicorn
    from conceptkb.api.routes import create_app

    config = Config()
    data_dir = ctx.obj.get("data_dir")
    if data_dir:
        config.data_dir = Path(data_dir)
    host = host or config.api.host
    port = port or config.api.port
    app = create_app(config=config, provider=ctx.obj.get("provider"))
    click.echo(f"Starting conceptkb API on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="info")
