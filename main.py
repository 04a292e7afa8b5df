#!/usr/bin/env python3
"""
DocGraph Reasoning System - agentic GraphRAG over private document corpora
"""

import asyncio
import json
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from docgraph.cache import NullCache, RedisCache
from docgraph.chat import ChatService
from docgraph.kg import Entity, EntityProperties, GraphProcessor, Neo4jGraphStore, graph_utils
from docgraph.models.llm_manager import LLMManager, resolve_env_vars
from docgraph.rag import PineconeVectorStore
from docgraph.reasoning import ReasoningEngine
from docgraph.router import IntentClassifier, QueryConstraints, QueryContext, QueryPlanner

logger = logging.getLogger(__name__)


def load_env_file():
    """Load environment variables from .env file if it exists."""
    env_file = Path(".env")
    if env_file.exists():
        with open(env_file, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    os.environ.setdefault(key.strip(), value.strip())


def _resolve_config(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _resolve_config(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_config(v) for v in value]
    resolved = resolve_env_vars(value)
    if isinstance(resolved, str) and re.fullmatch(r"\$\{[^}]+\}", resolved):
        return None
    return resolved


def load_config(config_path: str = "config/config.yaml") -> dict:
    """Load configuration from YAML file, resolving ${VAR} placeholders."""
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        return _resolve_config(config)
    except FileNotFoundError:
        print(f"Configuration file not found: {config_path}")
        sys.exit(1)
    except yaml.YAMLError as e:
        print(f"Error parsing configuration file: {e}")
        sys.exit(1)


def setup_logging(config: dict):
    """Setup logging configuration."""
    log_config = config.get("logging", {})
    log_level = getattr(logging, str(log_config.get("level", "INFO")).upper(), logging.INFO)
    log_format = log_config.get("format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    log_file = log_config.get("file", "logs/docgraph.log")
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )


class DocGraphSystem:
    """Wires the backends and reasoning components from configuration."""

    def __init__(self, config: dict):
        self.config = config
        self.console = Console()
        self.debug_mode = config.get("debug", {}).get("enabled", False)

        cache_config = config.get("cache", {})
        if cache_config.get("enabled", True):
            self.cache = RedisCache(cache_config)
        else:
            self.cache = NullCache()

        self.llm_manager = LLMManager(config)
        self.vector_store = PineconeVectorStore(config.get("pinecone", {}))
        self.graph_store = Neo4jGraphStore(config.get("neo4j", {}))

        planner_config = config.get("planner", {})
        self.planner = QueryPlanner(
            planner_config,
            self.llm_manager,
            self.vector_store,
            self.graph_store,
            intent_classifier=IntentClassifier(planner_config, self.llm_manager, self.cache),
        )
        self.engine = ReasoningEngine(config.get("reasoning", {}), self.planner, self.llm_manager, self.cache)
        self.graph_processor = GraphProcessor(config.get("graph", {}), self.graph_store, self.llm_manager, self.cache)
        self.chat = ChatService(self.engine, self.graph_processor, on_error=self._report_history_error)

    def _report_history_error(self, error: Exception):
        self.console.print(f"[yellow]Chat history not saved: {error}[/yellow]")

    async def close(self):
        await self.chat.drain()
        await self.graph_store.close()
        await self.vector_store.close()
        await self.cache.close()
        await self.llm_manager.close()

    async def ask(self, context: QueryContext, show_events: bool = False) -> Dict[str, Any]:
        """Stream one question through the chat service and collect the outcome."""
        outcome: Dict[str, Any] = {"answer": "", "sources": [], "graph": None, "tools": [], "error": None}

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=self.console,
            transient=True
        ) as progress:
            task = progress.add_task("Reasoning...", total=None)
            async for event in self.chat.stream(context):
                if event.type == "reasoning":
                    step = event.payload["step"]
                    progress.update(task, description=step["content"][:80])
                    if show_events:
                        self.console.print(f"[dim]{step['type']}: {step['content']}[/dim]")
                elif event.type == "tool":
                    outcome["tools"].append(event.payload["tool"])
                elif event.type == "refinement" and show_events:
                    self.console.print(f"[magenta]refinement: {event.payload['data']}[/magenta]")
                elif event.type == "chunk":
                    outcome["answer"] += event.payload["content"]
                elif event.type == "sources":
                    outcome["sources"] = event.payload["sources"]
                elif event.type == "knowledge_graph":
                    outcome["graph"] = event.payload["graph"]
                elif event.type == "error":
                    outcome["error"] = event.payload["message"]

        outcome["answer"] = outcome["answer"].strip()
        return outcome

    def display_answer(self, outcome: Dict[str, Any]):
        if outcome["error"]:
            self.console.print(f"[red]Error: {outcome['error']}[/red]")
            return

        self.console.print(Panel(
            outcome["answer"] or "No answer generated",
            title="[bold blue]Answer[/bold blue]",
            border_style="blue"
        ))

        if outcome["tools"]:
            tool_table = Table(title="Tools Executed")
            tool_table.add_column("Tool", style="cyan")
            tool_table.add_column("Results", style="white")
            tool_table.add_column("Confidence", style="green")
            tool_table.add_column("Time (ms)", style="white")
            for tool in outcome["tools"]:
                tool_table.add_row(
                    tool["tool"],
                    str(tool["result_count"]),
                    f"{tool['confidence']:.2f}",
                    f"{tool['execution_time']:.0f}"
                )
            self.console.print(tool_table)

        if outcome["sources"]:
            source_table = Table(title="Sources")
            source_table.add_column("Type", style="cyan")
            source_table.add_column("File", style="white")
            source_table.add_column("Detail", style="white")
            for source in outcome["sources"]:
                detail = source.get("content") or f"{source.get('entity')} ({source.get('entityType')})"
                source_table.add_row(source["type"], source["fileName"], detail)
            self.console.print(source_table)

        if outcome["graph"]:
            metadata = outcome["graph"]["metadata"]
            self.console.print(
                f"[blue]Query graph: {metadata['entityCount']} entities, "
                f"{metadata['relationshipCount']} relationships[/blue]"
            )

    def display_graph(self, graph, export_format: Optional[str] = None):
        if export_format:
            self.console.print(graph_utils.export_graph(graph, export_format), markup=False)
            return

        analysis = self.graph_processor.analyze(graph)
        stats = analysis["stats"]

        stats_table = Table(title=f"Knowledge Graph ({graph.scope})")
        stats_table.add_column("Metric", style="cyan")
        stats_table.add_column("Value", style="white")
        stats_table.add_row("Nodes", str(stats["node_count"]))
        stats_table.add_row("Edges", str(stats["edge_count"]))
        stats_table.add_row("Average degree", f"{stats['avg_degree']:.2f}")
        stats_table.add_row("Max degree", str(stats["max_degree"]))
        stats_table.add_row("Isolated nodes", str(stats["isolated_nodes"]))
        stats_table.add_row("Connected components", str(stats["connected_components"]))
        stats_table.add_row("Density", f"{stats['density']:.4f}")
        self.console.print(stats_table)

        hubs = graph_utils.find_hubs(graph, limit=5)
        if hubs:
            hub_table = Table(title="Most Connected Entities")
            hub_table.add_column("Entity", style="cyan")
            hub_table.add_column("Type", style="white")
            hub_table.add_column("Degree", style="green")
            for node, degree in hubs:
                hub_table.add_row(node.label, node.type, str(degree))
            self.console.print(hub_table)

        for warning in analysis["validation"]["warnings"]:
            self.console.print(f"[yellow]{warning}[/yellow]")
        for error in analysis["validation"]["errors"]:
            self.console.print(f"[red]{error}[/red]")

    async def show_stats(self, user_id: str):
        stats = await self.graph_processor.get_statistics(user_id)

        summary = Table(title=f"Graph Statistics for {user_id}")
        summary.add_column("Metric", style="cyan")
        summary.add_column("Value", style="white")
        summary.add_row("Total Entities", str(stats["total_entities"]))
        summary.add_row("Total Relationships", str(stats["total_relationships"]))
        self.console.print(summary)

        for title, counts in (("Entity Types", stats["entity_types"]), ("Relationship Types", stats["relationship_types"])):
            table = Table(title=title)
            table.add_column("Type", style="cyan")
            table.add_column("Count", style="white")
            for type_name, count in sorted(counts.items(), key=lambda item: item[1], reverse=True):
                table.add_row(str(type_name), str(count))
            self.console.print(table)

        hubs = await self.graph_processor.get_hubs(user_id, limit=10)
        if hubs:
            hub_table = Table(title="Graph Hubs")
            hub_table.add_column("Entity", style="cyan")
            hub_table.add_column("In", style="white")
            hub_table.add_column("Out", style="white")
            hub_table.add_column("Total", style="green")
            for hub in hubs:
                hub_table.add_row(
                    hub["node"]["label"],
                    str(hub["incoming_count"]),
                    str(hub["outgoing_count"]),
                    str(hub["connection_count"])
                )
            self.console.print(hub_table)

    async def interactive_mode(self, user_id: str, document_ids: Optional[List[str]] = None):
        """Run the system in interactive mode."""
        self.console.print(Panel(
            "[bold blue]DocGraph Reasoning System[/bold blue]\n"
            "Ask questions about your documents.\n"
            "Type 'quit' to exit, 'stats' for graph statistics, 'help' for commands.",
            border_style="blue"
        ))

        history: List[Dict[str, str]] = []
        while True:
            try:
                query = click.prompt("\nQuery")

                if query.lower() in ['quit', 'exit', 'q']:
                    break
                elif query.lower() == 'stats':
                    await self.show_stats(user_id)
                    continue
                elif query.lower() == 'help':
                    self.console.print("""
                    [bold]Available Commands:[/bold]
                    • Ask any question about your documents
                    • 'stats' - Show graph statistics
                    • 'help' - Show this help message
                    • 'quit' - Exit the system
                    """)
                    continue
                elif not query.strip():
                    continue

                context = QueryContext(
                    user_id=user_id,
                    query=query,
                    document_ids=document_ids,
                    conversation_history=list(history)
                )
                outcome = await self.ask(context, show_events=self.debug_mode)
                self.display_answer(outcome)

                if not outcome["error"]:
                    history.append({"role": "user", "content": query})
                    history.append({"role": "assistant", "content": outcome["answer"]})

            except (KeyboardInterrupt, click.Abort):
                self.console.print("\n[yellow]Exiting...[/yellow]")
                break
            except Exception as e:
                self.console.print(f"[red]Error: {e}[/red]")


def _run(config: dict, action):
    """Build the system, run an async action against it and close it."""
    async def runner():
        system = DocGraphSystem(config)
        try:
            return await action(system)
        finally:
            await system.close()

    return asyncio.run(runner())


def _load_entities(file_path: str) -> List[Entity]:
    with open(file_path, 'r') as f:
        records = json.load(f)

    entities = []
    for record in records:
        entities.append(Entity(
            id=str(record["id"]),
            name=str(record["name"]),
            type=str(record.get("type") or "CONCEPT"),
            description=str(record.get("description") or ""),
            properties=EntityProperties.from_dict(record.get("properties")),
            embedding=record.get("embedding"),
            aliases=list(record.get("aliases") or []),
        ))
    return entities


@click.group()
@click.option('--config', '-c', default='config/config.yaml', help='Configuration file path')
@click.option('--debug', '-d', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, config, debug):
    """DocGraph Reasoning System CLI."""
    load_env_file()

    ctx.ensure_object(dict)
    ctx.obj['config'] = load_config(config)

    setup_logging(ctx.obj['config'])

    if debug:
        ctx.obj['config'].setdefault('debug', {})['enabled'] = True


@cli.command()
@click.argument('query')
@click.option('--user', '-u', required=True, help='User id owning the documents')
@click.option('--document', '-D', 'document_ids', multiple=True, help='Restrict to document id (repeatable)')
@click.option('--max-results', type=int, help='Maximum vector search results')
@click.option('--show-reasoning', is_flag=True, help='Print reasoning steps as they happen')
@click.pass_context
def ask(ctx, query, user, document_ids, max_results, show_reasoning):
    """Ask a question about your documents."""
    context = QueryContext(
        user_id=user,
        query=query,
        document_ids=list(document_ids) or None,
        constraints=QueryConstraints(max_results=max_results)
    )

    async def action(system):
        outcome = await system.ask(context, show_events=show_reasoning or system.debug_mode)
        system.display_answer(outcome)

    _run(ctx.obj['config'], action)


@cli.group()
def graph():
    """Build and inspect knowledge graph views."""


@graph.command('central')
@click.option('--user', '-u', required=True, help='User id')
@click.option('--export', 'export_format', type=click.Choice(['json', 'csv', 'cypher']), help='Export instead of summarising')
@click.pass_context
def graph_central(ctx, user, export_format):
    """Whole-corpus knowledge graph."""
    async def action(system):
        kg = await system.graph_processor.build_central_graph(user)
        system.display_graph(kg, export_format)

    _run(ctx.obj['config'], action)


@graph.command('document')
@click.argument('document_id')
@click.option('--user', '-u', required=True, help='User id')
@click.option('--export', 'export_format', type=click.Choice(['json', 'csv', 'cypher']), help='Export instead of summarising')
@click.pass_context
def graph_document(ctx, document_id, user, export_format):
    """Knowledge graph of a single document."""
    async def action(system):
        kg = await system.graph_processor.build_document_graph(user, document_id)
        system.display_graph(kg, export_format)

    _run(ctx.obj['config'], action)


@graph.command('query')
@click.argument('query')
@click.option('--user', '-u', required=True, help='User id')
@click.option('--entity', '-e', 'entity_ids', multiple=True, help='Seed entity id (repeatable)')
@click.option('--export', 'export_format', type=click.Choice(['json', 'csv', 'cypher']), help='Export instead of summarising')
@click.pass_context
def graph_query(ctx, query, user, entity_ids, export_format):
    """Knowledge graph relevant to a question."""
    async def action(system):
        kg = await system.graph_processor.build_query_graph(user, query, list(entity_ids))
        system.display_graph(kg, export_format)

    _run(ctx.obj['config'], action)


@cli.command()
@click.option('--user', '-u', required=True, help='User id')
@click.pass_context
def stats(ctx, user):
    """Show knowledge graph statistics."""
    async def action(system):
        await system.show_stats(user)

    _run(ctx.obj['config'], action)


@cli.command()
@click.argument('entities_file', type=click.Path(exists=True))
@click.option('--user', '-u', required=True, help='User id')
@click.pass_context
def resolve(ctx, entities_file, user):
    """Resolve extracted entities (JSON list) against the existing graph."""
    entities = _load_entities(entities_file)

    async def action(system):
        resolved = await system.graph_processor.resolve_entities(user, entities)
        table = Table(title="Entity Resolution")
        table.add_column("Input", style="cyan")
        table.add_column("Type", style="white")
        table.add_column("Resolved To", style="green")
        for original, result in zip(entities, resolved):
            table.add_row(original.name, original.type, result.canonical_id or "new")
        system.console.print(table)

    _run(ctx.obj['config'], action)


@cli.command()
@click.option('--user', '-u', required=True, help='User id')
@click.pass_context
def dedup(ctx, user):
    """Remove duplicate relationships from the user's graph."""
    async def action(system):
        removed = await system.graph_processor.deduplicate_relationships(user)
        system.console.print(f"[green]Removed {removed} duplicate relationships[/green]")

    _run(ctx.obj['config'], action)


@cli.command()
@click.option('--user', '-u', required=True, help='User id')
@click.option('--document', '-D', 'document_ids', multiple=True, help='Restrict to document id (repeatable)')
@click.pass_context
def interactive(ctx, user, document_ids):
    """Start interactive query mode."""
    async def action(system):
        await system.interactive_mode(user, list(document_ids) or None)

    _run(ctx.obj['config'], action)


if __name__ == "__main__":
    cli()
