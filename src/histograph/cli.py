"""Command-line interface for histograph repositories."""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .addressing import ALGORITHMS
from .blobstore import BACKENDS
from .commands import (
    AddEdge,
    AddVertex,
    RemoveEdge,
    RemoveVertex,
    SetEdgeAttributes,
    SetVertexAttributes,
    parse_commands,
)
from .config import RepositoryConfig, configure_logging, find_repo_dir
from .errors import HistographError
from .models import Commit, Digest
from .repository import Repository

console = Console()


def _fail(ctx: click.Context, error: Exception) -> None:
    console.print(f"[red]Error:[/red] {escape(str(error))}", highlight=False)
    ctx.exit(1)


@contextmanager
def _open_repo(ctx: click.Context):
    """Open the repository for one command; errors end the command with exit 1."""
    repo = None
    try:
        repo = Repository.open(ctx.obj["repo_dir"])
        yield repo
    except (HistographError, ValueError) as e:
        _fail(ctx, e)
    finally:
        if repo is not None:
            repo.close()


def _parse_assignments(pairs: tuple[str, ...]) -> dict[str, str]:
    attributes = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'")
        attributes[key] = value
    return attributes


def _format_time(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, timezone.utc).strftime("%Y-%m-%d %H:%M:%S %Z")


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2))


@click.group()
@click.option(
    "--repo",
    "repo_path",
    envvar="HISTOGRAPH_PATH",
    type=click.Path(path_type=Path),
    help="Path to the repository directory (default: nearest .histograph)",
)
@click.option("--log-level", default=None, help="Logging level (default: HISTOGRAPH_LOG_LEVEL or WARNING)")
@click.pass_context
def cli(ctx, repo_path, log_level):
    """histograph - version control for directed graphs."""
    ctx.ensure_object(dict)
    ctx.obj["repo_dir"] = repo_path or find_repo_dir()
    configure_logging(ctx.obj["repo_dir"], log_level)


@cli.command()
@click.option("--backend", type=click.Choice(BACKENDS), default="sqlite", show_default=True)
@click.option("--hash", "hash_algorithm", type=click.Choice(ALGORITHMS), default="sha256", show_default=True)
@click.option("--default-branch", default="master", show_default=True)
@click.option("--author", default="", help="Default commit author")
@click.pass_context
def init(ctx, backend, hash_algorithm, default_branch, author):
    """Initialize a repository."""
    repo_dir = ctx.obj["repo_dir"]
    try:
        config = RepositoryConfig(
            backend=backend,
            hash_algorithm=hash_algorithm,
            default_branch=default_branch,
            author=author,
        )
        Repository.init(repo_dir, config).close()
    except (HistographError, ValueError) as e:
        _fail(ctx, e)
    console.print(f"[green]✓[/green] Initialized histograph repository at {escape(str(repo_dir))}")


# --- Working graph ---


@cli.command()
@click.argument("ref", required=False)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def show(ctx, ref, as_json):
    """Show the working graph, or the graph of a commit."""
    with _open_repo(ctx) as repo:
        view = repo.show(ref)
        if as_json:
            _echo_json({"vertices": view.vertices, "edges": [list(e) for e in view.edges]})
            return

        graph = repo.graph if ref is None else repo.graph_at(ref)
        header = "Working graph" if ref is None else f"Graph at {ref}"
        console.print(f"[bold]{escape(header)}[/bold]")
        console.print(f"Vertices: {len(view.vertices)}, Edges: {len(view.edges)}")

        if view.vertices:
            table = Table(title="Vertices")
            table.add_column("Id", style="cyan")
            table.add_column("Out")
            table.add_column("In")
            table.add_column("Attributes")
            for vertex_id in view.vertices:
                attrs = graph.vertex_attributes(vertex_id)
                table.add_row(
                    str(vertex_id),
                    str(graph.degree_out(vertex_id)),
                    str(graph.degree_in(vertex_id)),
                    escape(", ".join(f"{k}={v}" for k, v in sorted(attrs.items()))),
                )
            console.print(table)

        for tail, head in view.edges:
            console.print(f"  {tail} → {head}")


@cli.command("add-vertex")
@click.argument("vertex_id", type=int)
@click.pass_context
def add_vertex(ctx, vertex_id):
    """Add a vertex to the working graph."""
    with _open_repo(ctx) as repo:
        digest = repo.apply(AddVertex(vertex_id=vertex_id))
        console.print(f"[green]+[/green] vertex {vertex_id} [dim]({digest.short()})[/dim]")


@cli.command("remove-vertex")
@click.argument("vertex_id", type=int)
@click.pass_context
def remove_vertex(ctx, vertex_id):
    """Remove a vertex and its incident edges."""
    with _open_repo(ctx) as repo:
        digest = repo.apply(RemoveVertex(vertex_id=vertex_id))
        console.print(f"[red]-[/red] vertex {vertex_id} [dim]({digest.short()})[/dim]")


@cli.command("add-edge")
@click.argument("from_vertex", type=int)
@click.argument("to_vertex", type=int)
@click.pass_context
def add_edge(ctx, from_vertex, to_vertex):
    """Add a directed edge between two existing vertices."""
    with _open_repo(ctx) as repo:
        digest = repo.apply(AddEdge(from_vertex=from_vertex, to_vertex=to_vertex))
        console.print(f"[green]+[/green] edge {from_vertex} → {to_vertex} [dim]({digest.short()})[/dim]")


@cli.command("remove-edge")
@click.argument("from_vertex", type=int)
@click.argument("to_vertex", type=int)
@click.pass_context
def remove_edge(ctx, from_vertex, to_vertex):
    """Remove a directed edge."""
    with _open_repo(ctx) as repo:
        digest = repo.apply(RemoveEdge(from_vertex=from_vertex, to_vertex=to_vertex))
        console.print(f"[red]-[/red] edge {from_vertex} → {to_vertex} [dim]({digest.short()})[/dim]")


@cli.command("set-attr")
@click.argument("vertex_id", type=int)
@click.argument("assignments", nargs=-1, required=True)
@click.option("--to", "to_vertex", type=int, default=None, help="Set attributes of the edge VERTEX_ID → TO")
@click.option("--replace", is_flag=True, help="Replace all attributes instead of merging")
@click.pass_context
def set_attr(ctx, vertex_id, assignments, to_vertex, replace):
    """Set KEY=VALUE attributes on a vertex (or an edge with --to).

    Examples:
        histograph set-attr 1 name=alice role=admin
        histograph set-attr 1 --to 2 weight=3
    """
    attributes = _parse_assignments(assignments)
    with _open_repo(ctx) as repo:
        if to_vertex is None:
            current = {} if replace else repo.graph.vertex_attributes(vertex_id)
            command = SetVertexAttributes(vertex_id=vertex_id, attributes={**current, **attributes})
            target = f"vertex {vertex_id}"
        else:
            current = {} if replace else repo.graph.edge_attributes(vertex_id, to_vertex)
            command = SetEdgeAttributes(
                from_vertex=vertex_id, to_vertex=to_vertex, attributes={**current, **attributes}
            )
            target = f"edge {vertex_id} → {to_vertex}"
        digest = repo.apply(command)
        console.print(f"[blue]~[/blue] {target} [dim]({digest.short()})[/dim]")


@cli.command()
@click.argument("source", type=click.File("r"))
@click.pass_context
def apply(ctx, source):
    """Apply a file of JSON-lines commands atomically ('-' for stdin).

    Example line: {"op": "add_vertex", "vertex_id": 1}
    """
    with _open_repo(ctx) as repo:
        commands = parse_commands(source)
        digest = repo.apply(commands)
        console.print(f"[green]✓[/green] Applied {len(commands)} commands [dim]({digest.short()})[/dim]")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx, as_json):
    """Show the current branch and uncommitted changes."""
    with _open_repo(ctx) as repo:
        st = repo.status()
        if as_json:
            _echo_json(st)
            return

        if st["detached"]:
            console.print(f"HEAD detached at [yellow]{st['head'][:7]}[/yellow]")
        else:
            console.print(f"On branch: [cyan]{escape(st['branch'])}[/cyan]")
            if st["head"] is None:
                console.print("[dim]No commits yet[/dim]")
        console.print(
            f"Graph state: [bold]{st['vertex_count']}[/bold] vertices, "
            f"[bold]{st['edge_count']}[/bold] edges"
        )
        console.print()

        if not st["dirty"]:
            console.print("[green]Nothing to commit, working graph clean[/green]")
            return

        changes = st["changes"]
        for vertex_id in changes["vertices"]["missing"]:
            console.print(f"  [green]+[/green] vertex {vertex_id}")
        for vertex_id in changes["vertices"]["extra"]:
            console.print(f"  [red]-[/red] vertex {vertex_id}")
        for vertex_id in changes["vertices"]["changed"]:
            console.print(f"  [blue]~[/blue] vertex {vertex_id}")
        for tail, head in changes["edges"]["missing"]:
            console.print(f"  [green]+[/green] edge {tail} → {head}")
        for tail, head in changes["edges"]["extra"]:
            console.print(f"  [red]-[/red] edge {tail} → {head}")
        for tail, head in changes["edges"]["changed"]:
            console.print(f"  [blue]~[/blue] edge {tail} → {head}")


# --- History ---


@cli.command()
@click.option("-m", "--message", required=True, help="Commit message")
@click.option("--author", default=None, help="Override the commit author")
@click.option("--allow-empty", is_flag=True, help="Commit even if nothing changed")
@click.pass_context
def commit(ctx, message, author, allow_empty):
    """Commit the working graph."""
    with _open_repo(ctx) as repo:
        commit_id = repo.commit(message, author=author, allow_empty=allow_empty)
        branch = repo.history.current_branch() or "detached HEAD"
        console.print(f"[green]✓[/green] {escape(f'[{branch} {commit_id.short()}]')} {escape(message)}")


def _print_commit(commit_id: Digest, commit: Commit, oneline: bool) -> None:
    first_line = commit.metadata.message.split("\n")[0]
    if oneline:
        console.print(f"[yellow]{commit_id.short()}[/yellow] {escape(first_line)}")
        return
    console.print(f"[yellow]commit {commit_id.hex()}[/yellow]")
    if commit.is_merge:
        console.print("Merge:  " + " ".join(p.short() for p in commit.parent_ids))
    console.print(f"Author: {escape(commit.metadata.author or '-')}")
    console.print(f"Date:   {_format_time(commit.metadata.timestamp)}")
    console.print()
    for line in commit.metadata.message.split("\n"):
        console.print(f"    {escape(line)}")
    console.print()
    console.print(f"    [dim]Graph: {commit.graph_digest.short()}[/dim]")
    console.print()


@cli.command()
@click.argument("ref", default="HEAD")
@click.option("-n", "--max-count", default=None, type=int, help="Number of commits to show")
@click.option("--oneline", is_flag=True, help="Show one line per commit")
@click.pass_context
def log(ctx, ref, max_count, oneline):
    """Show commits reachable from REF (default: HEAD)."""
    with _open_repo(ctx) as repo:
        for commit_id, commit in repo.log(ref, limit=max_count):
            _print_commit(commit_id, commit, oneline)


@cli.command()
@click.argument("name", required=False)
@click.option("-d", "--delete", is_flag=True, help="Delete the branch")
@click.option("--at", default=None, help="Commit to create the branch at (default: HEAD)")
@click.option("-f", "--force", is_flag=True, help="Move an existing branch, even backwards")
@click.pass_context
def branch(ctx, name, delete, at, force):
    """List, create, move or delete branches."""
    with _open_repo(ctx) as repo:
        if name is None:
            current = repo.history.current_branch()
            branches = repo.branches()
            if not branches:
                console.print("[dim]No branches yet[/dim]")
            for branch_name, target in branches.items():
                marker = "*" if branch_name == current else " "
                style = "green" if branch_name == current else "cyan"
                console.print(f"{marker} [{style}]{escape(branch_name)}[/{style}] {target.short()}")
            return

        if delete:
            target = repo.branch_delete(name)
            console.print(f"[green]✓[/green] Deleted branch {escape(name)} (was {target.short()})")
        elif force and name in repo.branches():
            target = repo.branch_move(name, at or "HEAD", force=True)
            console.print(f"[green]✓[/green] Moved branch {escape(name)} to {target.short()}")
        else:
            target = repo.branch_create(name, at)
            console.print(f"[green]✓[/green] Created branch {escape(name)} at {target.short()}")


@cli.command()
@click.argument("name", required=False)
@click.option("--at", default=None, help="Commit to tag (default: HEAD)")
@click.pass_context
def tag(ctx, name, at):
    """List or create tags."""
    with _open_repo(ctx) as repo:
        if name is None:
            for tag_name, target in repo.tags().items():
                console.print(f"[magenta]{escape(tag_name)}[/magenta] {target.short()}")
            return
        target = repo.tag_create(name, at)
        console.print(f"[green]✓[/green] Tagged {target.short()} as {escape(name)}")


@cli.command()
@click.argument("ref")
@click.option("-f", "--force", is_flag=True, help="Discard uncommitted changes")
@click.pass_context
def checkout(ctx, ref, force):
    """Switch HEAD to a branch, tag or commit."""
    with _open_repo(ctx) as repo:
        repo.checkout(ref, force=force)
        if repo.refs.head.is_detached:
            console.print(f"[yellow]![/yellow] HEAD is now detached at {repo.history.head_commit().short()}")
        else:
            console.print(f"[green]✓[/green] Switched to branch [cyan]{escape(ref)}[/cyan]")


@cli.command()
@click.argument("onto")
@click.option("--branch", "branch_name", default=None, help="Branch to rebase (default: current)")
@click.pass_context
def rebase(ctx, onto, branch_name):
    """Replay the commits of a branch on top of ONTO."""
    with _open_repo(ctx) as repo:
        new_ids = repo.rebase(onto, branch=branch_name)
        if new_ids:
            console.print(f"[green]✓[/green] Replayed {len(new_ids)} commits onto {escape(onto)}")
        else:
            console.print(f"[green]✓[/green] Fast-forwarded to {escape(onto)}")


@cli.command()
@click.argument("ref")
@click.option("--hard", is_flag=True, help="Also replace the working graph")
@click.pass_context
def reset(ctx, ref, hard):
    """Point the current branch at REF."""
    with _open_repo(ctx) as repo:
        repo.reset(ref, hard=hard)
        mode = "hard" if hard else "soft"
        console.print(f"[green]✓[/green] Reset ({mode}) to {repo.history.head_commit().short()}")


@cli.command()
@click.argument("a", default="HEAD")
@click.argument("b", required=False)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--patch", is_flag=True, help="Print the JSON-lines commands turning A into B")
@click.pass_context
def diff(ctx, a, b, as_json, patch):
    """Show structural differences from A to B (default: to the working graph)."""
    with _open_repo(ctx) as repo:
        result = repo.diff(a, b)
        if as_json:
            _echo_json(result.to_summary())
            return
        if patch:
            for command in result.as_commands():
                click.echo(command.model_dump_json())
            return

        if result.is_empty():
            console.print("[dim]No differences[/dim]")
            return
        for vertex_id in result.missing_vertices:
            console.print(f"[green]+ vertex {vertex_id}[/green]")
        for vertex_id in result.extra_vertices:
            console.print(f"[red]- vertex {vertex_id}[/red]")
        for vertex_id, (old, new) in result.changed_vertices.items():
            console.print(
                f"[yellow]~ vertex {vertex_id}[/yellow]: {escape(str(old))} → {escape(str(new))}",
                highlight=False,
            )
        for tail, head in result.missing_edges:
            console.print(f"[green]+ edge {tail} → {head}[/green]")
        for tail, head in result.extra_edges:
            console.print(f"[red]- edge {tail} → {head}[/red]")
        for (tail, head), (old, new) in result.changed_edges.items():
            console.print(
                f"[yellow]~ edge {tail} → {head}[/yellow]: {escape(str(old))} → {escape(str(new))}",
                highlight=False,
            )


@cli.command()
@click.option("-n", "--max-count", default=20, help="Number of entries to show")
@click.pass_context
def reflog(ctx, max_count):
    """Show recent ref changes, newest first."""
    with _open_repo(ctx) as repo:
        entries = list(reversed(repo.reflog()))[:max_count]
        if not entries:
            console.print("[dim]No ref changes recorded[/dim]")
            return
        table = Table()
        table.add_column("When", style="dim")
        table.add_column("Ref", style="cyan")
        table.add_column("Action")
        table.add_column("Old")
        table.add_column("New")
        table.add_column("Message")
        for entry in entries:
            table.add_row(
                entry.ts.strftime("%Y-%m-%d %H:%M:%S"),
                escape(entry.ref),
                entry.action,
                entry.old.short() if entry.old else "-",
                entry.new.short() if entry.new else "-",
                escape(entry.message),
            )
        console.print(table)


@cli.command()
@click.pass_context
def fsck(ctx):
    """Verify object hashes and referential integrity."""
    with _open_repo(ctx) as repo:
        problems = repo.verify()
        if not problems:
            console.print("[green]✓[/green] Repository is consistent")
            return
        for problem in problems:
            console.print(f"[red]✗[/red] {escape(problem)}", highlight=False)
        ctx.exit(1)


@cli.command("cat-object")
@click.argument("kind", type=click.Choice(["vertex", "edge", "vertexvec", "graph", "commit"]))
@click.argument("digest")
@click.pass_context
def cat_object(ctx, kind, digest):
    """Print a stored object as JSON."""
    with _open_repo(ctx) as repo:
        obj = repo.cat_object(kind, digest)
        _echo_json(obj.model_dump(mode="json"))


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
