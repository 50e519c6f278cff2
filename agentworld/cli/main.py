"""agentworld CLI — inspect and reconcile a running world.

Reads go straight to the store the world is configured with
(AGENTWORLD_* environment variables). The only writes are operator
repairs: rebuilding the leaderboard and resolving audit entries.
"""

from __future__ import annotations

from datetime import datetime

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agentworld.cli.context import with_world
from agentworld.exceptions import WorldError
from agentworld.types import ProposalStatus, format_amount
from agentworld.world import World

console = Console()

app = typer.Typer(
    name="agentworld",
    help="agentworld -- an economy of autonomous agents.",
    no_args_is_help=True,
)


def _ts(value: float | None) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M")


def _run(fn):
    try:
        return with_world(fn)
    except WorldError as e:
        console.print(f"[red]{e.kind}:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def status():
    """Show world-wide status."""
    async def _status(world: World):
        return await world.status()

    s = _run(_status)
    from agentworld import __version__
    console.print(Panel(
        f"[bold]agentworld v{__version__}[/bold]\n\n"
        f"Agents:        {s.agents}\n"
        f"Proposals:     {s.proposals}\n"
        f"Lottery round: {s.lottery_round} "
        f"({s.lottery_tickets} tickets, pool {format_amount(s.lottery_pool)})\n"
        f"Unpaid rounds: {'[red]' if s.unpaid_rounds else ''}{s.unpaid_rounds}"
        f"{'[/red]' if s.unpaid_rounds else ''}\n"
        f"Needs review:  {s.unresolved_failures}",
        title="World Status",
        border_style="cyan",
    ))


@app.command()
def leaderboard(limit: int = typer.Option(20, "--limit", "-n", help="Max rows")):
    """Agents ranked by cumulative reward."""
    async def _board(world: World):
        return await world.registry.leaderboard(limit)

    entries = _run(_board)
    table = Table(title="Leaderboard")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Address", style="cyan")
    table.add_column("Rewards", justify="right", style="yellow")
    for e in entries:
        table.add_row(str(e.rank), e.address, format_amount(e.score))
    console.print(table)


@app.command()
def agent(address: str = typer.Argument(help="Agent address")):
    """Show one agent and its recent rewards."""
    async def _agent(world: World):
        return await world.registry.get(address), await world.ledger.history(address, limit=10)

    a, history = _run(_agent)
    console.print(Panel(
        f"[bold]{a.name}[/bold]  {a.address}\n"
        f"{a.description}\n\n"
        f"Registered:  {_ts(a.registered_at)}\n"
        f"Last action: {_ts(a.last_action_at)}\n"
        f"Actions:     {a.total_actions}\n"
        f"Rewards:     {format_amount(a.rewards_earned)}",
        title="Agent",
        border_style="cyan",
    ))
    if history:
        table = Table(title="Recent rewards")
        table.add_column("When")
        table.add_column("Action", style="blue")
        table.add_column("Amount", justify="right", style="yellow")
        table.add_column("Tx", style="dim")
        for r in history:
            table.add_row(_ts(r.timestamp), r.action, format_amount(r.amount), r.tx_hash[:12])
        console.print(table)


@app.command()
def proposals(
    status_filter: str = typer.Option("", "--status", "-s", help="active, passed, rejected, executed"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """List governance proposals, newest first."""
    wanted = ProposalStatus(status_filter) if status_filter else None

    async def _list(world: World):
        return await world.governance.list_proposals(status=wanted, limit=limit)

    items = _run(_list)
    table = Table(title="Proposals")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Status", style="green")
    table.add_column("For", justify="right")
    table.add_column("Against", justify="right")
    table.add_column("Voters", justify="right")
    table.add_column("Ends")
    for p in items:
        table.add_row(
            p.id, p.title, p.status.value, str(p.votes_for), str(p.votes_against),
            str(p.voter_count), _ts(p.ends_at),
        )
    console.print(table)


@app.command()
def proposal(proposal_id: str = typer.Argument(help="Proposal ID")):
    """Show a proposal and its ballots."""
    async def _show(world: World):
        return (
            await world.governance.get_proposal(proposal_id),
            await world.governance.get_votes(proposal_id),
        )

    p, votes = _run(_show)
    console.print(Panel(
        f"[bold]{p.title}[/bold]\n{p.description}\n\n"
        f"Proposer: {p.proposer}\n"
        f"Status:   {p.status.value}\n"
        f"Tally:    {p.votes_for} for / {p.votes_against} against ({p.voter_count} voters)\n"
        f"Ends:     {_ts(p.ends_at)}",
        title=p.id,
        border_style="cyan",
    ))
    if votes:
        table = Table(title="Votes")
        table.add_column("Voter", style="cyan")
        table.add_column("Support")
        table.add_column("Weight", justify="right")
        for v in votes:
            table.add_row(v.voter, "[green]for[/green]" if v.support else "[red]against[/red]", str(v.weight))
        console.print(table)


@app.command()
def lottery(round_id: int = typer.Option(0, "--round", "-r", help="Round (default: current)")):
    """Show a lottery round and its entrants."""
    async def _show(world: World):
        r = await (world.lottery.get_round(round_id) if round_id else world.lottery.current_round())
        return r, await world.lottery.entrants(r.id)

    r, entrants = _run(_show)
    winner = f"\nWinner:   {r.winner} ({format_amount(r.winning_amount)})" if r.winner else ""
    payout = f"\nPayout:   {r.payout_tx_hash or '[red]pending[/red]'}" if r.winner else ""
    console.print(Panel(
        f"Status:   {r.status.value}\n"
        f"Tickets:  {r.tickets_sold} at {format_amount(r.ticket_price)}\n"
        f"Pool:     {format_amount(r.prize_pool)} (carried over {format_amount(r.carried_over)})\n"
        f"Ends:     {_ts(r.ends_at)}{winner}{payout}",
        title=f"Lottery round {r.id}",
        border_style="cyan",
    ))
    if entrants:
        table = Table(title="Entrants (first purchase first)")
        table.add_column("Agent", style="cyan")
        table.add_column("Tickets", justify="right")
        for addr, count in entrants:
            table.add_row(addr, str(count))
        console.print(table)


@app.command()
def winners(limit: int = typer.Option(10, "--limit", "-n")):
    """Recent lottery winners."""
    async def _winners(world: World):
        return await world.lottery.winners(limit)

    table = Table(title="Lottery winners")
    table.add_column("Round", justify="right")
    table.add_column("Winner", style="cyan")
    table.add_column("Amount", justify="right", style="yellow")
    table.add_column("Bonus", justify="right")
    table.add_column("Payout", style="dim")
    for w in _run(_winners):
        table.add_row(
            str(w.round_id), w.winner, format_amount(w.amount), str(w.bonus_tokens),
            w.payout_tx_hash or "[red]pending[/red]",
        )
    console.print(table)


@app.command()
def breeding(limit: int = typer.Option(10, "--limit", "-n")):
    """Recent breedings."""
    async def _feed(world: World):
        return await world.breeding.recent_breedings(limit)

    table = Table(title="Breeding feed")
    table.add_column("When")
    table.add_column("Parents", style="cyan")
    table.add_column("Child", style="green")
    table.add_column("Mutual", justify="right")
    for b in _run(_feed):
        table.add_row(
            _ts(b.timestamp), f"{b.parent1} + {b.parent2}", b.child_id, f"{b.mutual_appreciation:.1f}%",
        )
    console.print(table)


@app.command()
def events(limit: int = typer.Option(20, "--limit", "-n")):
    """The shared world event feed."""
    async def _events(world: World):
        return await world.bus.recent(limit)

    for e in _run(_events):
        console.print(
            f"[dim]{e.timestamp:%H:%M:%S}[/dim] [cyan]{e.topic:<24}[/cyan] {e.description}"
        )


@app.command()
def audit(
    unresolved: bool = typer.Option(False, "--unresolved", "-u", help="Only entries needing review"),
    limit: int = typer.Option(50, "--limit", "-n"),
):
    """Show the audit trail."""
    async def _audit(world: World):
        if world.audit is None:
            return []
        if unresolved:
            return await world.audit.unresolved(limit)
        return await world.audit.query(limit=limit)

    table = Table(title="Audit trail")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("When")
    table.add_column("Kind", style="blue")
    table.add_column("Operation")
    table.add_column("Agent", style="cyan")
    table.add_column("Detail")
    for e in _run(_audit):
        kind = f"[red]{e.kind}[/red]" if e.needs_reconciliation and not e.resolved else e.kind
        table.add_row(e.id, f"{e.timestamp:%Y-%m-%d %H:%M}", kind, e.operation, e.agent, e.detail[:60])
    console.print(table)


@app.command()
def resolve(
    entry_id: str = typer.Argument(help="Audit entry ID"),
    note: str = typer.Argument(help="How it was reconciled"),
):
    """Mark an audit entry as reconciled."""
    async def _resolve(world: World):
        return world.audit is not None and await world.audit.mark_resolved(entry_id, note)

    if _run(_resolve):
        console.print(f"[green]Resolved {entry_id}[/green]")
    else:
        console.print(f"[yellow]No open entry {entry_id}[/yellow]")
        raise typer.Exit(1)


@app.command("rebuild-leaderboard")
def rebuild_leaderboard():
    """Recompute every leaderboard score from reward history."""
    async def _rebuild(world: World):
        return await world.ledger.rebuild_leaderboard()

    count = _run(_rebuild)
    console.print(f"[green]Rebuilt leaderboard for {count} agents[/green]")


if __name__ == "__main__":
    app()
