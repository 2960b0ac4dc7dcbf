"""
Cluster Controller Walkthrough
==============================

This example drives a replication cluster end to end:
1. Configuration from the environment and a cluster file
2. Primary provisioning
3. Bootstrapping every configured replica
4. Health polling
5. Optional manual failover

Prerequisites
-------------
A reachable primary and a host where ``pg_basebackup`` can write each
replica's data directory. A minimal ``cluster.json``::

    {
      "name": "orders",
      "primary": {"node_id": "pg-0", "connection": {"host": "10.0.0.10", "password": "postgres"}},
      "replicas": [
        {"node_id": "pg-1", "connection": {"host": "10.0.0.11", "password": "postgres"},
         "data_directory": "/srv/pg-1/data"}
      ]
    }

Environment
-----------
    PGCONTROL_CLUSTER_CONFIG=cluster.json
    PGCONTROL_STORE__BACKEND=redis
    PGCONTROL_STORE__REDIS_URL=redis://localhost:6379/0
    PGCONTROL_LOG_LEVEL=DEBUG

Inspect persisted topology
--------------------------
    redis-cli GET pgcontrol:orders:topology | jq .

Running This Example
--------------------
    uv run python playground/cluster_demo.py
    uv run python playground/cluster_demo.py --promote pg-1
"""

from __future__ import annotations

import argparse
import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pgcontrol.logger import configure_logging
from pgcontrol.replication import ClusterController, ControllerSettings, HealthSnapshot, Outcome

console = Console()


def show_outcome(outcome: Outcome) -> None:
    style = "green" if outcome.ok else "red"
    console.print(f"[{style}]{outcome.operation}: {'ok' if outcome.ok else 'failed'}[/{style}]")
    for error in outcome.errors:
        console.print(f"  [red]{error.code}[/red] ({error.kind}) node={error.node_id}: {error.message}")


def show_topology(controller: ClusterController) -> None:
    topology = controller.topology
    table = Table(title=f"{topology.cluster_name} (generation {topology.generation})")
    table.add_column("Node")
    table.add_column("Role")
    table.add_column("State")
    table.add_column("Upstream")
    table.add_column("Slot")
    table.add_column("Last error")

    for node in topology.nodes.values():
        table.add_row(
            node.node_id,
            node.role,
            node.state,
            node.upstream_id or "-",
            node.slot_name or "-",
            node.last_error or "",
        )
    console.print(table)


def show_snapshot(snapshot: HealthSnapshot) -> None:
    table = Table(title=f"Health: {snapshot.status}")
    table.add_column("Node")
    table.add_column("Status")
    table.add_column("Recovery")
    table.add_column("Lag (bytes)", justify="right")
    table.add_column("Message")

    for report in snapshot.nodes.values():
        table.add_row(
            report.node_id,
            report.status,
            str(report.recovery_mode),
            str(report.lag_bytes) if report.lag_bytes is not None else "-",
            report.message or "",
        )
    console.print(table)

    if snapshot.orphaned_slots:
        names = ", ".join(sorted(slot.name for slot in snapshot.orphaned_slots))
        console.print(f"[yellow]Orphaned slots retaining WAL: {names}[/yellow]")


async def main(promote: str | None, polls: int) -> None:
    settings = ControllerSettings()
    configure_logging(settings.logging)

    console.print(Panel.fit(f"Cluster config: {settings.cluster_config}\nStore: {settings.store.backend}"))

    # Entering the context provisions the primary; failures are logged, not raised.
    async with ClusterController.from_settings(settings) as controller:
        show_topology(controller)

        console.rule("Bootstrap")
        show_outcome(await controller.bootstrap_all())

        console.rule("Health")
        for _ in range(polls):
            outcome = await controller.poll_once()
            if outcome.snapshot is not None:
                show_snapshot(outcome.snapshot)
            await asyncio.sleep(settings.load_cluster_config().monitor.poll_interval_seconds)
        show_topology(controller)

        if promote is not None:
            console.rule(f"Promote {promote}")
            outcome = await controller.promote(promote)
            show_outcome(outcome)
            if outcome.promotion is not None:
                console.print(outcome.promotion.model_dump(exclude_none=True))
            show_topology(controller)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--promote", metavar="NODE_ID", default=None, help="replica to promote after polling")
    parser.add_argument("--polls", type=int, default=3, help="health polls before exiting")
    args = parser.parse_args()

    asyncio.run(main(args.promote, args.polls))
