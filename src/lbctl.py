#!/usr/bin/env python3
"""
CLI tool for the QingCloud load balancer controller.
Runs the convergence engine once against a Service manifest, or the
controller workers over several until each has a final outcome.
"""

import asyncio
import json
import logging
import os
import sys

import click
import pydantic
import yaml
from tabulate import tabulate

from config import CloudConfig, ControllerConfig
from controller import LoadBalancerController, WorkAction, WorkItem
from desired import service_load_balancer_name
from errors import LoadBalancerError
from events import EventBus, EventType
from executors.qingcloud import new_engine
from k8s import Node, Service


def _load_documents(filename):
    """Load every document of a YAML/JSON file, unwrapping List kinds."""
    with open(filename, "r") as f:
        if filename.endswith(".json"):
            docs = [json.load(f)]
        else:
            docs = [d for d in yaml.safe_load_all(f) if d]

    objects = []
    for doc in docs:
        if isinstance(doc, list):
            objects.extend(doc)
        elif doc.get("kind", "").endswith("List"):
            objects.extend(doc.get("items") or [])
        else:
            objects.append(doc)
    return objects


def load_service(filename):
    services = [d for d in _load_documents(filename) if d.get("kind", "Service") == "Service"]
    if not services:
        raise click.ClickException(f"No Service found in {filename}")
    try:
        return Service.model_validate(services[0])
    except pydantic.ValidationError as e:
        raise click.ClickException(f"Invalid Service in {filename}: {e}")


def load_nodes(filename):
    if not filename:
        return []
    return [
        Node.model_validate(d)
        for d in _load_documents(filename)
        if d.get("kind", "Node") == "Node"
    ]


def _engine():
    try:
        cfg = CloudConfig.from_env()
    except ValueError as e:
        raise click.ClickException(str(e))
    return new_engine(cfg)


def _run(coro):
    try:
        return asyncio.run(coro)
    except LoadBalancerError as e:
        click.echo(f"Error: {type(e).__name__}: {e}", err=True)
        sys.exit(1)


async def run_controller(engine, items, controller_config=None):
    """
    Run the controller workers until every Service has a final outcome:
    a success, or a failure that will not be retried.

    Returns:
        The final event of each Service, in request order.
    """
    if not items:
        return []
    # unbounded, every outcome is awaited
    bus = EventBus(queue_size=0)
    controller = LoadBalancerController(engine, controller_config, event_bus=bus)
    subscriber_id, events = await bus.subscribe()
    workers = asyncio.create_task(controller.start())

    outcomes = {item.key: None for item in items}
    try:
        for item in items:
            controller.enqueue(item)
        async for event in events:
            if event.event_type == EventType.FAILED and event.retrying:
                click.echo(f"{event.service_key}: {event.message} (retrying)", err=True)
                continue
            outcomes[event.service_key] = event
            if all(outcomes.values()):
                break
    finally:
        await bus.unsubscribe(subscriber_id)
        await controller.stop()
        await workers
    return [e for e in outcomes.values() if e is not None]


def _echo_status(service, name, status, output):
    ingress = status.ingress if status else []
    data = {"name": name, "ingress": [{"ip": ip} for ip in ingress]}
    if output == "json":
        click.echo(json.dumps(data, indent=2))
    elif output == "yaml":
        click.echo(yaml.dump(data, default_flow_style=False))
    else:
        rows = [[service.key, name, ", ".join(ingress) or "<pending>"]]
        click.echo(tabulate(rows, headers=["SERVICE", "LOAD BALANCER", "INGRESS"]))


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose):
    """Load balancer controller CLI - converge a Service onto a QingCloud load balancer"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


output_option = click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--nodes", "nodes_file", type=click.Path(exists=True), help="Node manifests")
@output_option
def ensure(filename, nodes_file, output):
    """Create or converge the load balancer of a Service"""
    service = load_service(filename)
    nodes = load_nodes(nodes_file)
    engine = _engine()

    status = _run(engine.ensure(service, nodes))
    _echo_status(service, engine.get_load_balancer_name(service), status, output)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@output_option
def get(filename, output):
    """Show the load balancer of a Service"""
    service = load_service(filename)
    engine = _engine()

    status, exists = _run(engine.get(service))
    if not exists:
        click.echo(f"Load balancer for {service.key} does not exist")
        sys.exit(1)
    _echo_status(service, engine.get_load_balancer_name(service), status, output)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--skip-check", is_flag=True, help="Delete without checking the Service first")
def delete(filename, skip_check):
    """Delete the load balancer of a Service"""
    service = load_service(filename)
    engine = _engine()

    _run(engine.delete(service, skip_check=skip_check))
    click.echo(f"Load balancer {engine.get_load_balancer_name(service)} deleted")


@cli.command()
@click.argument("filenames", nargs=-1, required=True, type=click.Path(exists=True))
@click.option("--nodes", "nodes_file", type=click.Path(exists=True), help="Node manifests")
@click.option("--delete", "delete_", is_flag=True, help="Delete the load balancers instead")
@click.option("--skip-check", is_flag=True, help="With --delete, also sweep orphaned resources")
@output_option
def run(filenames, nodes_file, delete_, skip_check, output):
    """Run the controller workers over one or more Services"""
    services = {}
    for filename in filenames:
        service = load_service(filename)
        services[service.key] = service
    nodes = load_nodes(nodes_file)
    engine = _engine()

    if delete_:
        items = [
            WorkItem(WorkAction.DELETE, s, skip_check=skip_check) for s in services.values()
        ]
    else:
        items = [WorkItem(WorkAction.ENSURE, s, nodes) for s in services.values()]

    events = asyncio.run(run_controller(engine, items, ControllerConfig.from_env()))

    if output in ("json", "yaml"):
        data = [json.loads(e.to_json()) for e in events]
        if output == "json":
            click.echo(json.dumps(data, indent=2))
        else:
            click.echo(yaml.dump(data, default_flow_style=False))
    else:
        rows = [
            [
                e.service_key,
                e.load_balancer_name,
                e.event_type.value,
                ", ".join(e.ingress) if e.ingress else e.message,
            ]
            for e in events
        ]
        click.echo(tabulate(rows, headers=["SERVICE", "LOAD BALANCER", "RESULT", "DETAIL"]))

    if any(e.event_type == EventType.FAILED for e in events):
        sys.exit(1)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
def name(filename):
    """Print the load balancer name derived for a Service"""
    service = load_service(filename)
    cfg = CloudConfig(cluster_id=os.getenv("CLUSTER_ID", "kubernetes"))
    click.echo(service_load_balancer_name(cfg, service))


if __name__ == "__main__":
    cli()
