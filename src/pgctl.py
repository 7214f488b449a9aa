#!/usr/bin/env python3
"""
CLI tool for the Postgresql operator
Provides a kubectl-like interface for Postgresql records
"""

import json
import os
import time

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = os.getenv("PGCTL_API_URL", "http://localhost:8000/api/v1")


class PostgresqlOperatorCLI:
    """CLI client for the Postgresql operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None


def load_manifest(filename: str) -> dict:
    """Read a Postgresql manifest from a YAML or JSON file"""
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return yaml.safe_load(f)
        return json.load(f)


@click.group()
@click.option("--api-url", default=API_BASE_URL, help="Operator API base URL")
@click.pass_context
def cli(ctx, api_url):
    """Postgresql operator CLI - kubectl-like interface for Postgresql records"""
    ctx.obj = PostgresqlOperatorCLI(api_url)


@cli.command()
@click.option("--filename", "-f", required=True, type=click.Path(exists=True))
@click.pass_obj
def apply(client, filename):
    """Create a Postgresql record from a YAML/JSON manifest"""
    manifest = load_manifest(filename)
    metadata = manifest.get("metadata", {})
    namespace = metadata.get("namespace", "default")
    body = {"name": metadata.get("name"), "spec": manifest.get("spec", {})}

    result = client._make_request(
        "POST", f"/namespaces/{namespace}/postgresqls", json=body
    )

    if result:
        click.echo(f"postgresql/{result['name']} created in {result['namespace']}")


@cli.command()
@click.option("--namespace", "-n", default="default")
@click.option("--all-namespaces", "-A", is_flag=True)
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.pass_obj
def get(client, namespace, all_namespaces, output):
    """List Postgresql records"""
    endpoint = (
        "/postgresqls" if all_namespaces else f"/namespaces/{namespace}/postgresqls"
    )
    result = client._make_request("GET", endpoint)
    if result is None:
        return

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    headers = ["Namespace", "Name", "User", "Phase", "Pod", "Terminating"]
    rows = [
        [
            pg["namespace"],
            pg["name"],
            pg["default_user"],
            pg.get("phase") or "-",
            pg.get("active_pod") or "-",
            "yes" if pg.get("deletion_timestamp") else "",
        ]
        for pg in result
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="simple"))


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, name, namespace, output):
    """Describe a Postgresql record and its Pod"""
    result = client._make_request("GET", f"/namespaces/{namespace}/postgresqls/{name}")
    if not result:
        return

    if result.get("active_pod"):
        pod = client._make_request("GET", f"/namespaces/{namespace}/pods/{name}")
        if pod:
            result["pod"] = pod

    if output == "yaml":
        click.echo(yaml.dump(result, default_flow_style=False))
    else:
        click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.confirmation_option(prompt="Are you sure you want to delete this database?")
@click.pass_obj
def delete(client, name, namespace):
    """Delete a Postgresql record (its Pod is removed first)"""
    result = client._make_request(
        "DELETE", f"/namespaces/{namespace}/postgresqls/{name}"
    )

    if result:
        click.echo(f"postgresql/{name} marked for deletion")


@cli.command()
@click.option("--namespace", "-n", default="default")
@click.pass_obj
def pods(client, namespace):
    """List Pods managed by the operator"""
    result = client._make_request("GET", f"/namespaces/{namespace}/pods")
    if result is None:
        return

    headers = ["Namespace", "Name", "Phase", "Image"]
    rows = [[p["namespace"], p["name"], p.get("phase") or "-", p.get("image")] for p in result]
    click.echo(tabulate(rows, headers=headers, tablefmt="simple"))


@cli.command("set-pod-phase")
@click.argument("name")
@click.argument("phase")
@click.option("--namespace", "-n", default="default")
@click.pass_obj
def set_pod_phase(client, name, phase, namespace):
    """Report the observed phase of a Pod (non-Kubernetes backends)"""
    result = client._make_request(
        "PUT", f"/namespaces/{namespace}/pods/{name}/status", json={"phase": phase}
    )

    if result:
        click.echo(f"pod/{name} phase set to {result['phase']}")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.pass_obj
def reconcile(client, name, namespace):
    """Manually trigger reconciliation for a Postgresql record"""
    result = client._make_request(
        "POST", f"/namespaces/{namespace}/postgresqls/{name}/reconcile"
    )

    if result:
        click.echo("Reconciliation triggered successfully")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=2, help="Polling interval in seconds")
@click.pass_obj
def status(client, name, namespace, follow, interval):
    """Show the phase of a Postgresql record"""

    def show_status():
        result = client._make_request(
            "GET", f"/namespaces/{namespace}/postgresqls/{name}"
        )
        if result:
            click.echo(
                f"{result['namespace']}/{result['name']}: "
                f"{result.get('phase') or 'unknown'}"
            )

    show_status()

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


if __name__ == "__main__":
    cli()
