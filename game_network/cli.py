"""Main CLI entry point for inspecting game network plugins."""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from game_network.exceptions import ConfigurationError
from game_network.logging_config import get_logger, setup_logging
from game_network.models.options import DEFAULT_CONFIG_PATH

app = typer.Typer(
    name="game-net",
    help="Network plugins and port allocation for game-server pods",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


def _load_config(config_path: str):
    from game_network.models.options import CloudProviderConfig

    try:
        return CloudProviderConfig.load(config_path)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        console.print(f"[red]Configuration Error:[/red] {e.message}")
        if e.details:
            console.print(f"\n{e.details}")
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show version information."""
    from game_network import __version__

    typer.echo(f"game-network version {__version__}")


@app.command("check-config")
def check_config(
    config_path: str = typer.Option(
        DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to the provider config file"
    ),
) -> None:
    """
    Validate a provider config file.

    Shows for each cloud provider whether it is enabled and whether its options
    are valid. Exits with code 1 if an enabled provider is invalid.
    """
    config = _load_config(config_path)

    table = Table(title="Cloud Providers")
    table.add_column("Provider", style="cyan")
    table.add_column("Enabled", style="magenta")
    table.add_column("Valid", style="green")
    table.add_column("Problems", style="yellow")

    broken = False
    for name, options in config.provider_options().items():
        problems = options.problems()
        if options.enabled() and problems:
            broken = True
        table.add_row(
            name,
            "Yes" if options.enabled() else "No",
            "✓" if not problems else "✗",
            "\n".join(problems),
        )

    console.print(table)
    manager = config.manager
    console.print(
        f"\n[bold]Mutating timeout:[/bold] {manager.mutating_timeout}s  "
        f"[bold]Resync interval:[/bold] {manager.resync_interval or 'disabled'}  "
        f"[bold]Allocation grace:[/bold] {manager.allocation_grace_period}s"
    )
    if broken:
        console.print("\n[red]Enabled providers with invalid options will not be registered[/red]")
        raise typer.Exit(code=1)


@app.command()
def plugins(
    config_path: str = typer.Option(
        DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to the provider config file"
    ),
) -> None:
    """List the network plugins a config would register."""
    from game_network.cloudprovider.manager import new_provider_manager

    config = _load_config(config_path)
    try:
        manager = new_provider_manager(config)
    except ConfigurationError as e:
        console.print(f"[red]Configuration Error:[/red] {e.message}")
        raise typer.Exit(code=1)

    entries = manager.list_plugins()
    if not entries:
        console.print("[yellow]No cloud provider is enabled and valid[/yellow]")
        return

    table = Table(title="Network Plugins")
    table.add_column("Provider", style="cyan")
    table.add_column("Network Type", style="magenta")
    table.add_column("Alias", style="green")
    for provider, plugin in entries:
        table.add_row(provider.name, plugin.name, plugin.alias or "-")
    console.print(table)


@app.command()
def admit(
    review_path: str = typer.Option(
        ..., "--review", "-r", help="Path to an AdmissionReview (or its request) as JSON"
    ),
    config_path: str = typer.Option(
        DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to the provider config file"
    ),
) -> None:
    """
    Run one pod admission request through the network plugins.

    Initializes the plugins of the configured providers against the current
    cluster, dispatches the request like the mutating webhook would and prints
    the admission result with the mutated pod as JSON.

    Examples:
        # Preview the ports a new pod would get
        game-net admit -r review.json -c config.toml
    """
    import json

    from kubernetes import client, config
    from kubernetes.client.rest import ApiException

    from game_network.cloudprovider.manager import new_provider_manager
    from game_network.dispatcher import PodMutatingHandler

    path = Path(review_path)
    if not path.exists():
        console.print(f"[red]Error:[/red] Review file not found: {review_path}")
        raise typer.Exit(code=1)
    try:
        review = json.loads(path.read_text())
        request = review.get("request", review)
        operation = request["operation"]
    except (ValueError, KeyError, AttributeError) as e:
        console.print(f"[red]Error:[/red] Invalid admission review {review_path}: {e}")
        raise typer.Exit(code=1)

    provider_config = _load_config(config_path)
    try:
        manager = new_provider_manager(provider_config)
    except ConfigurationError as e:
        console.print(f"[red]Configuration Error:[/red] {e.message}")
        raise typer.Exit(code=1)

    try:
        config.load_kube_config()
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to load kubeconfig: {e}")
        console.print("\nMake sure a kubeconfig is available at ~/.kube/config")
        raise typer.Exit(code=1)

    v1 = client.CoreV1Api()
    manager.init(v1)
    manager.start_resync(v1, provider_config.manager.resync_interval)
    handler = PodMutatingHandler(v1, manager, timeout=provider_config.manager.mutating_timeout)
    try:
        result = handler.handle_request(request)
    except (ValueError, ApiException) as e:
        console.print(f"[red]Error:[/red] Failed to handle admission request: {e}")
        raise typer.Exit(code=1)
    finally:
        handler.close()
        manager.stop_resync()

    logger.info(f"Admission of {operation} request: {result.message or 'ok'}")
    output = {
        "allowed": result.allowed,
        "mutated": result.mutated,
        "message": result.message,
        "errorType": result.error_type.value if result.error_type else None,
        "pod": result.pod_dict(),
    }
    typer.echo(json.dumps(output, indent=2))


@app.command()
def status(
    namespace: str | None = typer.Option(
        None, "--namespace", "-n", help="Only show pods of this namespace"
    ),
    network_type: str | None = typer.Option(
        None, "--network-type", "-t", help="Only show pods of this network type"
    ),
) -> None:
    """
    Show the network status of game-server pods.

    Lists pods carrying a network-type annotation together with the readiness
    and addresses published by their network plugin.

    Examples:
        # All pods with a network plugin
        game-net status

        # HostPort pods of one namespace
        game-net status -n games -t Kubernetes-HostPort
    """
    from kubernetes import client, config
    from kubernetes.client.rest import ApiException

    from game_network.models.network import NETWORK_TYPE_KEY
    from game_network.network_manager import NetworkManager

    try:
        config.load_kube_config()
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to load kubeconfig: {e}")
        console.print("\nMake sure a kubeconfig is available at ~/.kube/config")
        raise typer.Exit(code=1)

    v1 = client.CoreV1Api()
    try:
        if namespace:
            pods = v1.list_namespaced_pod(namespace)
        else:
            pods = v1.list_pod_for_all_namespaces()
    except ApiException as e:
        console.print(f"[red]Error:[/red] Failed to list pods: {e.reason}")
        raise typer.Exit(code=1)

    table = Table(title="Pod Network Status")
    table.add_column("Namespace", style="cyan")
    table.add_column("Pod", style="cyan")
    table.add_column("Network Type", style="magenta")
    table.add_column("State", style="green")
    table.add_column("Internal", style="blue")
    table.add_column("External", style="yellow")

    shown = 0
    for pod in sorted(pods.items, key=lambda p: (p.metadata.namespace, p.metadata.name)):
        annotations = pod.metadata.annotations or {}
        pod_type = annotations.get(NETWORK_TYPE_KEY)
        if not pod_type or (network_type and pod_type != network_type):
            continue
        net_status = NetworkManager(pod).get_network_status()
        state = net_status.current_network_state.value if net_status else "Unknown"
        color = {"Ready": "green", "NotReady": "red"}.get(state, "yellow")
        table.add_row(
            pod.metadata.namespace,
            pod.metadata.name,
            pod_type,
            f"[{color}]{state}[/{color}]",
            _format_addresses(net_status.internal_addresses if net_status else []),
            _format_addresses(net_status.external_addresses if net_status else []),
        )
        shown += 1

    if not shown:
        console.print("[yellow]No pods with a network plugin found[/yellow]")
        return
    console.print(table)
    console.print(f"\n[bold]Total pods:[/bold] {shown}")


def _format_addresses(addresses) -> str:
    parts = []
    for addr in addresses:
        ports = ",".join(f"{p.port}/{p.protocol}" for p in addr.ports)
        parts.append(f"{addr.ip or addr.end_point or '-'}:{ports}" if ports else addr.ip)
    return "\n".join(parts) or "-"


if __name__ == "__main__":
    app()
