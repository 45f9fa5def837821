"""
SourceCore CLI - resolve sinks and reconcile Sources.

Commands:
    sourcecore resolve     Resolve one destination against a manifest directory
    sourcecore reconcile   Run one pass over every Source in a manifest directory
    sourcecore run         Run the controller

Usage::

    sourcecore resolve -m ./manifests -n default \\
        --api-version eventing.knative.dev/v1 --kind Broker --name default
    sourcecore reconcile -m ./manifests --api-version sources.knative.dev/v1 --kind PingSource
    sourcecore run --api-version sources.knative.dev/v1 --kind PingSource -n default
"""

from __future__ import annotations

import logging
import signal
import threading
from typing import Any, Dict, Optional, Tuple

import click
import yaml

from sourcecore import __version__
from sourcecore.config import get_config
from sourcecore.errors import ConditionSetError, InfrastructureError, ResolutionError
from sourcecore.logger import configure_logging
from sourcecore.models.core import Destination, GroupVersionKind, LabelSelector, ObjectKey
from sourcecore.storage.cache import ObjectCache
from sourcecore.storage.file import FileObjectStore

logger = logging.getLogger(__name__)


def _parse_labels(pairs: Tuple[str, ...]) -> Dict[str, str]:
    labels = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--selector")
        labels[key] = value
    return labels


def _load_store(manifests: str, namespace: str) -> FileObjectStore:
    try:
        return FileObjectStore(base_dir=manifests, default_namespace=namespace)
    except FileNotFoundError as e:
        raise click.ClickException(str(e))


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", type=click.Choice(["debug", "info", "warning", "error"]), default=None)
@click.option("--log-format", type=click.Choice(["json", "text"]), default=None)
@click.pass_context
def main(ctx: click.Context, log_level: Optional[str], log_format: Optional[str]):
    """SourceCore - sink resolution and readiness for Source resources."""
    overrides: Dict[str, Any] = {}
    if log_level:
        overrides["log_level"] = log_level
    if log_format:
        overrides["log_format"] = log_format
    config = get_config(**overrides)
    configure_logging(config)
    ctx.obj = config


@main.command()
@click.option("--manifests", "-m", required=True, type=click.Path(file_okay=False), help="Manifest directory")
@click.option("--namespace", "-n", default="default", show_default=True, help="Namespace of the referencing Source")
@click.option("--uri", default=None, help="Direct URI, or URI suffix when a ref is given")
@click.option("--api-version", default=None, help="apiVersion of the referenced object")
@click.option("--kind", default=None, help="Kind of the referenced object")
@click.option("--name", default=None, help="Name of the referenced object")
@click.option("--ref-namespace", default=None, help="Namespace of the referenced object")
@click.option("--selector", "-l", multiple=True, help="key=value label to select the referenced object")
@click.pass_obj
def resolve(
    config: Any,
    manifests: str,
    namespace: str,
    uri: Optional[str],
    api_version: Optional[str],
    kind: Optional[str],
    name: Optional[str],
    ref_namespace: Optional[str],
    selector: Tuple[str, ...],
):
    """Resolve a destination to a URI."""
    from sourcecore.duck import default_registry
    from sourcecore.resolver import DestinationResolver

    data: Dict[str, Any] = {}
    if uri:
        data["uri"] = uri
    if api_version or kind:
        data["ref"] = {"apiVersion": api_version or "", "kind": kind or "", "name": name, "namespace": ref_namespace}
    if selector:
        data["selector"] = {"matchLabels": _parse_labels(selector)}
    destination = Destination.model_validate(data)

    store = _load_store(manifests, namespace)
    resolver = DestinationResolver(ObjectCache(store, watch=False), default_registry(config))
    try:
        click.echo(resolver.resolve(destination, namespace))
    except ResolutionError as e:
        click.echo(f"{e.kind.value}: {e.message}", err=True)
        raise SystemExit(1)


@main.command()
@click.option("--manifests", "-m", required=True, type=click.Path(file_okay=False), help="Manifest directory")
@click.option("--api-version", required=True, help="apiVersion of the Source kind")
@click.option("--kind", required=True, help="Source kind")
@click.option("--namespace", "-n", default="", help="Only reconcile Sources in this namespace")
@click.pass_obj
def reconcile(config: Any, manifests: str, api_version: str, kind: str, namespace: str):
    """Run one reconcile pass over every Source and print the resulting status."""
    from sourcecore.runtime import build_reconciler

    store = _load_store(manifests, "default")
    source_gvk = GroupVersionKind.from_api_version(api_version, kind)
    try:
        reconciler = build_reconciler(store, config)
    except ConditionSetError as e:
        raise click.ClickException(str(e))

    items, _ = store.list(source_gvk, namespace)
    report = {}
    for obj in items:
        key = ObjectKey.for_object(obj)
        try:
            result = reconciler.reconcile_key(key)
        except InfrastructureError as e:
            raise click.ClickException(f"{key}: {e}")
        if result is not None:
            report[f"{key.namespace}/{key.name}"] = result.status.to_dict()

    click.echo(yaml.safe_dump(report, sort_keys=True, default_flow_style=False).rstrip())


@main.command()
@click.option("--api-version", required=True, help="apiVersion of the Source kind")
@click.option("--kind", required=True, help="Source kind")
@click.option("--namespace", "-n", default=None, help="Namespace to watch (default: all)")
@click.option("--store", "store_type", type=click.Choice(["auto", "kubernetes", "file", "memory"]), default=None)
@click.option("--kubeconfig", default=None, help="Path to kubeconfig")
@click.option("--manifests", "-m", default=None, help="Manifest directory for the file store")
@click.option("--workers", type=int, default=None, help="Number of reconcile workers")
@click.pass_obj
def run(
    config: Any,
    api_version: str,
    kind: str,
    namespace: Optional[str],
    store_type: Optional[str],
    kubeconfig: Optional[str],
    manifests: Optional[str],
    workers: Optional[int],
):
    """Run the controller until interrupted."""
    from sourcecore.runtime import build_controller

    overrides = config.model_dump()
    for field, value in (
        ("namespace", namespace),
        ("store_type", store_type),
        ("kubeconfig", kubeconfig),
        ("manifest_dir", manifests),
        ("workers", workers),
    ):
        if value is not None:
            overrides[field] = value
    config = get_config(**overrides)

    source_gvk = GroupVersionKind.from_api_version(api_version, kind)
    try:
        controller = build_controller(source_gvk, config)
    except ConditionSetError as e:
        raise click.ClickException(str(e))

    stopped = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stopped.set())

    click.echo(f"Starting SourceCore controller for {source_gvk}...")
    controller.start()
    try:
        while not stopped.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        controller.stop()
        controller.cache.close()
        controller.store.close()
        click.echo("Controller stopped.")


if __name__ == "__main__":
    main()
