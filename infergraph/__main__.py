"""CLI entry point: python -m infergraph validate|compile|render|apply|status|delete ..."""

from __future__ import annotations

import argparse
import logging
import sys

from infergraph.config import ControllerConfig, default_controller_config, load_controller_config
from infergraph.errors import InfergraphError, RejectionError
from infergraph.manifests import GRAPH_KIND, graph_from_manifest, load_manifest, spec_from_manifest
from infergraph.models import GraphSpec, Status


def _load_config(args: argparse.Namespace) -> ControllerConfig:
    if getattr(args, "config", None):
        return load_controller_config(args.config)
    return default_controller_config()


def _load_spec(path: str):
    try:
        return spec_from_manifest(load_manifest(path))
    except (OSError, ValueError) as e:
        print(f"Error: cannot read {path}: {e}", file=sys.stderr)
        sys.exit(1)


def _load_graph(path: str) -> GraphSpec:
    spec = _load_spec(path)
    if not isinstance(spec, GraphSpec):
        print(f"Error: {path} is not an {GRAPH_KIND}.", file=sys.stderr)
        sys.exit(1)
    return spec


def cmd_validate(args: argparse.Namespace) -> None:
    from infergraph.validation import validate_graph, validate_service, validate_service_delete

    config = _load_config(args)
    spec = _load_spec(args.file)
    previous = _load_spec(args.previous) if args.previous else None

    try:
        if isinstance(spec, GraphSpec):
            validate_graph(spec, previous=previous, policy=config.cluster)
        elif args.delete:
            graphs = [load_manifest(p) for p in args.graphs or []]
            validate_service_delete(spec, graphs)
        else:
            validate_service(spec, previous=previous, policy=config.cluster)
    except RejectionError as e:
        print(f"Error: [{e.category}] {e.message}", file=sys.stderr)
        sys.exit(1)

    print(f"{spec.namespace}/{spec.name} is valid.")


def cmd_compile(args: argparse.Namespace) -> None:
    from infergraph.compiler import compile_graph

    print(compile_graph(_load_graph(args.file)))


def cmd_render(args: argparse.Namespace) -> None:
    import yaml

    from infergraph.auth import new_binding
    from infergraph.compiler import compile_graph
    from infergraph.resolver import resolve
    from infergraph.synthesizer import synthesize

    config = _load_config(args)
    if args.allow_zero_initial_scale:
        config.cluster.allow_zero_initial_scale = True

    graph = _load_graph(args.file)
    try:
        effective = resolve(graph, config.cluster)
        desired = synthesize(graph, effective, compile_graph(graph), config)
    except InfergraphError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    docs = [artifact.body for artifact in desired.artifacts.values()]
    if desired.binding_subject is not None:
        docs.append(new_binding([desired.binding_subject.to_dict()]))
    print(yaml.safe_dump_all(docs, sort_keys=False), end="")


def cmd_apply(args: argparse.Namespace) -> None:
    from infergraph.kube_client import KubeClusterClient
    from infergraph.reconciler import Reconciler
    from infergraph.validation import validate_graph

    config = _load_config(args)
    graph = _load_graph(args.file)
    client = KubeClusterClient()

    previous = None
    existing = client.get(GRAPH_KIND, graph.name, graph.namespace)
    if existing is not None:
        previous = graph_from_manifest(existing)

    try:
        validate_graph(graph, previous=previous, policy=config.cluster)
    except RejectionError as e:
        print(f"Error: [{e.category}] {e.message}", file=sys.stderr)
        sys.exit(1)

    # Reconcile against the stored object so uid, finalizers and status are current.
    stored = existing
    if stored is None:
        stored = client.create(GRAPH_KIND, load_manifest(args.file))
    else:
        stored = client.patch(GRAPH_KIND, graph.name, graph.namespace, {
            "metadata": {"labels": graph.labels, "annotations": graph.annotations},
            "spec": load_manifest(args.file).get("spec") or {},
        })

    try:
        status = Reconciler(client, config).reconcile(graph_from_manifest(stored))
    except InfergraphError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    _print_status(graph.name, status)


def cmd_status(args: argparse.Namespace) -> None:
    from infergraph.kube_client import KubeClusterClient

    obj = KubeClusterClient().get(GRAPH_KIND, args.name, args.namespace)
    if obj is None:
        print(f"Error: no {GRAPH_KIND} '{args.namespace}/{args.name}' found.", file=sys.stderr)
        sys.exit(1)
    _print_status(args.name, graph_from_manifest(obj).status)


def cmd_delete(args: argparse.Namespace) -> None:
    from infergraph.kube_client import KubeClusterClient
    from infergraph.reconciler import Reconciler

    client = KubeClusterClient()
    obj = client.get(GRAPH_KIND, args.name, args.namespace)
    if obj is None:
        print(f"Error: no {GRAPH_KIND} '{args.namespace}/{args.name}' found.", file=sys.stderr)
        sys.exit(1)

    client.delete(GRAPH_KIND, args.name, args.namespace)
    Reconciler(client, _load_config(args)).finalize(graph_from_manifest(obj))
    print(f"Deleted {GRAPH_KIND} {args.namespace}/{args.name}.")


def _print_status(name: str, status: Status) -> None:
    from rich.console import Console
    from rich.table import Table

    console = Console()
    mode = status.deployment_mode or ""
    mode_suffix = f"  [dim]({mode})[/dim]" if mode else ""
    console.print(f"\n[bold]{name}[/bold]{mode_suffix}\n")
    console.print(f"URL: {status.url or '-'}")

    table = Table(show_header=True, header_style="bold", expand=True)
    table.add_column("Condition")
    table.add_column("Status")
    table.add_column("Reason")
    table.add_column("Message")
    for cond in status.conditions:
        color = {"True": "green", "False": "red"}.get(cond.status, "yellow")
        table.add_row(cond.type, f"[{color}]{cond.status}[/{color}]", cond.reason or "-", cond.message or "")
    console.print(table)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="infergraph",
        description="Validate, render and reconcile KServe inference graphs",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # -- validate --
    p_validate = subparsers.add_parser("validate", help="Run admission checks on a manifest")
    p_validate.add_argument("file", help="InferenceGraph or InferenceService YAML")
    p_validate.add_argument("--previous", default=None, help="Previously stored version (update check)")
    p_validate.add_argument("--delete", action="store_true", help="Check an InferenceService delete")
    p_validate.add_argument("--graphs", nargs="*", default=None, help="InferenceGraph YAMLs for --delete")
    p_validate.add_argument("--config", default=None, help="Controller config YAML")
    p_validate.set_defaults(func=cmd_validate)

    # -- compile --
    p_compile = subparsers.add_parser("compile", help="Print the router graph descriptor")
    p_compile.add_argument("file", help="InferenceGraph YAML")
    p_compile.set_defaults(func=cmd_compile)

    # -- render --
    p_render = subparsers.add_parser("render", help="Print the desired artifacts as YAML")
    p_render.add_argument("file", help="InferenceGraph YAML")
    p_render.add_argument("--config", default=None, help="Controller config YAML")
    p_render.add_argument(
        "--allow-zero-initial-scale", action="store_true",
        help="Assume the cluster permits initial-scale 0",
    )
    p_render.set_defaults(func=cmd_render)

    # -- apply --
    p_apply = subparsers.add_parser("apply", help="Store and reconcile a graph on the cluster")
    p_apply.add_argument("file", help="InferenceGraph YAML")
    p_apply.add_argument("--config", default=None, help="Controller config YAML")
    p_apply.set_defaults(func=cmd_apply)

    # -- status --
    p_status = subparsers.add_parser("status", help="Show graph status")
    p_status.add_argument("--name", required=True)
    p_status.add_argument("--namespace", default="default")
    p_status.set_defaults(func=cmd_status)

    # -- delete --
    p_delete = subparsers.add_parser("delete", help="Delete a graph and retract its auth membership")
    p_delete.add_argument("--name", required=True)
    p_delete.add_argument("--namespace", default="default")
    p_delete.add_argument("--config", default=None, help="Controller config YAML")
    p_delete.set_defaults(func=cmd_delete)

    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    # Silence noisy third-party loggers unless --verbose
    if not args.verbose:
        for name in ("kubernetes", "urllib3"):
            logging.getLogger(name).setLevel(logging.WARNING)

    args.func(args)


if __name__ == "__main__":
    main()
