"""
CLI for k3sfnctl - the k3sfn Function controller.

Commands:
    run         Run the controller until SIGINT/SIGTERM
    gc          Report the Functions a garbage-collection sweep would queue
    runtimes    List runtimes resolvable from the controller ConfigMap
    version     Print the controller version
"""

import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from . import __version__
from .config import ControllerSettings, load_settings
from .controller import Controller
from .exceptions import ControllerError, NotFoundError
from .health import start_health_server
from .informer import FunctionInformer
from .langruntime import LangRuntimes
from .resources import ResourceClient

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="k3sfnctl",
        description="Reconcile k3sfn Function resources into Kubernetes objects",
    )
    parser.add_argument(
        "-c", "--config",
        help="Path to a controller settings YAML file",
    )
    parser.add_argument(
        "--kubeconfig",
        help="Path to a kubeconfig (default: in-cluster, then ~/.kube/config)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run the controller",
    )
    run_parser.add_argument(
        "-n", "--namespace",
        help="Only watch Functions in this namespace (default: all namespaces)",
    )
    run_parser.add_argument(
        "--health-port",
        type=int,
        help="Port for /live, /ready and /health (0 disables, default: 8080)",
    )
    run_parser.add_argument(
        "--gc-interval",
        type=float,
        help="Seconds between garbage-collection sweeps (0: startup only)",
    )
    run_parser.add_argument(
        "--max-retries",
        type=int,
        help="Retries per Function before giving up (default: 5)",
    )
    run_parser.add_argument(
        "--service-monitors",
        action="store_true",
        default=None,
        help="Manage Prometheus ServiceMonitors for object-metric autoscalers",
    )

    # gc command
    gc_parser = subparsers.add_parser(
        "gc",
        help="Report Functions owning managed objects, and which are orphaned",
    )
    gc_parser.add_argument(
        "-n", "--namespace",
        help="Only scan this namespace (default: all namespaces)",
    )
    gc_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    # runtimes command
    runtimes_parser = subparsers.add_parser(
        "runtimes",
        help="List runtimes from the controller ConfigMap",
    )
    runtimes_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    # version command
    subparsers.add_parser(
        "version",
        help="Print the controller version",
    )

    return parser


def configure_logging(level: str, verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_kube_config(kubeconfig: Optional[str] = None) -> None:
    """Load in-cluster config, falling back to a kubeconfig file."""
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        return
    try:
        config.load_incluster_config()
    except ConfigException:
        config.load_kube_config()


def load_settings_from_args(args: argparse.Namespace) -> ControllerSettings:
    settings = load_settings(args.config)
    return settings.with_overrides(
        namespace=getattr(args, "namespace", None),
        health_port=getattr(args, "health_port", None),
        gc_interval=getattr(args, "gc_interval", None),
        max_retries=getattr(args, "max_retries", None),
        service_monitors=getattr(args, "service_monitors", None),
    )


def load_runtimes(resources: ResourceClient, settings: ControllerSettings) -> LangRuntimes:
    """Read runtime images from the controller ConfigMap, if it exists."""
    try:
        data = resources.read_config_map(settings.config_namespace, settings.config_name)
    except NotFoundError:
        logger.warning(
            f"ConfigMap {settings.config_namespace}/{settings.config_name} not found, "
            "using built-in runtimes"
        )
        data = {}
    return LangRuntimes.from_config_map_data(data)


def build_controller(settings: ControllerSettings) -> Controller:
    """Wire the informer, resource client and runtimes into a Controller."""
    api_client = client.ApiClient()
    resources = ResourceClient(
        api_client,
        request_timeout=settings.request_timeout,
        monitoring_enabled=settings.service_monitors,
    )
    informer = FunctionInformer(
        client.CustomObjectsApi(api_client),
        namespace=settings.namespace,
        request_timeout=settings.request_timeout,
    )
    return Controller(informer, resources, load_runtimes(resources, settings), settings)


def cmd_run(args: argparse.Namespace) -> int:
    """Handle run command."""
    try:
        settings = load_settings_from_args(args)
        configure_logging(settings.log_level, args.verbose)
        logger.debug(f"Effective settings: {settings.to_dict()}")
        load_kube_config(args.kubeconfig)
        controller = build_controller(settings)
    except (ControllerError, ConfigException, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    stop_event = threading.Event()

    def _stop(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    start_health_server(controller, settings.health_port)
    controller.run(stop_event)
    return 0


def cmd_gc(args: argparse.Namespace) -> int:
    """Handle gc command."""
    try:
        settings = load_settings_from_args(args)
        configure_logging(settings.log_level, args.verbose)
        load_kube_config(args.kubeconfig)
        controller = build_controller(settings)
        controller.informer.relist()
        keys = controller.garbage_collect(enqueue=False)
    except (ControllerError, ConfigException, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    report = []
    for key in sorted(keys):
        _, exists = controller.informer.get_by_key(key)
        report.append({"key": key, "orphaned": not exists})

    if args.json:
        print(json.dumps(report, indent=2))
    else:
        for entry in report:
            status = "orphaned" if entry["orphaned"] else "live"
            print(f"{entry['key']} ({status})")
    return 0


def cmd_runtimes(args: argparse.Namespace) -> int:
    """Handle runtimes command."""
    try:
        settings = load_settings(args.config)
        configure_logging(settings.log_level, args.verbose)
        load_kube_config(args.kubeconfig)
        resources = ResourceClient(request_timeout=settings.request_timeout)
        runtimes = load_runtimes(resources, settings)
    except (ControllerError, ConfigException, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps([
            {"runtime": r.runtime, "image": r.image, "initImage": r.init_image}
            for r in runtimes.list()
        ], indent=2))
    else:
        for r in runtimes.list():
            print(f"{r.runtime:<16} {r.image}")
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Handle version command."""
    print(f"k3sfnctl {__version__}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    commands = {
        "run": cmd_run,
        "gc": cmd_gc,
        "runtimes": cmd_runtimes,
        "version": cmd_version,
    }

    handler = commands.get(args.command)
    if handler:
        return handler(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
