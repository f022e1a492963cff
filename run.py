#!/usr/bin/env python3
"""
VirtualMachine Controller - Entry Point

A CRD-based Kubernetes controller that reconciles Pokemon and VirtualMachine
objects, driving the Pods and Services of each VirtualMachine toward its
desired state.

Usage:
    python run.py [--namespace NAMESPACE] [--kind KIND] [--workers N] [--in-cluster]
"""

import argparse
import logging
import sys
import threading

from kubernetes import config
from prometheus_client import CollectorRegistry

from vm_controller.config import DEFAULT_WORKERS, HEALTH_HOST, HEALTH_PORT, REPORTER
from vm_controller.controller import Controller, install_signal_handlers
from vm_controller.crd_client import ChildResourceClient, CustomResourceClient
from vm_controller.errors import CrdNotInstalled
from vm_controller.events import EventRecorder
from vm_controller.metrics import Diagnostics, Metrics
from vm_controller.pokemon import PokemonReconciler
from vm_controller.reconciler import Context
from vm_controller.server import start_server
from vm_controller.virtualmachine import VirtualMachineReconciler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

RECONCILERS = {
    "pokemon": PokemonReconciler,
    "virtualmachine": VirtualMachineReconciler,
}


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="VirtualMachine Controller - Reconcile Pokemon and VirtualMachine resources"
    )
    parser.add_argument(
        "--namespace", "-n",
        default="",
        help="Namespace to watch (default: all namespaces)"
    )
    parser.add_argument(
        "--kind",
        action="append",
        choices=sorted(RECONCILERS),
        help="Resource kind to reconcile; repeat for several (default: all)"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=DEFAULT_WORKERS,
        help=f"Reconcile worker threads per kind (default: {DEFAULT_WORKERS})"
    )
    parser.add_argument(
        "--in-cluster",
        action="store_true",
        help="Use in-cluster config (for running inside Kubernetes)"
    )
    parser.add_argument(
        "--health-host",
        default=HEALTH_HOST,
        help=f"Bind address of the health endpoint (default: {HEALTH_HOST})"
    )
    parser.add_argument(
        "--health-port",
        type=int,
        default=HEALTH_PORT,
        help=f"Port of the health endpoint (default: {HEALTH_PORT})"
    )
    parser.add_argument(
        "--no-health",
        action="store_true",
        help="Do not serve /health and /metrics"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose/debug logging"
    )
    return parser.parse_args(argv)


def build_controllers(kinds, namespace, workers, metrics, diagnostics):
    """Create one controller per kind, all sharing metrics and diagnostics."""
    children = ChildResourceClient()
    recorder = EventRecorder(REPORTER)
    controllers = []
    for kind in kinds:
        reconciler_cls = RECONCILERS[kind]
        ctx = Context(
            resources=CustomResourceClient(reconciler_cls.kind),
            children=children,
            recorder=recorder,
            metrics=metrics,
            diagnostics=diagnostics,
        )
        controllers.append(Controller(reconciler_cls(ctx), namespace=namespace, workers=workers))
    return controllers


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    # Set log level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Load Kubernetes configuration
    try:
        if args.in_cluster:
            config.load_incluster_config()
            logger.info("Loaded in-cluster configuration")
        else:
            config.load_kube_config()
            logger.info("Loaded kubeconfig from default location")
    except Exception as e:
        logger.error(f"Failed to load Kubernetes config: {e}")
        sys.exit(1)

    registry = CollectorRegistry()
    metrics = Metrics(registry)
    diagnostics = Diagnostics(REPORTER)
    kinds = args.kind or sorted(RECONCILERS)
    controllers = build_controllers(kinds, args.namespace, args.workers, metrics, diagnostics)

    try:
        for controller in controllers:
            controller.check_installed()
    except CrdNotInstalled as e:
        logger.error(f"Controller cannot start: {e}")
        sys.exit(1)

    server = None
    if not args.no_health:
        server = start_server(registry, diagnostics, args.health_host, args.health_port)

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    for controller in controllers:
        controller.start()
    logger.info("Controller is running. Press Ctrl+C to stop.")

    # Keep main thread alive
    while not stop_event.wait(1):
        pass

    for controller in controllers:
        controller.stop()
    for controller in controllers:
        controller.join()
    if server is not None:
        server.shutdown()
    logger.info("Controller stopped")
    sys.exit(0)


if __name__ == "__main__":
    main()
