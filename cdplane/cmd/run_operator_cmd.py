"""
This is the main entrypoint command for running the operator
"""
# Standard
from typing import List, Optional
import argparse
import os
import signal
import threading

# Third Party
from prometheus_client import start_http_server
import yaml

# First Party
import alog

# Local
from .. import config, constants
from ..controller import InstanceController
from ..instance import instance_from_manifest
from ..registry import InstanceRegistry
from ..store import DryRunObjectStore, ObjectStoreBase, OpenshiftObjectStore
from ..worker_pool import ReconcileWorkerPool
from .base import CmdBase

log = alog.use_channel("MAIN")

# Seconds to wait for the dry run passes to settle
DRY_RUN_SETTLE_TIMEOUT = 60


class RunOperatorCmd(CmdBase):
    __doc__ = __doc__

    ## Interface ##

    def add_subparser(
        self,
        subparsers: argparse._SubParsersAction,
    ) -> argparse.ArgumentParser:
        parser = subparsers.add_parser("run", help=__doc__)
        runtime_args = parser.add_argument_group("Runtime Configuration")
        runtime_args.add_argument(
            "--cr",
            "-c",
            default=None,
            help="(dry run) An instance manifest yaml to apply directly",
        )
        runtime_args.add_argument(
            "--resource_dir",
            "-r",
            default=None,
            help="(dry run) Path to a directory of yaml files that should exist in the cluster",
        )
        return parser

    def cmd(self, args: argparse.Namespace):
        # Validate args
        assert args.cr is None or (
            config.dry_run and os.path.isfile(args.cr)
        ), "Can only specify --cr with dry run and it must point to a valid file"
        assert args.resource_dir is None or (
            config.dry_run and os.path.isdir(args.resource_dir)
        ), "Can only specify --resource_dir with dry run and it must point to a valid directory"

        store = self._setup_store(self._parse_resource_dir(args.resource_dir))
        registry = InstanceRegistry()
        if config.metrics.enabled:
            log.info("Serving metrics on port %s", config.metrics.port)
            start_http_server(config.metrics.port, registry=registry.collector_registry)

        controller = InstanceController(store, registry=registry)
        controller.start()
        pool = ReconcileWorkerPool(controller.reconcile)
        pool.start()

        # Register the signal handler to stop the watches
        stop_event = threading.Event()

        def do_stop(*_, **__):  # pragma: no cover
            stop_event.set()

        signal.signal(signal.SIGINT, do_stop)

        log.info("Starting Watches")
        for kind in [constants.NAMESPACED_KIND, constants.CLUSTER_KIND]:
            threading.Thread(
                target=self._watch_instances,
                args=(store, pool, kind, stop_event),
                name=f"watch_{kind.lower()}",
                daemon=True,
            ).start()

        # If given, apply the manifest directly and wait for it to settle
        if args.cr:
            log.info("Applying instance [%s]", args.cr)
            with open(args.cr, encoding="utf-8") as handle:
                manifest = yaml.safe_load(handle)
            if manifest.get("kind") == constants.NAMESPACED_KIND:
                manifest.setdefault("metadata", {}).setdefault("namespace", "default")
            log.debug3(manifest)
            store.create_object(manifest)
            instance = instance_from_manifest(manifest)
            pool.submit(instance.key)
            pool.wait_idle(timeout=DRY_RUN_SETTLE_TIMEOUT)
            stop_event.set()

        stop_event.wait()

        # All done!
        log.info("SHUTTING DOWN")
        pool.stop()
        controller.stop()

    ## Impl ##

    @staticmethod
    def _parse_resource_dir(resource_dir: Optional[str]) -> List[dict]:
        """If given, this will parse all yaml files found in the given directory"""
        all_resources = []
        if resource_dir is not None:
            for fname in os.listdir(resource_dir):
                if fname.endswith(".yaml") or fname.endswith(".yml"):
                    resource_path = os.path.join(resource_dir, fname)
                    log.debug3("Reading resource file [%s]", resource_path)
                    with open(resource_path, encoding="utf-8") as handle:
                        all_resources.extend(
                            res for res in yaml.safe_load_all(handle) if res
                        )
        return all_resources

    @staticmethod
    def _setup_store(resources: List[dict]) -> ObjectStoreBase:
        if config.dry_run:
            log.info("Running DRY RUN")
            return DryRunObjectStore(resources=resources)
        return OpenshiftObjectStore()  # pragma: no cover

    @staticmethod
    def _watch_instances(
        store: ObjectStoreBase,
        pool: ReconcileWorkerPool,
        kind: str,
        stop_event: threading.Event,
    ):
        """Submit the key of every changed instance of a kind until stopped. A
        failed watch is restarted after config.watch_retry_backoff_seconds.
        """
        while not stop_event.is_set():
            log.debug("Watching %s", kind)
            try:
                for event in store.watch_objects(
                    kind, api_version=constants.API_VERSION
                ):
                    if stop_event.is_set():
                        return
                    key = instance_from_manifest(event.resource).key
                    log.debug2("Got %s event for %s", event.type.value, key)
                    pool.submit(key)
            except Exception as err:  # pylint: disable=broad-exception-caught
                log.warning(
                    "Watch of %s failed, restarting: %s", kind, err, exc_info=True
                )
                stop_event.wait(config.watch_retry_backoff_seconds)
