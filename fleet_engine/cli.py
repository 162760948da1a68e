# fleet_engine/cli.py
"""fleetctl - provision, deploy and monitor the worker fleet."""

import argparse
import logging
import sys
from typing import Callable, List, Optional
from uuid import UUID

from fleet_engine.container import FleetContainer, build_container
from fleet_engine.core.errors import FleetError, MissingPrerequisite
from fleet_engine.core.models import RunReport
from fleet_engine.infrastructure.config import FleetSettings, get_settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fleetctl", description="Worker fleet controller")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("provision", help="Create and boot worker VMs")
    p.add_argument("--count", type=int, help="Number of workers (default FLEET_NUM_WORKERS)")
    p.add_argument("--fail-fast", action="store_true", help="Abort the run on the first node failure")

    p = sub.add_parser("deploy", help="Deploy the worker bundle to running nodes")
    p.add_argument("--version", dest="bundle_version", help="Bundle version label")
    p.add_argument("--fail-fast", action="store_true", help="Abort the run on the first node failure")

    p = sub.add_parser("monitor", help="Live fleet health view")
    p.add_argument("--interval", type=float, help="Seconds between polls")
    p.add_argument("--once", action="store_true", help="Poll once and exit")

    sub.add_parser("hosts", help="Print /etc/hosts entries for the inventory")

    p = sub.add_parser("remove", help="Remove a node from the inventory")
    p.add_argument("name")
    p.add_argument("--destroy", action="store_true", help="Also destroy the VM and delete its disks")

    p = sub.add_parser("history", help="Show recent provision/deploy runs")
    p.add_argument("--limit", type=int, default=10)
    p.add_argument("--run", dest="run_id", type=UUID, help="Show one run in full")

    p = sub.add_parser("serve", help="Serve the read-only status API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8080)

    return parser


# ============================================
# COMMANDS
# ============================================

def _report_exit(report: RunReport) -> int:
    for line in report.summary_lines():
        print(line)
    if report.is_total_failure:
        logger.error(f"❌ {report.operation} failed on every node" + (" (aborted)" if report.aborted else ""))
        return EXIT_FAILURE
    if report.is_partial_failure:
        logger.warning(f"⚠️  {report.operation} finished with {len(report.failed())} failed node(s)")
    else:
        logger.info(f"✅ {report.operation} complete")
    return EXIT_OK


def cmd_provision(container: FleetContainer, args) -> int:
    return _report_exit(container.provisioner().provision(args.count))


def cmd_deploy(container: FleetContainer, args) -> int:
    return _report_exit(container.deployer().deploy(version=args.bundle_version))


def cmd_monitor(container: FleetContainer, args) -> int:
    container.monitor(interval=args.interval).start(once=args.once)
    return EXIT_OK


def cmd_hosts(container: FleetContainer, args) -> int:
    inventory = container.store.load()
    for node in inventory.running():
        print(f"{node.address} {node.name}")
    return EXIT_OK


def cmd_remove(container: FleetContainer, args) -> int:
    node = container.provisioner().remove_node(args.name, destroy=args.destroy)
    logger.info(f"✅ Removed {node.name} from inventory")
    return EXIT_OK


def cmd_history(container: FleetContainer, args) -> int:
    if container.history is None:
        raise MissingPrerequisite("Run history is not configured")

    if args.run_id:
        report = container.history.get(args.run_id)
        if report is None:
            logger.error(f"❌ Run {args.run_id} not found")
            return EXIT_FAILURE
        print(f"{report.run_id} {report.operation} {report.started_at:%Y-%m-%d %H:%M:%S}")
        for line in report.summary_lines():
            print(line)
        return EXIT_OK

    for report in container.history.list_recent(limit=args.limit):
        status = "aborted" if report.aborted else f"{len(report.succeeded())}/{len(report.outcomes)} ok"
        print(f"{report.started_at:%Y-%m-%d %H:%M:%S}  {report.operation:<9}  {status:<10}  {report.run_id}")
    return EXIT_OK


def cmd_serve(container: FleetContainer, args) -> int:
    import uvicorn

    from fleet_engine.api.main import create_app

    uvicorn.run(create_app(container), host=args.host, port=args.port)
    return EXIT_OK


COMMANDS = {
    "provision": cmd_provision,
    "deploy": cmd_deploy,
    "monitor": cmd_monitor,
    "hosts": cmd_hosts,
    "remove": cmd_remove,
    "history": cmd_history,
    "serve": cmd_serve,
}


def main(
    argv: Optional[List[str]] = None,
    container_factory: Callable[[FleetSettings], FleetContainer] = build_container,
) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()

    if getattr(args, "fail_fast", False):
        settings = settings.model_copy(update={"continue_on_failure": False})

    configure_logging("DEBUG" if args.verbose else settings.log_level)

    try:
        container = container_factory(settings)
        return COMMANDS[args.command](container, args)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_INTERRUPTED
    except MissingPrerequisite as e:
        logger.error(f"❌ {e}")
        return EXIT_FAILURE
    except FleetError as e:
        logger.error(f"❌ {e.category}: {e}")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
