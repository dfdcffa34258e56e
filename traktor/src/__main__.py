from __future__ import annotations

import logging
import os
import signal
import threading

from traktor.src.config import ControllerConfig, load_config
from traktor.src.controller import SecretRefreshController, build_controller
from traktor.src.health import start_health_server
from traktor.src.kube import build_clients, load_kube_configuration
from traktor.src.logs import configure_logging
from traktor.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)


def _run_with_leader_election(
    config: ControllerConfig,
    controller: SecretRefreshController,
    leader_ready: threading.Event,
    shutdown_event: threading.Event,
) -> None:
    """Run the watch loop on a worker thread only while this replica holds the lease."""
    from kubernetes.client import CoordinationV1Api

    from traktor.src.leader import LeaseLeaderElector

    settings = config.leader_election
    elector = LeaseLeaderElector(
        coordination_api=CoordinationV1Api(),
        namespace=config.operator_namespace,
        settings=settings,
    )

    controller_thread: threading.Thread | None = None
    controller_stop = threading.Event()
    state_lock = threading.Lock()

    def on_started_leading() -> None:
        nonlocal controller_thread, controller_stop
        with state_lock:
            if shutdown_event.is_set():
                return
            if controller_thread is not None and controller_thread.is_alive():
                LOGGER.error(
                    "Previous watch loop is still running; refusing to start a second one"
                )
                shutdown_event.set()
                return

            controller_stop = threading.Event()
            leader_ready.set()
            stop = controller_stop

            def _run_controller() -> None:
                unexpected_exit = False
                try:
                    controller.run_forever(shutdown_event=stop)
                    unexpected_exit = not stop.is_set() and not shutdown_event.is_set()
                    if unexpected_exit:
                        LOGGER.error("Watch loop exited without a stop signal; terminating")
                except Exception:
                    unexpected_exit = True
                    LOGGER.exception("Watch loop crashed")
                finally:
                    if unexpected_exit:
                        shutdown_event.set()

            controller_thread = threading.Thread(
                target=_run_controller, name="secret-watch", daemon=True
            )
            controller_thread.start()

    def on_stopped_leading() -> None:
        nonlocal controller_thread
        with state_lock:
            leader_ready.clear()
            controller.request_stop()
            controller_stop.set()
            if controller_thread is None:
                return

            controller_thread.join(timeout=settings.controller_stop_timeout_seconds)
            if controller_thread.is_alive():
                LOGGER.error(
                    "Watch loop did not stop within %ss after losing leadership; shutting down",
                    settings.controller_stop_timeout_seconds,
                )
                shutdown_event.set()
                return
            controller_thread = None

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )
    on_stopped_leading()


def main() -> None:
    """Controller entrypoint: configure logging, elect a leader and run the Secret watch loop."""
    config = load_config()
    configure_logging(config.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    LOGGER.info(
        "Starting secret refresh controller (operator namespace %s, workload kinds %s)",
        config.operator_namespace,
        ",".join(config.workload_kinds),
    )

    load_kube_configuration()
    core_api, apps_api, custom_api = build_clients()
    controller = build_controller(config, core_api, apps_api, custom_api)

    leader_ready = threading.Event() if config.leader_election.enabled else None
    health_server = start_health_server(
        ready=controller.ready,
        port=config.health_port,
        leader=leader_ready,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()
        controller.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if leader_ready is not None:
        _run_with_leader_election(config, controller, leader_ready, shutdown_event)
    else:
        controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("Controller stopped")


if __name__ == "__main__":
    main()
