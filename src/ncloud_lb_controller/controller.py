#!/usr/bin/env python3
# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Run the NAVER Cloud load balancer controller.

The controller watches Services cluster-wide (or in `NCLB_WATCH_NAMESPACE`)
and reconciles those of type LoadBalancer, plus any that still carry its
finalizer or annotations:

- provisions a NAVER Cloud network proxy load balancer, one target group and
  listener per Service port, and registers the worker nodes as targets
- publishes the load balancer address in `status.loadBalancer.ingress`
- removes the cloud resources before the Service is allowed to go away
"""

from __future__ import annotations

import logging
import sys
import threading

import kopf

from ncloud_lb_controller import handlers  # noqa: F401  (registers the kopf handlers)
from ncloud_lb_controller.cloud import NcloudGateway
from ncloud_lb_controller.config import load_settings
from ncloud_lb_controller.credentials import build_supplier
from ncloud_lb_controller.errors import ConfigError
from ncloud_lb_controller.kube import ServiceStore, new_client
from ncloud_lb_controller.reconciler import Reconciler
from ncloud_lb_controller.waiting import Waiter

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    root.handlers.clear()
    root.addHandler(handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("kopf").setLevel(logging.WARNING)


def main() -> int:
    try:
        settings = load_settings()
    except ConfigError as e:
        setup_logging()
        logger.error("invalid configuration: %s", e)
        return 2
    setup_logging(settings.log_level)

    stop = threading.Event()
    store = ServiceStore(new_client())
    supplier = build_supplier(settings, store)
    gateway = NcloudGateway(supplier, endpoint=settings.api_endpoint, timeout=settings.request_timeout_s)
    reconciler = Reconciler(store, gateway, settings, Waiter(stop))

    memo = kopf.Memo(config=settings, reconciler=reconciler, stop=stop)
    if settings.watch_namespace:
        kopf.run(standalone=True, namespaces=[settings.watch_namespace], memo=memo)
    else:
        kopf.run(standalone=True, clusterwide=True, memo=memo)
    return 0


if __name__ == "__main__":  # pragma: nocover
    sys.exit(main())
