# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""kopf handlers feeding Service changes into the reconciler.

The operator memo carries `config` (our `Settings`), `reconciler` and the
`stop` event shared with every `Waiter`. kopf serializes handlers per object,
so one reconcile runs per Service at a time.

The Service finalizer is managed by the reconciler, not by kopf: the delete
handler is optional, so kopf never adds its own finalizer and still calls the
handler while ours holds the object.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import kopf
from lightkube.core.exceptions import ApiError

from ncloud_lb_controller.config import Settings
from ncloud_lb_controller.errors import Cancelled, ReconcileError
from ncloud_lb_controller.reconciler import LOAD_BALANCER_TYPE

logger = logging.getLogger(__name__)

CONFLICT_RETRY_S = 1.0
DIFFBASE_KEY = "last-handled-configuration"


def should_handle(body: Mapping[str, Any], config: Settings) -> bool:
    """Whether a Service concerns this controller."""
    spec = body.get("spec") or {}
    meta = body.get("metadata") or {}
    if spec.get("type") == LOAD_BALANCER_TYPE:
        return True
    if config.finalizer in (meta.get("finalizers") or []):
        return True
    annotations = meta.get("annotations") or {}
    return any(
        key in annotations
        for key in (
            config.lb_id_annotation,
            config.target_groups_annotation,
            config.target_group_map_annotation,
        )
    )


def _handles(body: kopf.Body, memo: kopf.Memo, **_: Any) -> bool:
    return should_handle(body, memo.config)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **_: Any) -> None:
    config: Settings = memo.config
    settings.posting.level = logging.WARNING
    settings.execution.max_workers = config.workers
    # Service status has a fixed schema, so handler progress lives in annotations
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=config.annotation_domain)
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix=config.annotation_domain, key=DIFFBASE_KEY
    )
    logger.info(
        "handling Services (namespace=%s, workers=%d, annotation domain=%s)",
        config.watch_namespace or "*", config.workers, config.annotation_domain,
    )


@kopf.on.cleanup()
def shutdown(memo: kopf.Memo, **_: Any) -> None:
    logger.info("stopping, interrupting running reconciles")
    memo.stop.set()


def run_reconcile(namespace: str, name: str, memo: kopf.Memo) -> None:
    """Reconcile one Service and translate requeues into kopf retries."""
    config: Settings = memo.config
    try:
        result = memo.reconciler.reconcile(namespace, name)
    except ReconcileError as e:
        raise kopf.TemporaryError(str(e), delay=e.requeue_after) from e
    except Cancelled as e:
        if memo.stop.is_set():
            logger.info("reconcile of %s/%s interrupted by shutdown", namespace, name)
            return
        raise kopf.TemporaryError(f"reconcile interrupted: {e}", delay=config.requeue_pending_s) from e
    except ApiError as e:
        delay = CONFLICT_RETRY_S if e.status.code == 409 else config.requeue_error_s
        raise kopf.TemporaryError(f"Kubernetes API error: {e}", delay=delay) from e

    if result.requeue_after is not None:
        raise kopf.TemporaryError(
            f"{namespace}/{name} not settled yet", delay=result.requeue_after
        )


@kopf.on.resume("", "v1", "services", when=_handles)
@kopf.on.create("", "v1", "services", when=_handles)
@kopf.on.update("", "v1", "services", when=_handles)
def reconcile_service(namespace: str, name: str, memo: kopf.Memo, **_: Any) -> None:
    run_reconcile(namespace, name, memo)


@kopf.on.delete("", "v1", "services", when=_handles, optional=True)
def release_service(namespace: str, name: str, memo: kopf.Memo, **_: Any) -> None:
    run_reconcile(namespace, name, memo)
