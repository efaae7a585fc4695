# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Registration of server instances into a target group, with verification."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ncloud_lb_controller.errors import CloudAPIError, RegistrationError

logger = logging.getLogger(__name__)

BASE_BACKOFF_S = 10
BACKOFF_STEP_S = 5


@dataclass(frozen=True)
class RegistrationOutcome:
    target_group_id: str
    requested: tuple[str, ...]
    confirmed: tuple[str, ...]
    unconfirmed: tuple[str, ...]
    attempts: int

    @property
    def complete(self) -> bool:
        return not self.unconfirmed

    @property
    def partial(self) -> bool:
        return bool(self.confirmed) and bool(self.unconfirmed)


class TargetRegistrar:
    """Adds targets in bulk, then confirms them by listing the target group.

    Only targets not yet confirmed are carried into the next round. Running
    out of rounds with some targets confirmed is a partial success; with none
    confirmed it raises `RegistrationError`.
    """

    def __init__(self, gateway, waiter, rounds: int = 3):
        self.gateway = gateway
        self.waiter = waiter
        self.rounds = rounds

    def register(self, target_group_id: str, target_ids: list[str]) -> RegistrationOutcome:
        requested = tuple(dict.fromkeys(target_ids))
        if not requested:
            raise RegistrationError(f"no targets to register into target group {target_group_id}")

        pending = list(requested)
        attempts = 0
        try:
            for round_no in range(self.rounds):
                last_round = round_no == self.rounds - 1
                self.waiter.check()
                attempts += 1
                try:
                    self.gateway.add_targets(target_group_id, pending)
                except CloudAPIError as e:
                    logger.warning(
                        "adding %d targets to %s failed (round %d/%d): %s",
                        len(pending), target_group_id, round_no + 1, self.rounds, e,
                    )
                    if not last_round:
                        self.waiter.sleep(BASE_BACKOFF_S + round_no * BACKOFF_STEP_S)
                    continue

                pending = self._unconfirmed(target_group_id, pending)
                if not pending:
                    break
                logger.info(
                    "%d targets not yet visible in %s (round %d/%d)",
                    len(pending), target_group_id, round_no + 1, self.rounds,
                )
                if not last_round:
                    self.waiter.sleep(BASE_BACKOFF_S + round_no * BACKOFF_STEP_S)
        finally:
            self._log_status(target_group_id)

        confirmed = tuple(t for t in requested if t not in pending)
        outcome = RegistrationOutcome(
            target_group_id=target_group_id,
            requested=requested,
            confirmed=confirmed,
            unconfirmed=tuple(pending),
            attempts=attempts,
        )

        if outcome.complete:
            logger.info("registered %d targets in %s", len(confirmed), target_group_id)
            return outcome
        if outcome.partial:
            logger.warning(
                "registered %d of %d targets in %s; unconfirmed: %s",
                len(confirmed), len(requested), target_group_id, ", ".join(pending),
            )
            return outcome
        raise RegistrationError(
            f"none of {len(requested)} targets could be registered in target group {target_group_id}"
        )

    def _unconfirmed(self, target_group_id: str, attempted: list[str]) -> list[str]:
        try:
            registered = {t.id for t in self.gateway.list_targets(target_group_id)}
        except CloudAPIError as e:
            logger.warning("cannot verify targets of %s: %s", target_group_id, e)
            return attempted
        return [t for t in attempted if t not in registered]

    def _log_status(self, target_group_id: str) -> None:
        try:
            group = self.gateway.get_target_group(target_group_id)
            targets = self.gateway.list_targets(target_group_id)
        except CloudAPIError as e:
            logger.info("target group %s status unavailable: %s", target_group_id, e)
            return
        if group is not None:
            logger.info(
                "target group %s (%s) port %s protocol %s",
                group.id, group.name, group.port, group.protocol,
            )
        healthy = [t.id for t in targets if t.is_healthy]
        logger.info(
            "target group %s: %d targets, %d healthy", target_group_id, len(targets), len(healthy)
        )
        for target in targets:
            if not target.is_healthy:
                logger.debug("target %s (%s) health %s", target.id, target.ip, target.health or "unknown")
