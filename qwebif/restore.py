from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, Mapping, MutableMapping

from qwebif.core import RestoreConfig
from qwebif.errors import ExternalOperationError, RestoreInProgressError
from qwebif.session import PendingOperation, SessionRegistry, set_pending_operation
from qwebif.system import CommandResult, restore_default_config


logger = logging.getLogger(__name__)

BTN_FULL = "btn_yes"
BTN_KEEP_IP = "btn_keep_ip"

RestoreRunner = Callable[[RestoreConfig, bool], CommandResult]


class RestoreAction(Enum):
    NONE = "none"
    KEEP_IDENTITY = "restore_keep_ip"
    FULL = "restore_full"


@dataclass(frozen=True)
class RestoreRequest:
    keep_ip: bool = False
    restore_all: bool = False
    csrf_token: str | None = None

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "RestoreRequest":
        token = form.get("csrf_token")
        return cls(
            keep_ip=BTN_KEEP_IP in form,
            restore_all=BTN_FULL in form,
            csrf_token=token if isinstance(token, str) else None,
        )


def dispatch(request: RestoreRequest) -> RestoreAction:
    if request.keep_ip:
        return RestoreAction.KEEP_IDENTITY
    if request.restore_all:
        return RestoreAction.FULL
    return RestoreAction.NONE


@dataclass(frozen=True)
class RestoreResult:
    action: RestoreAction
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error(self) -> ExternalOperationError | None:
        if self.ok:
            return None
        return ExternalOperationError(self.action.value, self.returncode, self.output)


def invoke(
    action: RestoreAction,
    config: RestoreConfig,
    runner: RestoreRunner = restore_default_config,
) -> RestoreResult:
    if action is RestoreAction.NONE:
        raise ValueError("no restore action selected")
    keep_ip = action is RestoreAction.KEEP_IDENTITY
    logger.info("Starting configuration restore (%s)", action.value)
    result = runner(config, keep_ip)
    outcome = RestoreResult(action=action, returncode=result.returncode, output=result.stdout.strip())
    if outcome.ok:
        logger.info("Configuration restore (%s) finished", action.value)
    else:
        logger.error(
            "Configuration restore (%s) failed with exit status %s: %s",
            action.value,
            outcome.returncode,
            outcome.output,
        )
    return outcome


class RestoreGuard:
    """Allows a single restore invocation in flight for the whole device."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @contextmanager
    def hold(self, owner: str | None) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            logger.warning("Rejected restore from session %s: restore already running", owner)
            raise RestoreInProgressError("a configuration restore is already running")
        try:
            yield
        finally:
            self._lock.release()


def on_success(
    session: MutableMapping[str, Any],
    registry: SessionRegistry,
    action: RestoreAction,
    confirmation_path: str,
) -> str:
    set_pending_operation(session, registry, PendingOperation.now(action.value))
    return confirmation_path
