"""
batch_engine.domain.listeners -- Tagged lifecycle callbacks.

Listeners are plain records pairing a ``Hook`` with a callable.  The
orchestrator holds them in an ordered tuple and invokes the matching ones
at each boundary, in declaration order.

Contract:
    - Each hook fires exactly once per corresponding run.
    - BEFORE hooks receive the run with status RUNNING; AFTER hooks receive
      the finalized run.
    - A listener that raises is logged as ``listener_fault`` and ignored.
      It never fails the chunk, step or job it observes.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from batch_kernel.exceptions import ListenerFault
from batch_kernel.logging_config import get_logger

logger = get_logger("engine.listeners")


class Hook(str, Enum):
    BEFORE_JOB = "before_job"
    AFTER_JOB = "after_job"
    BEFORE_STEP = "before_step"
    AFTER_STEP = "after_step"


@dataclass(frozen=True)
class Listener:
    """A callback bound to one lifecycle hook."""

    hook: Hook
    callback: Callable[[Any], None]
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or getattr(self.callback, "__qualname__", repr(self.callback))


def before_job(callback: Callable[[Any], None], name: str = "") -> Listener:
    return Listener(Hook.BEFORE_JOB, callback, name)


def after_job(callback: Callable[[Any], None], name: str = "") -> Listener:
    return Listener(Hook.AFTER_JOB, callback, name)


def before_step(callback: Callable[[Any], None], name: str = "") -> Listener:
    return Listener(Hook.BEFORE_STEP, callback, name)


def after_step(callback: Callable[[Any], None], name: str = "") -> Listener:
    return Listener(Hook.AFTER_STEP, callback, name)


class ListenerChain:
    """Ordered, fault-isolated invocation of listeners."""

    def __init__(self, listeners: Iterable[Listener] = ()) -> None:
        self._listeners = tuple(listeners)

    def __len__(self) -> int:
        return len(self._listeners)

    def extended(self, listeners: Iterable[Listener]) -> ListenerChain:
        return ListenerChain(self._listeners + tuple(listeners))

    def notify(self, hook: Hook, run: Any) -> int:
        """Invoke every listener registered for ``hook``.

        Returns the number of listeners that raised.
        """
        faults = 0
        for listener in self._listeners:
            if listener.hook is not hook:
                continue
            try:
                listener.callback(run)
            except Exception as exc:
                faults += 1
                fault = ListenerFault(listener.display_name, hook.value, str(exc))
                logger.warning(
                    "listener_fault",
                    extra={
                        "listener": fault.listener,
                        "hook": fault.hook,
                        "error_code": fault.code,
                        "cause": fault.cause,
                    },
                    exc_info=True,
                )
        return faults
