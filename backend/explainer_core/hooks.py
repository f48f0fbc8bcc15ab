from __future__ import annotations

import logging
from typing import Callable

from .models import AuditRecord

logger = logging.getLogger(__name__)


AfterVerdictHook = Callable[[AuditRecord], None]


class VerdictHookRunner:
    """Runs after-verdict hooks. A failing hook is logged and never changes the verdict."""

    def __init__(self) -> None:
        self._after_hooks: list[AfterVerdictHook] = []

    def add_after(self, hook: AfterVerdictHook) -> None:
        self._after_hooks.append(hook)

    def run_after(self, record: AuditRecord | None) -> None:
        if record is None:
            return
        for hook in self._after_hooks:
            try:
                hook(record)
            except Exception as exc:
                logger.error(
                    "after-verdict hook failed hook=%s session=%s error=%s",
                    getattr(hook, "__qualname__", type(hook).__name__),
                    record.session_ref,
                    type(exc).__name__,
                )
